import random
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterable

from flask import current_app

from mining import db
from mining.errors import Busy, InvalidRequest, LandUnavailable, ProductionError, QuotaAvailable
from mining.models import MiningSession, MiningType, ResourceType, SessionStatus, SettlementRecord, Tool, utcnow
from .ledger import ResourceLedger, ZERO, quantize, to_quantity, to_resource_type
from .locks import KeyedLocks, ledger_key, session_key, tool_key
from .quota import DailyQuota
from .recipes import BRICK, RECIPES, get_recipe
from .reports import ProductionReports
from .sessions import Economy, MiningSessionManager
from .settlement import SettlementEngine, hours_between
from .synthesis import SynthesisEngine
from .tools import ToolRegistry, to_tool_type


class ProductionEngine:
    """Entry point for every production command.

    Each command runs as one unit of work: the ordered lock set is taken,
    the components mutate rows, the transaction commits, then the locks are
    released. Any exception rolls the transaction back, so callers observe
    either the whole command or none of it.
    """

    def __init__(self, economy: Economy, lock_timeout: float = 2.0, rng: random.Random = None,
                 synthesis_max_quantity: int = 100, wear_rates=None, quota: DailyQuota = None):
        self.locks = KeyedLocks(timeout=lock_timeout)
        self.ledger = ResourceLedger(self.locks)
        self.tools = ToolRegistry(wear_rates or {})
        self.quota = quota or DailyQuota(daily_limit='208')
        self.sessions = MiningSessionManager(self.ledger, self.tools, economy)
        self.sessions.quota = self.quota
        self.settlement = SettlementEngine(self.ledger, self.tools, self.sessions, self.quota)
        self.reports = ProductionReports(self.ledger, self.tools, self.sessions, self.quota)
        self.synthesis = SynthesisEngine(self.ledger, self.tools, rng, synthesis_max_quantity)

    @classmethod
    def from_config(cls, config) -> 'ProductionEngine':
        return cls(
            Economy.from_config(config),
            lock_timeout=float(config.get('LOCK_TIMEOUT_SEC', 2.0)),
            synthesis_max_quantity=int(config.get('SYNTHESIS_MAX_QUANTITY', 100)),
            wear_rates=config['TOOL_WEAR_RATES'],
            quota=DailyQuota.from_config(config),
        )

    @contextmanager
    def unit_of_work(self, keys: Iterable = ()):
        with self.locks.hold(keys):
            try:
                yield
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

    # ---- lock sets ----

    def _session_keys(self, session: MiningSession, extra_tools: Iterable = ()) -> list:
        keys = [session_key(session.id)]
        keys += [tool_key(t.id) for t in session.tools]
        keys += self._tool_keys(extra_tools)
        keys += self.settlement.lock_keys(session)
        return keys

    def _tool_keys(self, tool_refs) -> list:
        return [tool_key(self.tools.resolve_pk(ref)) for ref in tool_refs or []]

    @contextmanager
    def _session_command(self, user_id, session_pk, extra_tools: Iterable = ()):
        session = self.sessions.get_session(user_id, session_pk, lock=False)
        with self.unit_of_work(self._session_keys(session, extra_tools)):
            db.session.refresh(session, with_for_update=True)
            yield session

    def session_payload(self, session: MiningSession) -> dict:
        return session.to_dict(grain_available=self.ledger.available(session.user_id, ResourceType.GRAIN))

    # ---- mining ----

    def _start(self, user_id, mining_type: MiningType, land_ref, tool_ids=None, now=None) -> dict:
        land = self.sessions.get_land(land_ref)
        tool_ids = list(tool_ids or [])
        keys = self._tool_keys(tool_ids)
        if mining_type == MiningType.HIRED_WITHOUT_TOOL:
            keys += [tool_key(t.id) for t in Tool.query.filter_by(deposited_land_id=land.id).all()]
        keys += [ledger_key(user_id, ResourceType.GRAIN)]
        with self.unit_of_work(keys):
            session, warning = self.sessions.start(user_id, mining_type, land, tool_ids, now)
            return {'session': self.session_payload(session), 'warning': warning}

    def start_self_mining(self, user_id, land_ref, tool_ids, now=None) -> dict:
        return self._start(user_id, MiningType.SELF, land_ref, tool_ids, now)

    def start_hired_with_tool(self, user_id, land_ref, tool_ids, now=None) -> dict:
        return self._start(user_id, MiningType.HIRED_WITH_TOOL, land_ref, tool_ids, now)

    def start_hired_without_tool(self, user_id, land_ref, now=None) -> dict:
        return self._start(user_id, MiningType.HIRED_WITHOUT_TOOL, land_ref, None, now)

    def add_tool(self, user_id, session_pk, tool_pk, now=None) -> dict:
        with self._session_command(user_id, session_pk, [tool_pk]) as session:
            session, settlement = self.sessions.add_tool(user_id, session, tool_pk, now)
            return {
                'session': self.session_payload(session),
                'new_output_rate': str(session.output_rate),
                'warning': settlement.warning,
            }

    def remove_tool(self, user_id, session_pk, tool_pk, now=None) -> dict:
        with self._session_command(user_id, session_pk) as session:
            return self.sessions.remove_tool(user_id, session, tool_pk, now)

    def pause(self, user_id, session_pk, now=None) -> dict:
        with self._session_command(user_id, session_pk) as session:
            settlement = self.sessions.pause(session, now)
            return {'session': self.session_payload(session), 'warning': settlement.warning}

    def resume(self, user_id, session_pk, now=None) -> dict:
        with self._session_command(user_id, session_pk) as session:
            warning = self.sessions.resume(session, now)
            return {'session': self.session_payload(session), 'warning': warning}

    def collect(self, user_id, session_pk, now=None) -> dict:
        with self._session_command(user_id, session_pk) as session:
            return self.sessions.collect(session, now)

    def stop(self, user_id, session_pk, now=None) -> dict:
        with self._session_command(user_id, session_pk) as session:
            summary = self.sessions.stop(session, now)
            summary['session'] = self.session_payload(session)
            return summary

    def stop_all(self, user_id, now=None) -> dict:
        now = now or utcnow()
        pks = [
            s.id for s in MiningSession.query
            .filter(MiningSession.user_id == user_id, MiningSession.status != SessionStatus.COMPLETED)
            .order_by(MiningSession.id)
        ]
        stopped = []
        total = ZERO
        for pk in pks:
            summary = self.stop(user_id, pk, now)
            total += summary['auto_collected']
            stopped.append({
                'session_id': summary['session']['session_id'],
                'resource_type': summary['session']['resource_type'],
                'status': summary['session']['status'],
                'output_collected': summary['auto_collected'],
            })
        return {'stopped_count': len(stopped), 'total_collected': total, 'sessions': stopped}

    def handle_quota_exhausted(self, now=None) -> dict:
        """Stop every open session on the capped resource once today's quota is spent.

        Each stop is its own unit of work: final settlement (which the cap
        already limits), auto-collect, tools released. A session whose locks
        are busy is left for the next call.
        """
        now = now or utcnow()
        if not self.quota.is_exhausted(now):
            raise QuotaAvailable(
                f"Today's {self.quota.resource_type.value} output is not exhausted",
                {'remaining': str(self.quota.remaining(now))},
            )
        open_sessions = [
            (s.id, s.user_id, s.output_rate, s.user_share_rate, s.start_time)
            for s in MiningSession.query
            .filter(MiningSession.resource_type == self.quota.resource_type,
                    MiningSession.status != SessionStatus.COMPLETED)
            .order_by(MiningSession.id)
        ]
        details, busy = [], []
        total = ZERO
        for pk, user_id, rate, share, started in open_sessions:
            try:
                summary = self.stop(user_id, pk, now)
            except Busy:
                busy.append(pk)
                current_app.logger.info(f"[quota-stop-busy] session={pk} retry later")
                continue
            hours = hours_between(started, now)
            total += summary['final_output']
            details.append({
                'session_id': summary['session']['session_id'],
                'user': user_id,
                'hours': str(quantize(hours)),
                'should_get': str(quantize(rate * hours * share)),
                'actual_get': str(summary['final_output']),
            })
        current_app.logger.info(
            f"[quota-exhausted] resource={self.quota.resource_type.value} stopped={len(details)} busy={len(busy)}"
        )
        return {
            'message': f"Stopped {len(details)} {self.quota.resource_type.value} session(s) for today",
            'sessions_stopped': len(details),
            'total_settled': total,
            'settlement_details': details,
            'busy': busy,
        }

    def deposit_tools(self, user_id, land_ref, tool_ids) -> dict:
        land = self.sessions.get_land(land_ref)
        if land.owner_id != user_id:
            raise LandUnavailable(f'Land {land.land_id} is not yours', {'land_id': land.land_id})
        if not tool_ids:
            raise InvalidRequest('At least one tool is required')
        with self.unit_of_work(self._tool_keys(tool_ids)):
            tools = self.tools.deposit(user_id, land, tool_ids)
            return {'land_id': land.land_id, 'tools': [t.tool_id for t in tools]}

    def withdraw_tools(self, user_id, land_ref, tool_ids) -> dict:
        land = self.sessions.get_land(land_ref)
        if not tool_ids:
            raise InvalidRequest('At least one tool is required')
        with self.unit_of_work(self._tool_keys(tool_ids)):
            tools = self.tools.withdraw(user_id, land, tool_ids)
            return {'land_id': land.land_id, 'tools': [t.tool_id for t in tools]}

    # ---- settlement ----

    def settle(self, session_pk, now=None) -> dict:
        with self._session_command(None, session_pk) as session:
            result = self.settlement.settle(session, now)
            return {'user_id': session.user_id, 'status': session.status.value, **result.to_dict()}

    def settle_due(self, now=None) -> dict:
        """Settle every active session; one scheduler tick."""
        pks = [
            s.id for s in MiningSession.query
            .filter_by(status=SessionStatus.ACTIVE)
            .order_by(MiningSession.id)
        ]
        settled, paused, busy, failed = [], [], [], []
        for pk in pks:
            try:
                result = self.settle(pk, now)
            except Busy:
                busy.append(pk)
                current_app.logger.info(f"[settle-busy] session={pk} retry next tick")
                continue
            except ProductionError as exc:
                failed.append(pk)
                current_app.logger.warning(f"[settle-skip] session={pk} error={exc.code}")
                continue
            except Exception:
                failed.append(pk)
                current_app.logger.exception(f"[settle-fail] session={pk}")
                continue
            settled.append(pk)
            if result['warning']:
                paused.append({
                    'id': pk,
                    'user_id': result['user_id'],
                    'session_id': result['session_id'],
                    'reason': result['warning']['code'],
                })
        return {'settled': settled, 'paused': paused, 'busy': busy, 'failed': failed}

    # ---- synthesis ----

    def _synthesize(self, user_id, recipe, quantity, now=None) -> dict:
        qty = self.synthesis.check_quantity(quantity)
        keys = self.ledger.lock_keys(user_id, list(recipe.cost(qty)) + [ResourceType.BRICK])
        with self.unit_of_work(keys):
            return self.synthesis.synthesize(user_id, recipe, qty, now).to_dict()

    def synthesize_tool(self, user_id, tool_type, quantity, now=None) -> dict:
        recipe = get_recipe(to_tool_type(tool_type))
        return self._synthesize(user_id, recipe, quantity, now)

    def synthesize_brick(self, user_id, quantity, now=None) -> dict:
        return self._synthesize(user_id, get_recipe(BRICK), quantity, now)

    def recipes(self) -> dict:
        return {name: recipe.to_dict() for name, recipe in RECIPES.items()}

    # ---- ledger ----

    def grant(self, user_id, resource_type, quantity, reason: str = 'grant') -> Decimal:
        """Credit resources whose custody was settled by an external service."""
        rt = to_resource_type(resource_type)
        qty = to_quantity(quantity)
        with self.unit_of_work([ledger_key(user_id, rt)]):
            row = self.ledger.credit(user_id, rt, qty, reason)
            return row.available_amount

    def resources(self, user_id) -> dict:
        return {
            name: row.to_dict() if row else {
                'user': user_id, 'resource_type': name, 'amount': '0',
                'frozen_amount': '0', 'available_amount': '0', 'updated_at': None,
            }
            for name, row in self.ledger.balances(user_id).items()
        }

    # ---- reporting ----

    def rate_history(self, user_id, session_pk) -> dict:
        session = self.sessions.get_session(user_id, session_pk, lock=False)
        records = SettlementRecord.query.filter_by(session_id=session.id).order_by(SettlementRecord.id).all()
        return {
            'session_id': session.session_id,
            'resource_type': session.resource_type.value,
            'current_rate': str(session.output_rate),
            'output_segments': [r.to_dict() for r in records],
        }

    def session_stats(self, user_id) -> dict:
        sessions = MiningSession.query.filter_by(user_id=user_id).all()
        return {
            'total_sessions': len(sessions),
            'active_sessions': sum(1 for s in sessions if s.status == SessionStatus.ACTIVE),
            'total_output': str(sum((s.accumulated_output for s in sessions), ZERO)),
            'total_tax': str(sum((s.accumulated_tax for s in sessions), ZERO)),
        }

    def stats(self, user_id) -> dict:
        active = MiningSession.query.filter_by(user_id=user_id, status=SessionStatus.ACTIVE).all()
        grain = self.ledger.available(user_id, ResourceType.GRAIN)
        consumption = sum((s.grain_consumption_rate for s in active), ZERO)
        balances = self.ledger.balances(user_id)
        return {
            'active_sessions': len(active),
            'total_hourly_output': str(sum((s.output_rate for s in active), ZERO)),
            'resource_balance': {
                name: str(row.available_amount if row else ZERO) for name, row in balances.items()
            },
            'tool_stats': self.tools.stats(user_id),
            'grain_status': {
                'current_amount': str(grain),
                'consumption_rate': str(consumption),
                'hours_remaining': str(quantize(grain / consumption)) if consumption > 0 else None,
            },
        }

    def food_status(self, user_id) -> dict:
        return self.reports.food_status(user_id)

    def pre_check(self, user_id, now=None) -> dict:
        return self.reports.pre_check(user_id, now or utcnow())

    def summary(self, user_id, now=None) -> dict:
        return self.reports.summary(user_id, now or utcnow())

    def quota_status(self, user_id, now=None) -> dict:
        return self.reports.quota_status(user_id, now or utcnow())

    def check_before_mining(self, now=None) -> dict:
        return self.reports.check_before_mining(now or utcnow())
