from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from flask import current_app

from mining import db
from mining.errors import (
    InvalidRequest,
    LandUnavailable,
    QuotaExhausted,
    SessionNotActive,
    SessionNotFound,
    ToolLandMismatch,
    ToolNotBound,
)
from mining.models import (
    TOOL_LANDS,
    Land,
    LandType,
    MiningSession,
    MiningType,
    ResourceType,
    SessionStatus,
    Tool,
    ToolType,
    utcnow,
)
from .ledger import ZERO, ResourceLedger, quantize
from .tools import ToolRegistry


GRAIN_INSUFFICIENT = 'grain_insufficient'
GRAIN_LOW = 'grain_low'
YLD_EXHAUSTED = 'yld_exhausted'

# Allowed targets from each state; completed is terminal
_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.ACTIVE, SessionStatus.PAUSED, SessionStatus.COMPLETED},
    SessionStatus.PAUSED: {SessionStatus.ACTIVE, SessionStatus.COMPLETED},
    SessionStatus.COMPLETED: set(),
}

_NEEDS_OWN_TOOLS = {
    MiningType.SELF: True,
    MiningType.HIRED_WITH_TOOL: True,
    MiningType.HIRED_WITHOUT_TOOL: False,
}


def _decimals(table: Mapping, key_type) -> Dict:
    return {key_type(k): Decimal(str(v)) for k, v in table.items()}


@dataclass
class Economy:
    """Rate tables, all per hour."""
    tool_output_rates: Dict[ToolType, Decimal]
    land_multipliers: Dict[LandType, Decimal]
    land_grain_factors: Dict[LandType, Decimal]
    mining_type_grain_factors: Dict[MiningType, Decimal]
    tax_rates: Dict[MiningType, Decimal]
    user_share_rates: Dict[MiningType, Decimal]
    grain_per_tool_hour: Decimal
    low_grain_hours: Decimal = Decimal('1')

    def __post_init__(self):
        for mt in MiningType:
            tax = self.tax_rates.get(mt, ZERO)
            share = self.user_share_rates.get(mt, ZERO)
            if tax < 0 or share < 0 or tax + share > 1:
                raise ValueError(f'Invalid tax/share rates for {mt.value}: {tax} + {share}')

    @classmethod
    def from_config(cls, config) -> 'Economy':
        return cls(
            tool_output_rates=_decimals(config['TOOL_OUTPUT_RATES'], ToolType),
            land_multipliers=_decimals(config['LAND_OUTPUT_MULTIPLIERS'], LandType),
            land_grain_factors=_decimals(config['LAND_GRAIN_FACTORS'], LandType),
            mining_type_grain_factors=_decimals(config['MINING_TYPE_GRAIN_FACTORS'], MiningType),
            tax_rates=_decimals(config['TAX_RATES'], MiningType),
            user_share_rates=_decimals(config['USER_SHARE_RATES'], MiningType),
            grain_per_tool_hour=Decimal(str(config['GRAIN_PER_TOOL_HOUR'])),
            low_grain_hours=Decimal(str(config.get('LOW_GRAIN_HOURS', 1))),
        )


def to_mining_type(value) -> MiningType:
    try:
        return MiningType(getattr(value, 'value', value))
    except ValueError:
        raise InvalidRequest(f'Unknown mining type: {value!r}')


class MiningSessionManager:
    """Owns MiningSession rows and their state machine.

    Balance-affecting transitions call ``self.settlement.settle`` first so a
    rate change never applies to time that already elapsed.
    """

    def __init__(self, ledger: ResourceLedger, tools: ToolRegistry, economy: Economy):
        self.ledger = ledger
        self.tools = tools
        self.economy = economy
        self.settlement = None
        self.quota = None
        tools.on_damaged = self._on_tool_damaged

    # ---- lookups ----

    def get_land(self, land_ref) -> Land:
        land = None
        if isinstance(land_ref, int) or (isinstance(land_ref, str) and land_ref.isdigit()):
            land = db.session.get(Land, int(land_ref))
        elif isinstance(land_ref, str):
            land = Land.query.filter_by(land_id=land_ref).first()
        if land is None:
            raise LandUnavailable(f'Land {land_ref} not found', {'land_id': land_ref})
        return land

    def get_session(self, user_id: int, session_pk, lock: bool = True) -> MiningSession:
        if isinstance(session_pk, str) and session_pk.startswith('MS-'):
            query = MiningSession.query.filter_by(session_id=session_pk)
        else:
            try:
                pk = int(session_pk)
            except (TypeError, ValueError):
                raise InvalidRequest(f'Invalid session id: {session_pk!r}')
            query = MiningSession.query.filter_by(id=pk)
        session = (query.with_for_update() if lock else query).first()
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound(f'Session {session_pk} not found', {'session_id': session_pk})
        return session

    # ---- state machine ----

    def _transition(self, session: MiningSession, target: SessionStatus) -> None:
        if target not in _TRANSITIONS[session.status]:
            raise SessionNotActive(
                f'Session {session.session_id} is {session.status.value}; cannot become {target.value}',
                {'session_id': session.session_id, 'status': session.status.value},
            )
        session.status = target
        working = target == SessionStatus.ACTIVE
        for tool in session.tools:
            self.tools.set_working(tool, working)

    def _require(self, session: MiningSession, allowed: Iterable[SessionStatus], action: str) -> None:
        if session.status not in allowed:
            raise SessionNotActive(
                f'Cannot {action}: session {session.session_id} is {session.status.value}',
                {'session_id': session.session_id, 'status': session.status.value},
            )

    def _settle(self, session: MiningSession, now):
        return self.settlement.settle(session, now)

    # ---- rates ----

    def recompute_rates(self, session: MiningSession) -> None:
        land = session.land
        tools = session.tools
        multiplier = self.economy.land_multipliers.get(land.land_type, ZERO)
        session.output_rate = quantize(sum(
            (self.economy.tool_output_rates.get(t.tool_type, ZERO) for t in tools), ZERO
        ) * multiplier)
        session.grain_consumption_rate = quantize(
            self.economy.grain_per_tool_hour
            * len(tools)
            * self.economy.land_grain_factors.get(land.land_type, Decimal('1'))
            * self.economy.mining_type_grain_factors.get(session.mining_type, Decimal('1'))
        )

    def grain_warning(self, session: MiningSession) -> Optional[dict]:
        rate = session.grain_consumption_rate or ZERO
        if rate <= 0:
            return None
        available = self.ledger.available(session.user_id, ResourceType.GRAIN)
        hours = available / rate
        if available <= 0:
            code = GRAIN_INSUFFICIENT
            message = 'No grain available; the session will pause at the next settlement'
        elif hours < self.economy.low_grain_hours:
            code = GRAIN_LOW
            message = f'Grain covers only {hours:.2f} hours of mining'
        else:
            return None
        return {'code': code, 'message': message, 'hours_remaining': str(quantize(hours))}

    # ---- validation ----

    def _check_land(self, user_id: int, land: Land, mining_type: MiningType) -> None:
        if not land.is_available or land.resource_type is None:
            raise LandUnavailable(f'Land {land.land_id} is not available for mining', {'land_id': land.land_id})
        if mining_type == MiningType.SELF:
            if land.owner_id != user_id:
                raise LandUnavailable(f'Land {land.land_id} is not yours', {'land_id': land.land_id})
        elif mining_type in (MiningType.HIRED_WITH_TOOL, MiningType.HIRED_WITHOUT_TOOL):
            if land.owner_id == user_id:
                raise LandUnavailable(
                    f'Use self mining on your own land {land.land_id}', {'land_id': land.land_id}
                )

    def _check_quota(self, resource_type, now) -> None:
        if self.quota is None or not self.quota.applies_to(resource_type):
            return
        if self.quota.is_exhausted(now):
            raise QuotaExhausted(
                f"Today's {resource_type.value} output limit is reached",
                {'resource_type': resource_type.value, 'daily_limit': str(self.quota.daily_limit)},
            )

    @staticmethod
    def _check_suitable(tool: Tool, land: Land) -> None:
        if land.land_type not in TOOL_LANDS[tool.tool_type]:
            raise ToolLandMismatch(
                f'{tool.tool_type.value} cannot work {land.land_type.value}',
                {'tool_id': tool.tool_id, 'land_type': land.land_type.value},
            )

    def _own_tools(self, user_id: int, land: Land, tool_pks, session: MiningSession = None) -> List[Tool]:
        pks = list(dict.fromkeys(tool_pks or []))
        if not pks:
            raise InvalidRequest('At least one tool is required')
        tools = [self.tools.get_owned(user_id, pk) for pk in pks]
        for tool in tools:
            self.tools.check_bindable(tool, session)
            self._check_suitable(tool, land)
        return tools

    # ---- commands ----

    def start(self, user_id: int, mining_type, land: Land, tool_pks=None, now=None):
        """Create an active session; returns (session, grain warning or None)."""
        mt = to_mining_type(mining_type)
        now = now or utcnow()
        self._check_land(user_id, land, mt)
        self._check_quota(land.resource_type, now)
        if _NEEDS_OWN_TOOLS[mt]:
            tools = self._own_tools(user_id, land, tool_pks)
        else:
            deposited = self.tools.deposited_idle(land)
            if deposited is None:
                raise LandUnavailable(f'No tools deposited on land {land.land_id}', {'land_id': land.land_id})
            self._check_suitable(deposited, land)
            tools = [deposited]

        session = MiningSession(
            land=land,
            user_id=user_id,
            mining_type=mt,
            status=SessionStatus.ACTIVE,
            resource_type=land.resource_type,
            tax_rate=self.economy.tax_rates.get(mt, ZERO),
            user_share_rate=self.economy.user_share_rates.get(mt, ZERO),
            start_time=now,
            last_settlement_time=now,
        )
        db.session.add(session)
        db.session.flush()
        session.session_id = f"MS-{now:%Y%m%d}-{session.id:08d}"
        for tool in tools:
            self.tools.bind(tool, session, now)
        self.recompute_rates(session)
        current_app.logger.info(
            f"[session-start] session={session.session_id} user={user_id} type={mt.value} "
            f"land={land.land_id} tools={len(tools)} rate={session.output_rate}"
        )
        return session, self.grain_warning(session)

    def add_tool(self, user_id: int, session: MiningSession, tool_pk, now=None):
        now = now or utcnow()
        self._require(session, {SessionStatus.ACTIVE}, 'add a tool')
        if not _NEEDS_OWN_TOOLS[session.mining_type]:
            raise InvalidRequest('Sessions without own tools cannot add tools')
        tool = self._own_tools(user_id, session.land, [tool_pk], session)[0]
        result = self._settle(session, now)
        self.tools.bind(tool, session, now)
        self.recompute_rates(session)
        current_app.logger.info(
            f"[session-add-tool] session={session.session_id} tool={tool.tool_id} rate={session.output_rate}"
        )
        return session, result

    def remove_tool(self, user_id: int, session: MiningSession, tool_pk, now=None) -> dict:
        now = now or utcnow()
        self._require(session, {SessionStatus.ACTIVE, SessionStatus.PAUSED}, 'remove a tool')
        binding = next((b for b in session.active_bindings if self.tools.matches(b.tool, tool_pk)), None)
        if binding is None:
            raise ToolNotBound(f'Tool {tool_pk} is not bound to session {session.session_id}', {'tool_id': tool_pk})
        tool = binding.tool
        self._settle(session, now)
        # Settlement may already have released a tool that broke
        if binding.unbound_at is None:
            self.tools.unbind(tool, session, now)
            self.recompute_rates(session)
        current_app.logger.info(f"[session-remove-tool] session={session.session_id} tool={tool.tool_id}")
        return {
            'tool_id': tool.tool_id,
            'durability_consumed': binding.durability_at_bind - tool.durability,
            'remaining_durability': tool.durability,
        }

    def pause(self, session: MiningSession, now=None, reason: str = 'user'):
        now = now or utcnow()
        self._require(session, {SessionStatus.ACTIVE}, 'pause')
        result = self._settle(session, now)
        if session.status == SessionStatus.ACTIVE:
            self._transition(session, SessionStatus.PAUSED)
            session.paused_reason = reason
            current_app.logger.info(f"[session-pause] session={session.session_id} reason={reason}")
        return result

    def force_pause(self, session: MiningSession, at, reason: str) -> None:
        """Pause from inside settlement (grain exhausted)."""
        self._transition(session, SessionStatus.PAUSED)
        session.paused_reason = reason
        current_app.logger.info(
            f"[session-force-pause] session={session.session_id} reason={reason} at={at.isoformat()}"
        )

    def resume(self, session: MiningSession, now=None):
        now = now or utcnow()
        self._require(session, {SessionStatus.PAUSED}, 'resume')
        self._check_quota(session.resource_type, now)
        self._transition(session, SessionStatus.ACTIVE)
        session.paused_reason = None
        session.last_settlement_time = now
        self.recompute_rates(session)
        current_app.logger.info(f"[session-resume] session={session.session_id}")
        return self.grain_warning(session)

    def collect(self, session: MiningSession, now=None) -> dict:
        now = now or utcnow()
        self._require(session, {SessionStatus.ACTIVE, SessionStatus.PAUSED}, 'collect')
        settlement = self._settle(session, now)
        collected = self._release_pending(session)
        balance = self.ledger.balance(session.user_id, session.resource_type)
        return {
            'collected_amount': collected,
            'resource_type': session.resource_type.value,
            'new_balance': balance.available_amount if balance else ZERO,
            'warning': settlement.warning if settlement else None,
        }

    def _release_pending(self, session: MiningSession) -> Decimal:
        pending = session.pending_output
        if pending > 0:
            self.ledger.unfreeze(session.user_id, session.resource_type, pending, 'mining_collect', session.session_id)
            session.collected_output = session.collected_output + pending
        return pending

    def stop(self, session: MiningSession, now=None) -> dict:
        """Final settlement, release pending output and tools, complete."""
        now = now or utcnow()
        self._require(session, {SessionStatus.ACTIVE, SessionStatus.PAUSED}, 'stop')
        settlement = self._settle(session, now)
        auto_collected = self._release_pending(session)
        released = 0
        for tool in list(session.tools):
            self.tools.unbind(tool, session, now)
            released += 1
        self._transition(session, SessionStatus.COMPLETED)
        session.end_time = now
        session.paused_reason = None
        hours = (now - session.start_time).total_seconds() / 3600
        current_app.logger.info(
            f"[session-stop] session={session.session_id} output={session.accumulated_output} tools_released={released}"
        )
        return {
            'final_output': session.accumulated_output,
            'tools_released': released,
            'total_output': session.accumulated_output,
            'total_hours': round(hours, 4),
            'auto_collected': auto_collected,
            'warning': settlement.warning if settlement else None,
        }

    # ---- cascades ----

    def _on_tool_damaged(self, session: MiningSession, tool: Tool, now) -> None:
        self.recompute_rates(session)
        current_app.logger.info(
            f"[session-tool-damaged] session={session.session_id} tool={tool.tool_id} rate={session.output_rate}"
        )
