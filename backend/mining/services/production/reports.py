from decimal import Decimal
from typing import List, Optional

from mining.models import (
    MiningSession,
    ResourceTransaction,
    ResourceType,
    SessionStatus,
    SettlementRecord,
    Tool,
    ToolStatus,
)
from .ledger import ZERO, ResourceLedger, quantize
from .quota import DailyQuota, day_bounds
from .sessions import MiningSessionManager
from .settlement import hours_between
from .tools import ToolRegistry


class ProductionReports:
    """Read-only views: pre-flight checks, summaries, grain runway, quota status.

    Nothing here settles or writes. Figures reflect the last committed
    settlement; ``unsettled_hours`` says how far behind that is.
    """

    def __init__(self, ledger: ResourceLedger, tools: ToolRegistry, sessions: MiningSessionManager,
                 quota: DailyQuota):
        self.ledger = ledger
        self.tools = tools
        self.sessions = sessions
        self.quota = quota

    @staticmethod
    def _active(user_id: int = None) -> List[MiningSession]:
        query = MiningSession.query.filter_by(status=SessionStatus.ACTIVE)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.order_by(MiningSession.id).all()

    @staticmethod
    def _idle_tools(user_id: int) -> int:
        return Tool.query.filter_by(
            owner_id=user_id,
            status=ToolStatus.IDLE,
            current_session_id=None,
            deposited_land_id=None,
        ).count()

    def _runway(self, user_id: int, active) -> tuple:
        grain = self.ledger.available(user_id, ResourceType.GRAIN)
        rate = sum((s.grain_consumption_rate for s in active), ZERO)
        hours = quantize(grain / rate) if rate > 0 else None
        return grain, rate, hours

    def food_status(self, user_id: int) -> dict:
        active = self._active(user_id)
        grain, rate, hours = self._runway(user_id, active)
        low = hours is not None and hours < self.sessions.economy.low_grain_hours
        return {
            'current_food': str(grain),
            'consumption_rate': str(rate),
            'hours_sustainable': str(hours) if hours is not None else None,
            'hours_sustainable_display': f'{hours:.1f}h' if hours is not None else 'unlimited',
            'warning': low,
            'warning_message': f'Grain covers only {hours:.1f} hours of mining' if low else None,
            'active_sessions_count': len(active),
        }

    def pre_check(self, user_id: int, now) -> dict:
        errors, warnings = [], []
        idle = self._idle_tools(user_id)
        if idle == 0:
            errors.append('No idle tools available')

        grain = self.ledger.available(user_id, ResourceType.GRAIN)
        per_tool = self.sessions.economy.grain_per_tool_hour
        food_hours: Optional[Decimal] = quantize(grain / per_tool) if per_tool > 0 else None
        if grain <= 0:
            warnings.append('No grain available; new sessions will pause at the first settlement')
        elif food_hours is not None and food_hours < self.sessions.economy.low_grain_hours:
            warnings.append(f'Grain covers only {food_hours:.1f} hours for one tool')

        produced = self.quota.produced_on(now)
        remaining = max(ZERO, self.quota.daily_limit - produced)
        if remaining <= 0:
            warnings.append(f"Today's {self.quota.resource_type.value} output is exhausted")
        elif self.quota.near_limit(produced):
            warnings.append(
                f"{self.quota.resource_type.value} output is at {self.quota.percentage_used(produced)}% "
                f"of today's limit"
            )

        return {
            'can_mine': not errors,
            'warnings': warnings,
            'errors': errors,
            'idle_tools': idle,
            'food_amount': str(grain),
            'food_hours_available': str(food_hours) if food_hours is not None else None,
            'yld_status': {
                'remaining': str(quantize(remaining)),
                'percentage_used': str(self.quota.percentage_used(produced)),
            },
            'active_sessions': len(self._active(user_id)),
        }

    def summary(self, user_id: int, now) -> dict:
        active = self._active(user_id)
        sessions = []
        for s in active:
            unsettled = hours_between(s.last_settlement_time or s.start_time, now)
            sessions.append({
                'session_id': s.session_id,
                'resource_type': s.resource_type.value,
                'land_id': s.land.land_id,
                'output_rate': str(s.output_rate),
                'tool_count': len(s.tools),
                'started_at': s.start_time.isoformat(),
                'hours_worked': str(quantize(hours_between(s.start_time, now))),
                'unsettled_hours': str(quantize(unsettled)),
                'pending_output': str(s.pending_output),
                'can_collect': s.pending_output > 0 or unsettled > 0,
            })
        _, consumption, hours = self._runway(user_id, active)

        tool_stats = self.tools.stats(user_id)['by_status']
        day_start, day_end = day_bounds(now)
        today = (
            SettlementRecord.query
            .join(MiningSession, MiningSession.id == SettlementRecord.session_id)
            .filter(
                MiningSession.user_id == user_id,
                SettlementRecord.window_start >= day_start,
                SettlementRecord.window_start < day_end,
            )
            .all()
        )
        collections = ResourceTransaction.query.filter(
            ResourceTransaction.user_id == user_id,
            ResourceTransaction.reason == 'mining_collect',
            ResourceTransaction.created_at >= day_start,
            ResourceTransaction.created_at < day_end,
        ).count()

        quota = self.quota.status(now)
        return {
            'active_sessions': {
                'count': len(active),
                'sessions': sessions,
                'total_hourly_output': str(sum((s.output_rate for s in active), ZERO)),
                'total_food_consumption': str(consumption),
            },
            'resources': {
                name: str(row.available_amount if row else ZERO)
                for name, row in self.ledger.balances(user_id).items()
            },
            'tools': {
                'total': sum(tool_stats.values()),
                'in_use': tool_stats[ToolStatus.WORKING.value],
                'idle': tool_stats[ToolStatus.IDLE.value],
                'damaged': tool_stats[ToolStatus.DAMAGED.value],
            },
            'food_sustainability_hours': str(hours) if hours is not None else None,
            'today_production': {
                'total_output': str(sum((r.user_output for r in today), ZERO)),
                'collection_count': collections,
            },
            'yld_status': {k: quota[k] for k in ('daily_limit', 'remaining', 'percentage_used', 'is_exhausted')},
        }

    def quota_status(self, user_id: int, now) -> dict:
        status = self.quota.status(now)
        capped = [s for s in self._active() if self.quota.applies_to(s.resource_type)]
        produced = self.quota.produced_on(now)
        elapsed = hours_between(day_bounds(now)[0], now)
        status.update({
            'active_sessions': len(capped),
            'total_tools': sum(len(s.tools) for s in capped),
            'theoretical_hourly': str(sum((s.output_rate for s in capped), ZERO)),
            'actual_hourly': str(quantize(produced / elapsed)) if elapsed > 0 else str(ZERO),
        })
        mine = next((s for s in capped if s.user_id == user_id), None)
        if mine is not None:
            status['user_session'] = {
                'session_id': mine.session_id,
                'output_rate': str(mine.output_rate),
                'tool_count': len(mine.tools),
                'started_at': mine.start_time.isoformat(),
            }
        if status['is_exhausted']:
            status['warning'] = f"Today's output limit is reached; capped sessions resume after {status['resets_at']}"
        elif self.quota.near_limit(produced):
            status['warning'] = f"Output is at {status['percentage_used']}% of today's limit"
        return status

    def check_before_mining(self, now) -> dict:
        produced = self.quota.produced_on(now)
        remaining = max(ZERO, self.quota.daily_limit - produced)
        can_mine = remaining > 0
        return {
            'can_mine': can_mine,
            'daily_limit': str(quantize(self.quota.daily_limit)),
            'remaining': str(quantize(remaining)),
            'percentage_used': str(self.quota.percentage_used(produced)),
            'message': (
                f'{quantize(remaining)} {self.quota.resource_type.value} left today'
                if can_mine else f"Today's {self.quota.resource_type.value} output is exhausted"
            ),
        }
