from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from flask import current_app

from mining import db
from mining.models import MiningSession, ResourceType, SessionStatus, SettlementRecord, utcnow
from .ledger import ZERO, ResourceLedger, quantize
from .locks import ledger_key
from .quota import DailyQuota, day_bounds
from .sessions import GRAIN_INSUFFICIENT, YLD_EXHAUSTED, MiningSessionManager
from .tools import ToolRegistry


_US_PER_HOUR = Decimal(3_600_000_000)


def hours_between(start: datetime, end: datetime) -> Decimal:
    """Elapsed hours, zero when the clock went backwards."""
    delta = end - start
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    return max(ZERO, Decimal(micros) / _US_PER_HOUR)


def after_hours(start: datetime, hours: Decimal) -> datetime:
    micros = int((hours * _US_PER_HOUR).to_integral_value(rounding=ROUND_HALF_UP))
    return start + timedelta(microseconds=micros)


@dataclass
class SettlementResult:
    session_id: str
    window_start: datetime
    window_end: datetime
    hours: Decimal = ZERO
    gross_output: Decimal = ZERO
    tax: Decimal = ZERO
    user_output: Decimal = ZERO
    owner_output: Decimal = ZERO
    grain_consumed: Decimal = ZERO
    segments: int = 0
    broken_tools: List[str] = field(default_factory=list)
    warning: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'window_start': self.window_start.isoformat(),
            'window_end': self.window_end.isoformat(),
            'hours': str(self.hours),
            'gross_output': str(self.gross_output),
            'tax': str(self.tax),
            'user_output': str(self.user_output),
            'owner_output': str(self.owner_output),
            'grain_consumed': str(self.grain_consumed),
            'broken_tools': self.broken_tools,
            'warning': self.warning,
        }


class SettlementEngine:
    """Brings a session's accumulators current and realises output in the ledger.

    The window [last_settlement_time, now] is cut into segments at every
    instant a bound tool wears out, so output and grain stop for a tool the
    moment it breaks. Each segment:

    - gross = output_rate × hours; tax and user share are fractions of gross
    - the remainder after tax and user share is credited to the land owner
    - the miner's share is credited and frozen until collected
    - grain_consumption_rate × hours is debited from the miner

    When grain runs short only the covered fraction of the segment settles,
    the session is force-paused and a grain_insufficient warning is returned.
    Sessions on a capped resource stop the same way, with yld_exhausted, once
    the day's quota is used up.
    ``last_settlement_time`` moves in the same transaction as the ledger rows,
    so a rolled-back settlement is retried from the same instant.
    """

    def __init__(self, ledger: ResourceLedger, tools: ToolRegistry, manager: MiningSessionManager,
                 quota: DailyQuota = None):
        self.ledger = ledger
        self.tools = tools
        self.manager = manager
        self.quota = quota
        manager.settlement = self

    def _capped(self, session: MiningSession) -> bool:
        return self.quota is not None and self.quota.applies_to(session.resource_type)

    def lock_keys(self, session: MiningSession) -> list:
        keys = {
            ledger_key(session.user_id, ResourceType.GRAIN),
            ledger_key(session.user_id, session.resource_type),
        }
        if session.land is not None:
            keys.add(ledger_key(session.land.owner_id, session.resource_type))
        if self._capped(session):
            keys.add(self.quota.lock_key)
        return list(keys)

    def settle(self, session: MiningSession, now=None) -> SettlementResult:
        now = now or utcnow()
        start = session.last_settlement_time or session.start_time
        result = SettlementResult(session_id=session.session_id, window_start=start, window_end=start)
        if session.status != SessionStatus.ACTIVE:
            return result

        capped = self._capped(session)
        total = hours_between(start, now)
        elapsed = ZERO
        stop_reason = None
        while elapsed < total:
            seg_start = after_hours(start, elapsed)
            segment = total - elapsed
            for tool in session.tools:
                to_break = self.tools.hours_until_broken(tool)
                if to_break is not None and to_break < segment:
                    segment = to_break

            if capped:
                # Each segment stays inside one UTC day and within that day's allowance
                segment = min(segment, hours_between(seg_start, day_bounds(seg_start)[1]))
                allowance = self.quota.remaining(seg_start)
                if session.output_rate > 0 and session.output_rate * segment > allowance:
                    segment = allowance / session.output_rate
                    stop_reason = YLD_EXHAUSTED

            grain = quantize(session.grain_consumption_rate * segment)
            available = self.ledger.available(session.user_id, ResourceType.GRAIN)
            if grain > available:
                # Cover only the share of the segment the remaining grain pays for
                segment = segment * available / grain
                grain = available
                stop_reason = GRAIN_INSUFFICIENT

            if segment > 0:
                self._apply_segment(session, result, start, elapsed, segment, grain)
            elapsed += segment
            if stop_reason:
                break

        end = after_hours(start, elapsed) if stop_reason else max(now, start)
        session.last_settlement_time = end
        result.window_end = end
        result.hours = elapsed
        if stop_reason:
            self.manager.force_pause(session, end, stop_reason)
            if stop_reason == GRAIN_INSUFFICIENT:
                message = f'Grain ran out after {quantize(elapsed)} hours; session paused'
            else:
                message = f"Today's {session.resource_type.value} output limit is reached; session paused"
            result.warning = {'code': stop_reason, 'message': message, 'paused_at': end.isoformat()}
        if result.segments:
            current_app.logger.info(
                f"[settle] session={session.session_id} hours={quantize(elapsed)} user_output={result.user_output} "
                f"tax={result.tax} grain={result.grain_consumed} stop={stop_reason}"
            )
        return result

        total = hours_between(start, now)
        elapsed = ZERO
        starved = False
        while elapsed < total:
            segment = total - elapsed
            for tool in session.tools:
                to_break = self.tools.hours_until_broken(tool)
                if to_break is not None and to_break < segment:
                    segment = to_break

            grain = quantize(session.grain_consumption_rate * segment)
            available = self.ledger.available(session.user_id, ResourceType.GRAIN)
            if grain > available:
                # Cover only the share of the segment the remaining grain pays for
                segment = segment * available / grain
                grain = available
                starved = True

            if segment > 0:
                self._apply_segment(session, result, start, elapsed, segment, grain)
            elapsed += segment
            if starved:
                break

        end = after_hours(start, elapsed) if starved else max(now, start)
        session.last_settlement_time = end
        result.window_end = end
        result.hours = elapsed
        if starved:
            self.manager.force_pause(session, end, GRAIN_INSUFFICIENT)
            result.warning = {
                'code': GRAIN_INSUFFICIENT,
                'message': f'Grain ran out after {quantize(elapsed)} hours; session paused',
                'paused_at': end.isoformat(),
            }
        if result.segments:
            current_app.logger.info(
                f"[settle] session={session.session_id} hours={quantize(elapsed)} user_output={result.user_output} "
                f"tax={result.tax} grain={result.grain_consumed} starved={starved}"
            )
        return result

    def _apply_segment(self, session, result, window_start, elapsed, hours, grain) -> None:
        seg_start = after_hours(window_start, elapsed)
        seg_end = after_hours(window_start, elapsed + hours)
        tools = session.tools
        gross = quantize(session.output_rate * hours)
        tax = quantize(gross * session.tax_rate)
        user_output = quantize(gross * session.user_share_rate)
        owner_output = max(ZERO, gross - tax - user_output)
        reference = session.session_id

        if grain > 0:
            self.ledger.debit(session.user_id, ResourceType.GRAIN, grain, 'mining_grain', reference)
        if user_output > 0:
            self.ledger.credit(session.user_id, session.resource_type, user_output, 'mining_output', reference)
            self.ledger.freeze(session.user_id, session.resource_type, user_output, 'mining_pending', reference)
        if owner_output > 0:
            self.ledger.credit(session.land.owner_id, session.resource_type, owner_output, 'mining_owner_share', reference)

        session.accumulated_output = session.accumulated_output + user_output
        session.accumulated_tax = session.accumulated_tax + tax
        session.accumulated_owner_output = session.accumulated_owner_output + owner_output
        session.grain_consumed = session.grain_consumed + grain

        db.session.add(SettlementRecord(
            session_id=session.id,
            window_start=seg_start,
            window_end=seg_end,
            hours=quantize(hours),
            output_rate=session.output_rate,
            tool_count=len(tools),
            gross_output=gross,
            tax=tax,
            user_output=user_output,
            owner_output=owner_output,
            grain_consumed=grain,
        ))

        for tool in tools:
            self.tools.apply_wear(tool, hours, seg_end)
            if tool.durability == 0:
                result.broken_tools.append(tool.tool_id)

        result.segments += 1
        result.gross_output += gross
        result.tax += tax
        result.user_output += user_output
        result.owner_output += owner_output
        result.grain_consumed += grain
