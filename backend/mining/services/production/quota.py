"""Daily system-wide output cap for a capped resource (YLD)."""

from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Tuple

from mining import db
from mining.models import MiningSession, ResourceType, SettlementRecord
from .ledger import ZERO, quantize, to_resource_type
from .locks import quota_key


PERCENT_QUANTUM = Decimal('0.01')


def day_bounds(at: datetime) -> Tuple[datetime, datetime]:
    start = at.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class DailyQuota:
    """Caps the gross output of every session mining ``resource_type``.

    Usage is the sum of SettlementRecord.gross_output whose window starts on
    the UTC day in question. Settlement splits windows at midnight, so every
    record belongs to exactly one day. Callers that add usage hold
    ``lock_key`` for the whole unit of work.
    """

    def __init__(self, daily_limit, warning_ratio='0.9', resource_type=ResourceType.YLD):
        self.daily_limit = Decimal(str(daily_limit))
        self.warning_ratio = Decimal(str(warning_ratio))
        self.resource_type = to_resource_type(resource_type)
        if self.daily_limit < 0:
            raise ValueError(f'daily_limit must be >= 0, got {self.daily_limit}')

    @classmethod
    def from_config(cls, config) -> 'DailyQuota':
        return cls(config.get('YLD_DAILY_LIMIT', '208'), config.get('YLD_WARNING_RATIO', '0.9'))

    @property
    def lock_key(self):
        return quota_key(self.resource_type)

    def applies_to(self, resource_type) -> bool:
        return resource_type == self.resource_type

    def produced_on(self, at: datetime) -> Decimal:
        start, end = day_bounds(at)
        rows = (
            db.session.query(SettlementRecord.gross_output)
            .join(MiningSession, MiningSession.id == SettlementRecord.session_id)
            .filter(
                MiningSession.resource_type == self.resource_type,
                SettlementRecord.window_start >= start,
                SettlementRecord.window_start < end,
            )
        )
        return sum((value for value, in rows), ZERO)

    def remaining(self, at: datetime) -> Decimal:
        return max(ZERO, self.daily_limit - self.produced_on(at))

    def is_exhausted(self, at: datetime) -> bool:
        return self.remaining(at) <= 0

    def percentage_used(self, produced: Decimal) -> Decimal:
        if self.daily_limit <= 0:
            return Decimal('100.00')
        return (produced * 100 / self.daily_limit).quantize(PERCENT_QUANTUM, rounding=ROUND_DOWN)

    def near_limit(self, produced: Decimal) -> bool:
        return produced >= self.daily_limit * self.warning_ratio

    def status(self, at: datetime) -> dict:
        produced = self.produced_on(at)
        remaining = max(ZERO, self.daily_limit - produced)
        return {
            'resource_type': self.resource_type.value,
            'daily_limit': str(quantize(self.daily_limit)),
            'produced_today': str(quantize(produced)),
            'remaining': str(quantize(remaining)),
            'percentage_used': str(self.percentage_used(produced)),
            'is_exhausted': remaining <= 0,
            'resets_at': day_bounds(at)[1].isoformat(),
        }
