from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Dict, Iterable, Mapping, Optional

from flask import current_app

from mining import db
from mining.errors import InsufficientResources, InvalidRequest
from mining.models import LedgerOperation, ResourceTransaction, ResourceType, UserResource
from .locks import KeyedLocks, ledger_key


AMOUNT_QUANTUM = Decimal('0.00000001')
ZERO = Decimal('0')


def quantize(value) -> Decimal:
    """Round down to the 8 decimal places every persisted amount carries."""
    return Decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def to_quantity(value) -> Decimal:
    try:
        qty = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequest(f'Invalid quantity: {value!r}')
    if not qty.is_finite() or qty <= 0:
        raise InvalidRequest(f'Quantity must be positive, got {value!r}')
    qty = quantize(qty)
    if qty <= 0:
        raise InvalidRequest(f'Quantity below ledger precision: {value!r}')
    return qty


def to_resource_type(value) -> ResourceType:
    try:
        return ResourceType(getattr(value, 'value', value))
    except ValueError:
        raise InvalidRequest(f'Unknown resource type: {value!r}')


class ResourceLedger:
    """Per-(user, resource_type) balances.

    Only this class writes UserResource rows. Every mutation takes the
    key's lock (reentrant, so callers may pre-acquire a wider ordered set)
    and appends a ResourceTransaction row. Nothing here commits; the
    surrounding unit of work does.
    """

    def __init__(self, locks: KeyedLocks):
        self.locks = locks

    @staticmethod
    def lock_keys(user_id: int, resource_types: Iterable) -> list:
        return [ledger_key(user_id, to_resource_type(rt)) for rt in resource_types]

    def _row(self, user_id: int, resource_type: ResourceType, create: bool = True) -> Optional[UserResource]:
        row = (
            UserResource.query
            .filter_by(user_id=user_id, resource_type=resource_type)
            .with_for_update()
            .first()
        )
        if row is None and create:
            row = UserResource(user_id=user_id, resource_type=resource_type, amount=ZERO, frozen_amount=ZERO)
            db.session.add(row)
            db.session.flush()
        return row

    def _journal(self, user_id, resource_type, operation, qty, reason, reference):
        db.session.add(ResourceTransaction(
            user_id=user_id,
            resource_type=resource_type,
            operation=operation,
            quantity=qty,
            reason=reason,
            reference=reference,
        ))

    def _shortfall(self, user_id, resource_type, required, available):
        current_app.logger.info(
            f"[ledger-short] user={user_id} resource={resource_type.value} required={required} available={available}"
        )
        return InsufficientResources(
            f'Insufficient {resource_type.value}: need {required}, have {available}',
            {
                'required': {resource_type.value: str(required)},
                'current': {resource_type.value: str(available)},
            },
        )

    def balance(self, user_id: int, resource_type) -> Optional[UserResource]:
        return UserResource.query.filter_by(user_id=user_id, resource_type=to_resource_type(resource_type)).first()

    def available(self, user_id: int, resource_type) -> Decimal:
        row = self.balance(user_id, resource_type)
        return row.available_amount if row else ZERO

    def balances(self, user_id: int) -> Dict[str, UserResource]:
        rows = {r.resource_type.value: r for r in UserResource.query.filter_by(user_id=user_id).all()}
        return {rt.value: rows.get(rt.value) for rt in ResourceType}

    def credit(self, user_id: int, resource_type, qty, reason: str, reference: str = None) -> UserResource:
        rt = to_resource_type(resource_type)
        qty = to_quantity(qty)
        with self.locks.hold([ledger_key(user_id, rt)]):
            row = self._row(user_id, rt)
            row.amount = row.amount + qty
            self._journal(user_id, rt, LedgerOperation.CREDIT, qty, reason, reference)
            return row

    def debit(self, user_id: int, resource_type, qty, reason: str, reference: str = None) -> UserResource:
        rt = to_resource_type(resource_type)
        qty = to_quantity(qty)
        with self.locks.hold([ledger_key(user_id, rt)]):
            row = self._row(user_id, rt)
            if row.available_amount < qty:
                raise self._shortfall(user_id, rt, qty, row.available_amount)
            row.amount = row.amount - qty
            self._journal(user_id, rt, LedgerOperation.DEBIT, qty, reason, reference)
            return row

    def freeze(self, user_id: int, resource_type, qty, reason: str, reference: str = None) -> UserResource:
        rt = to_resource_type(resource_type)
        qty = to_quantity(qty)
        with self.locks.hold([ledger_key(user_id, rt)]):
            row = self._row(user_id, rt)
            if row.available_amount < qty:
                raise self._shortfall(user_id, rt, qty, row.available_amount)
            row.frozen_amount = row.frozen_amount + qty
            self._journal(user_id, rt, LedgerOperation.FREEZE, qty, reason, reference)
            return row

    def unfreeze(self, user_id: int, resource_type, qty, reason: str, reference: str = None) -> UserResource:
        rt = to_resource_type(resource_type)
        qty = to_quantity(qty)
        with self.locks.hold([ledger_key(user_id, rt)]):
            row = self._row(user_id, rt)
            if row.frozen_amount < qty:
                raise InvalidRequest(
                    f'Cannot unfreeze {qty} {rt.value}: only {row.frozen_amount} frozen'
                )
            row.frozen_amount = row.frozen_amount - qty
            self._journal(user_id, rt, LedgerOperation.UNFREEZE, qty, reason, reference)
            return row

    def consume_frozen(self, user_id: int, resource_type, qty, reason: str, reference: str = None) -> UserResource:
        rt = to_resource_type(resource_type)
        qty = to_quantity(qty)
        with self.locks.hold([ledger_key(user_id, rt)]):
            row = self._row(user_id, rt)
            if row.frozen_amount < qty:
                raise InvalidRequest(
                    f'Cannot consume {qty} frozen {rt.value}: only {row.frozen_amount} frozen'
                )
            row.frozen_amount = row.frozen_amount - qty
            row.amount = row.amount - qty
            self._journal(user_id, rt, LedgerOperation.CONSUME_FROZEN, qty, reason, reference)
            return row

    def debit_many(self, user_id: int, costs: Mapping, reason: str, reference: str = None) -> Dict[str, Decimal]:
        """Debit several resource types as one all-or-nothing operation.

        Every component is checked before anything moves; when one is short
        the whole call raises InsufficientResources and no row changes.
        Components are then frozen and consumed in key order.
        """
        wanted = {}
        for rt, qty in costs.items():
            if Decimal(str(qty)) == 0:
                continue
            wanted[to_resource_type(rt)] = to_quantity(qty)
        if not wanted:
            return {}

        ordered = sorted(wanted, key=lambda rt: rt.value)
        with self.locks.hold([ledger_key(user_id, rt) for rt in ordered]):
            rows = {rt: self._row(user_id, rt) for rt in ordered}
            short = {rt: rows[rt].available_amount for rt in ordered if rows[rt].available_amount < wanted[rt]}
            if short:
                current_app.logger.info(
                    f"[ledger-short] user={user_id} reason={reason} short={sorted(rt.value for rt in short)}"
                )
                raise InsufficientResources(
                    'Insufficient resources: ' + ', '.join(
                        f'{rt.value} need {wanted[rt]}, have {avail}' for rt, avail in short.items()
                    ),
                    {
                        'required': {rt.value: str(q) for rt, q in wanted.items()},
                        'current': {rt.value: str(rows[rt].available_amount) for rt in ordered},
                    },
                )
            for rt in ordered:
                self.freeze(user_id, rt, wanted[rt], reason, reference)
                self.consume_frozen(user_id, rt, wanted[rt], reason, reference)
        return {rt.value: qty for rt, qty in wanted.items()}
