from decimal import Decimal

import pytest

from mining import db
from mining.errors import InsufficientResources, InvalidRequest
from mining.models import LedgerOperation, ResourceTransaction, ResourceType

from conftest import journal_total


def test_grant_credits_and_journals(engine, world):
    available = engine.grant(world.miner, 'iron', '12.5')
    assert available == Decimal('12.5')
    row = engine.ledger.balance(world.miner, ResourceType.IRON)
    assert row.amount == Decimal('12.5')
    assert row.frozen_amount == 0
    ops = [t.operation for t in ResourceTransaction.query.filter_by(user_id=world.miner)]
    assert ops == [LedgerOperation.CREDIT]


def test_debit_rejects_shortfall_without_change(engine, world):
    engine.grant(world.miner, 'wood', '5')
    with pytest.raises(InsufficientResources) as exc:
        with engine.unit_of_work():
            engine.ledger.debit(world.miner, 'wood', '6', 'test')
    assert exc.value.details['required'] == {'wood': '6.00000000'}
    assert engine.ledger.available(world.miner, 'wood') == Decimal('5')


def test_freeze_reduces_available_not_amount(engine, world):
    engine.grant(world.miner, 'grain', '10')
    with engine.unit_of_work():
        engine.ledger.freeze(world.miner, 'grain', '4', 'hold')
    row = engine.ledger.balance(world.miner, 'grain')
    assert row.amount == Decimal('10')
    assert row.frozen_amount == Decimal('4')
    assert row.available_amount == Decimal('6')

    with pytest.raises(InsufficientResources):
        with engine.unit_of_work():
            engine.ledger.debit(world.miner, 'grain', '7', 'test')

    with engine.unit_of_work():
        engine.ledger.consume_frozen(world.miner, 'grain', '3', 'burn')
        engine.ledger.unfreeze(world.miner, 'grain', '1', 'release')
    row = engine.ledger.balance(world.miner, 'grain')
    assert row.amount == Decimal('7')
    assert row.frozen_amount == 0


def test_unfreeze_more_than_frozen_is_rejected(engine, world):
    engine.grant(world.miner, 'stone', '3')
    with pytest.raises(InvalidRequest):
        with engine.unit_of_work():
            engine.ledger.unfreeze(world.miner, 'stone', '1', 'release')


@pytest.mark.parametrize('qty', ['0', '-1', 'abc', None, '0.000000001'])
def test_quantity_validation(engine, world, qty):
    with pytest.raises(InvalidRequest):
        engine.grant(world.miner, 'iron', qty)


def test_unknown_resource_type(engine, world):
    with pytest.raises(InvalidRequest):
        engine.grant(world.miner, 'gold', '1')


def test_debit_many_is_all_or_nothing(engine, world):
    engine.grant(world.miner, 'iron', '100')
    engine.grant(world.miner, 'wood', '10')
    with pytest.raises(InsufficientResources) as exc:
        with engine.unit_of_work():
            engine.ledger.debit_many(world.miner, {'iron': '70', 'wood': '30'}, 'synthesis')
    assert exc.value.details['current'] == {'iron': '100.00000000', 'wood': '10.00000000'}
    assert engine.ledger.available(world.miner, 'iron') == Decimal('100')
    assert engine.ledger.available(world.miner, 'wood') == Decimal('10')
    assert ResourceTransaction.query.filter_by(reason='synthesis').count() == 0

    with engine.unit_of_work():
        consumed = engine.ledger.debit_many(world.miner, {'iron': '70', 'wood': '10', 'stone': 0}, 'synthesis')
    assert consumed == {'iron': Decimal('70'), 'wood': Decimal('10')}
    assert engine.ledger.available(world.miner, 'iron') == Decimal('30')
    assert engine.ledger.available(world.miner, 'wood') == 0


def test_journal_matches_balances(engine, world):
    engine.grant(world.miner, 'iron', '50')
    with engine.unit_of_work():
        engine.ledger.debit(world.miner, 'iron', '7.25', 'spend')
        engine.ledger.freeze(world.miner, 'iron', '10', 'hold')
        engine.ledger.consume_frozen(world.miner, 'iron', '4', 'burn')
        engine.ledger.credit(world.miner, 'iron', '0.5', 'refund')
    db.session.expire_all()
    row = engine.ledger.balance(world.miner, 'iron')
    assert row.amount == journal_total(world.miner, ResourceType.IRON)
    assert row.amount == Decimal('39.25')
    assert row.frozen_amount == Decimal('6')


def test_balances_lists_every_resource_type(engine, world):
    engine.grant(world.miner, 'yld', '1')
    balances = engine.resources(world.miner)
    assert set(balances) == {rt.value for rt in ResourceType}
    assert balances['yld']['available_amount'] == '1.00000000'
    assert balances['brick']['amount'] == '0'
