import re
from decimal import Decimal

import pytest

from mining import db
from mining.errors import (
    InvalidRequest,
    LandUnavailable,
    SessionNotActive,
    SessionNotFound,
    ToolAlreadyWorking,
    ToolLandMismatch,
    ToolNotBound,
    ToolNotFound,
)
from mining.models import MiningSession, SessionStatus, Tool, ToolStatus, User

from conftest import T0, hours


@pytest.fixture()
def stocked(engine, world):
    engine.grant(world.miner, 'grain', '100')
    return world


def _session(pk) -> MiningSession:
    return db.session.get(MiningSession, pk)


def test_start_self_mining(engine, stocked, make_tool):
    pk = make_tool(stocked.miner)
    result = engine.start_self_mining(stocked.miner, stocked.miner_mine, [pk], now=T0)
    data = result['session']
    assert result['warning'] is None
    assert re.fullmatch(r'MS-20260105-\d{8}', data['session_id'])
    assert data['status'] == 'active'
    assert data['mining_type'] == 'self'
    assert data['resource_type'] == 'iron'
    assert Decimal(data['output_rate']) == 1
    assert Decimal(data['grain_consumption_rate']) == 2
    assert Decimal(data['tax_rate']) == Decimal('0.05')
    assert Decimal(data['user_share_rate']) == Decimal('0.95')
    assert data['is_grain_sufficient'] is True
    assert [t['id'] for t in data['tools']] == [pk]
    assert db.session.get(Tool, pk).status == ToolStatus.WORKING


def test_start_accepts_land_pk_or_code(engine, stocked, make_tool):
    from mining.models import Land
    land = Land.query.filter_by(land_id=stocked.miner_forest).first()
    result = engine.start_self_mining(stocked.miner, land.id, [make_tool(stocked.miner, 'axe')], now=T0)
    assert result['session']['resource_type'] == 'wood'


def test_start_rejections(engine, stocked, make_tool):
    pickaxe = make_tool(stocked.miner)
    axe = make_tool(stocked.miner, 'axe')
    foreign = make_tool(stocked.landlord)

    with pytest.raises(LandUnavailable):
        engine.start_self_mining(stocked.miner, stocked.landlord_mine, [pickaxe], now=T0)
    with pytest.raises(LandUnavailable):
        engine.start_hired_with_tool(stocked.miner, stocked.miner_mine, [pickaxe], now=T0)
    with pytest.raises(LandUnavailable):
        engine.start_self_mining(stocked.miner, 'L-NOPE', [pickaxe], now=T0)
    with pytest.raises(ToolNotFound):
        engine.start_self_mining(stocked.miner, stocked.miner_mine, [foreign], now=T0)
    with pytest.raises(ToolLandMismatch):
        engine.start_self_mining(stocked.miner, stocked.miner_mine, [axe], now=T0)
    with pytest.raises(InvalidRequest):
        engine.start_self_mining(stocked.miner, stocked.miner_mine, [], now=T0)
    assert MiningSession.query.count() == 0


def test_land_without_resource_is_unavailable(engine, stocked, make_tool):
    with pytest.raises(LandUnavailable):
        engine.start_hired_with_tool(stocked.miner, stocked.plaza, [make_tool(stocked.miner)], now=T0)


def test_start_without_grain_warns(engine, world, make_tool):
    result = engine.start_self_mining(world.miner, world.miner_mine, [make_tool(world.miner)], now=T0)
    assert result['session']['status'] == 'active'
    assert result['warning']['code'] == 'grain_insufficient'
    assert result['session']['is_grain_sufficient'] is False


def test_start_with_little_grain_warns_low(engine, world, make_tool):
    engine.grant(world.miner, 'grain', '1')
    result = engine.start_self_mining(world.miner, world.miner_mine, [make_tool(world.miner)], now=T0)
    assert result['warning']['code'] == 'grain_low'
    assert result['warning']['hours_remaining'] == '0.50000000'


def test_add_and_remove_tool(engine, stocked, make_tool):
    first, second = make_tool(stocked.miner), make_tool(stocked.miner)
    pk = engine.start_self_mining(stocked.miner, stocked.miner_mine, [first], now=T0)['session']['id']

    added = engine.add_tool(stocked.miner, pk, second, now=hours(1))
    assert added['new_output_rate'] == '2.00000000'
    assert added['session']['grain_consumption_rate'] == '4.00000000'
    # The hour before the tool joined settled at the old rate
    assert _session(pk).accumulated_output == Decimal('0.95')

    removed = engine.remove_tool(stocked.miner, pk, first, now=hours(3))
    assert removed['durability_consumed'] == 3
    assert removed['remaining_durability'] == 1497
    session = _session(pk)
    assert session.output_rate == Decimal('1')
    assert session.accumulated_output == Decimal('4.75')
    assert db.session.get(Tool, first).status == ToolStatus.IDLE

    with pytest.raises(ToolNotBound):
        engine.remove_tool(stocked.miner, pk, first, now=hours(3))


def test_pause_and_resume_skip_paused_time(engine, stocked, make_tool):
    tool = make_tool(stocked.miner)
    pk = engine.start_self_mining(stocked.miner, stocked.miner_mine, [tool], now=T0)['session']['id']

    paused = engine.pause(stocked.miner, pk, now=hours(1))
    assert paused['session']['status'] == 'paused'
    assert paused['session']['paused_reason'] == 'user'
    assert db.session.get(Tool, tool).status == ToolStatus.IDLE
    with pytest.raises(SessionNotActive):
        engine.pause(stocked.miner, pk, now=hours(2))

    # Settling a paused session accrues nothing
    engine.settle(pk, now=hours(3))
    assert _session(pk).accumulated_output == Decimal('0.95')

    resumed = engine.resume(stocked.miner, pk, now=hours(5))
    assert resumed['session']['status'] == 'active'
    assert db.session.get(Tool, tool).status == ToolStatus.WORKING
    with pytest.raises(SessionNotActive):
        engine.resume(stocked.miner, pk, now=hours(5))

    engine.settle(pk, now=hours(6))
    session = _session(pk)
    assert session.accumulated_output == Decimal('1.9')
    assert session.grain_consumed == Decimal('4')


def test_collect_unfreezes_pending_output(engine, stocked, make_tool):
    pk = engine.start_self_mining(stocked.miner, stocked.miner_mine, [make_tool(stocked.miner)], now=T0)['session']['id']
    engine.settle(pk, now=hours(2))
    assert engine.ledger.available(stocked.miner, 'iron') == 0

    result = engine.collect(stocked.miner, pk, now=hours(4))
    assert result['collected_amount'] == Decimal('3.8')
    assert result['resource_type'] == 'iron'
    assert result['new_balance'] == Decimal('3.8')

    again = engine.collect(stocked.miner, pk, now=hours(4))
    assert again['collected_amount'] == 0


def test_stop_settles_collects_and_completes(engine, stocked, make_tool):
    tool = make_tool(stocked.miner)
    pk = engine.start_self_mining(stocked.miner, stocked.miner_mine, [tool], now=T0)['session']['id']

    summary = engine.stop(stocked.miner, pk, now=hours(2))
    assert summary['tools_released'] == 1
    assert summary['auto_collected'] == Decimal('1.9')
    assert summary['total_hours'] == 2.0
    assert summary['session']['status'] == 'completed'
    assert summary['session']['end_time'] == hours(2).isoformat()
    assert engine.ledger.available(stocked.miner, 'iron') == Decimal('1.9')
    assert db.session.get(Tool, tool).status == ToolStatus.IDLE
    assert db.session.get(Tool, tool).current_session_id is None

    for command in (engine.stop, engine.pause, engine.collect):
        with pytest.raises(SessionNotActive):
            command(stocked.miner, pk, now=hours(3))
    with pytest.raises(SessionNotActive):
        engine.add_tool(stocked.miner, pk, make_tool(stocked.miner), now=hours(3))

    # Completed sessions never change again
    engine.settle(pk, now=hours(10))
    assert _session(pk).accumulated_output == Decimal('1.9')
    assert _session(pk).end_time == hours(2)


def test_stop_all(engine, stocked, make_tool):
    a = engine.start_self_mining(stocked.miner, stocked.miner_mine, [make_tool(stocked.miner)], now=T0)['session']['id']
    engine.start_self_mining(stocked.miner, stocked.miner_forest, [make_tool(stocked.miner, 'axe')], now=T0)
    engine.pause(stocked.miner, a, now=hours(1))

    result = engine.stop_all(stocked.miner, now=hours(2))
    assert result['stopped_count'] == 2
    assert result['total_collected'] == Decimal('2.85')
    assert {s['resource_type'] for s in result['sessions']} == {'iron', 'wood'}
    assert MiningSession.query.filter(MiningSession.status != SessionStatus.COMPLETED).count() == 0
    assert engine.stop_all(stocked.miner, now=hours(3))['stopped_count'] == 0


def test_sessions_are_private(engine, stocked, make_tool):
    pk = engine.start_self_mining(stocked.miner, stocked.miner_mine, [make_tool(stocked.miner)], now=T0)['session']['id']
    with pytest.raises(SessionNotFound):
        engine.stop(stocked.landlord, pk, now=hours(1))
    with pytest.raises(InvalidRequest):
        engine.stop(stocked.miner, 'abc', now=hours(1))


def test_hired_without_tool_uses_deposited_tool(engine, stocked, make_tool):
    with pytest.raises(LandUnavailable):
        engine.start_hired_without_tool(stocked.miner, stocked.landlord_mine, now=T0)

    lent = make_tool(stocked.landlord)
    engine.deposit_tools(stocked.landlord, stocked.landlord_mine, [lent])
    result = engine.start_hired_without_tool(stocked.miner, stocked.landlord_mine, now=T0)
    session = result['session']
    assert session['mining_type'] == 'hired_without_tool'
    assert [t['id'] for t in session['tools']] == [lent]

    with pytest.raises(ToolAlreadyWorking):
        engine.withdraw_tools(stocked.landlord, stocked.landlord_mine, [lent])
    with pytest.raises(InvalidRequest):
        engine.add_tool(stocked.miner, session['id'], make_tool(stocked.miner), now=hours(1))
    # Only one deposited tool, so a second hired worker finds none
    drifter = User(username='drifter')
    db.session.add(drifter)
    db.session.commit()
    with pytest.raises(LandUnavailable):
        engine.start_hired_without_tool(drifter.id, stocked.landlord_mine, now=T0)

    engine.stop(stocked.miner, session['id'], now=hours(2))
    lent_tool = db.session.get(Tool, lent)
    assert lent_tool.owner_id == stocked.landlord
    assert lent_tool.durability == 1498
    engine.withdraw_tools(stocked.landlord, stocked.landlord_mine, [lent])


def test_deposit_requires_land_owner(engine, stocked, make_tool):
    with pytest.raises(LandUnavailable):
        engine.deposit_tools(stocked.miner, stocked.landlord_mine, [make_tool(stocked.miner)])


def test_session_stats(engine, stocked, make_tool):
    pk = engine.start_self_mining(stocked.miner, stocked.miner_mine, [make_tool(stocked.miner)], now=T0)['session']['id']
    engine.settle(pk, now=hours(2))
    stats = engine.session_stats(stocked.miner)
    assert stats['total_sessions'] == 1
    assert stats['active_sessions'] == 1
    assert Decimal(stats['total_output']) == Decimal('1.9')
    assert Decimal(stats['total_tax']) == Decimal('0.1')
