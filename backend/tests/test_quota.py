from decimal import Decimal

import pytest

from mining import db
from mining.errors import QuotaAvailable, QuotaExhausted
from mining.models import MiningSession, SessionStatus, SettlementRecord, Tool, ToolStatus
from mining.services.production.scheduler import run_settlement_tick

from conftest import T0, hours


@pytest.fixture()
def yld_session(engine, world, make_tool):
    """One pickaxe on the miner's YLD mine: 0.01 YLD/h, 2 grain/h."""
    engine.grant(world.miner, 'grain', '100')
    tool = make_tool(world.miner)
    return engine.start_self_mining(world.miner, world.miner_yld, [tool], now=T0)['session']


def test_settlement_stops_at_the_daily_limit(engine, world, yld_session):
    engine.quota.daily_limit = Decimal('0.05')

    result = engine.settle(yld_session['id'], now=hours(10))

    assert result['warning']['code'] == 'yld_exhausted'
    assert Decimal(result['gross_output']) == Decimal('0.05')
    assert Decimal(result['grain_consumed']) == Decimal('10')
    db.session.expire_all()
    session = db.session.get(MiningSession, yld_session['id'])
    assert session.status == SessionStatus.PAUSED
    assert session.paused_reason == 'yld_exhausted'
    assert session.last_settlement_time == hours(5)
    assert session.accumulated_output == Decimal('0.0475')
    assert engine.quota.is_exhausted(hours(10))
    assert engine.quota.produced_on(T0) == Decimal('0.05')


def test_exhausted_quota_blocks_start_and_resume_until_next_day(engine, world, yld_session, make_tool):
    engine.quota.daily_limit = Decimal('0.05')
    engine.settle(yld_session['id'], now=hours(10))

    with pytest.raises(QuotaExhausted):
        engine.resume(world.miner, yld_session['id'], now=hours(11))
    with pytest.raises(QuotaExhausted):
        engine.start_self_mining(world.miner, world.miner_yld, [make_tool(world.miner)], now=hours(11))

    # Other resources are not capped
    iron = engine.start_self_mining(world.miner, world.miner_mine, [make_tool(world.miner)], now=hours(11))
    assert iron['session']['status'] == 'active'

    resumed = engine.resume(world.miner, yld_session['id'], now=hours(24))
    assert resumed['session']['status'] == 'active'


def test_settlement_splits_windows_at_midnight(engine, world, make_tool):
    engine.grant(world.miner, 'grain', '100')
    pk = engine.start_self_mining(world.miner, world.miner_yld, [make_tool(world.miner)], now=hours(12))['session']['id']

    engine.settle(pk, now=hours(20))

    records = SettlementRecord.query.filter_by(session_id=pk).order_by(SettlementRecord.id).all()
    assert [(r.window_start, r.window_end) for r in records] == [(hours(12), hours(16)), (hours(16), hours(20))]
    assert engine.quota.produced_on(hours(12)) == Decimal('0.04')
    assert engine.quota.produced_on(hours(20)) == Decimal('0.04')


def test_handle_exhausted_stops_capped_sessions(engine, world, yld_session):
    with pytest.raises(QuotaAvailable):
        engine.handle_quota_exhausted(now=hours(1))

    engine.quota.daily_limit = Decimal('0.05')
    engine.settle(yld_session['id'], now=hours(10))
    result = engine.handle_quota_exhausted(now=hours(10))

    assert result['sessions_stopped'] == 1
    detail = result['settlement_details'][0]
    assert detail['session_id'] == yld_session['session_id']
    assert Decimal(detail['actual_get']) == Decimal('0.0475')
    assert Decimal(detail['should_get']) == Decimal('0.095')
    db.session.expire_all()
    assert db.session.get(MiningSession, yld_session['id']).status == SessionStatus.COMPLETED
    assert db.session.get(Tool, yld_session['tools'][0]['id']).status == ToolStatus.IDLE
    assert engine.ledger.available(world.miner, 'yld') == Decimal('0.0475')


def test_tick_stops_capped_sessions_and_notifies(flask_app, socket_for, engine, world, yld_session):
    sio = socket_for(world.miner)
    sio.emit('subscribe', {}, namespace='/ws')
    sio.get_received('/ws')
    engine.quota.daily_limit = Decimal('0.05')

    summary = run_settlement_tick(flask_app, now=hours(10))

    assert summary['paused'][0]['reason'] == 'yld_exhausted'
    assert [d['session_id'] for d in summary['quota_stopped']] == [yld_session['session_id']]
    events = {pkt['name']: pkt['args'][0] for pkt in sio.get_received('/ws')}
    assert events['session_paused']['reason'] == 'yld_exhausted'
    assert events['session_stopped']['session_id'] == yld_session['session_id']
