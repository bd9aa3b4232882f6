import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from flask import g
from flask.testing import FlaskClient

# Ensure the backend root (containing the `mining` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from mining import create_app, db, socketio


T0 = datetime(2026, 1, 5, 8, 0, 0)


def hours(n) -> datetime:
    return T0 + timedelta(hours=float(n))


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SETTLEMENT_TICK_SEC = 0
    LOCK_TIMEOUT_SEC = 0.2
    PAGE_SIZE = 20


class SequenceRandom:
    """Deterministic stand-in for random.Random in synthesis tests."""

    def __init__(self, values):
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import mining.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


class PerRequestUserClient(FlaskClient):
    """Test client whose requests each resolve their own X-User-Id.

    Requests share the fixture's app context, and Flask-Login caches the
    loaded user on `g`; drop it so every request runs the request loader.
    """

    def open(self, *args, **kwargs):
        g.pop('_login_user', None)
        return super().open(*args, **kwargs)


@pytest.fixture()
def file_app(tmp_path):
    """App on a file-backed SQLite database shared by worker threads."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'production.db'}"
        LOCK_TIMEOUT_SEC = 10

    application = create_app(FileConfig)
    with application.app_context():
        import mining.models  # noqa: F401
        db.create_all()
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def client(flask_app):
    flask_app.test_client_class = PerRequestUserClient
    return flask_app.test_client()


@pytest.fixture()
def socket_for(flask_app):
    """Open Socket.IO test clients on /ws, identified as a user or anonymous."""
    opened = []

    def _open(user_id=None):
        test_client = socketio.test_client(
            flask_app,
            flask_test_client=flask_app.test_client(),
            namespace='/ws',
            headers=auth(user_id) if user_id is not None else None,
        )
        opened.append(test_client)
        return test_client

    yield _open
    for test_client in opened:
        if test_client.is_connected('/ws'):
            test_client.disconnect(namespace='/ws')


@pytest.fixture()
def engine(flask_app):
    return flask_app.extensions['production']


@pytest.fixture()
def world(flask_app):
    """Two players and a handful of lands.

    The miner owns an iron mine, a forest and a YLD mine; the landlord owns an
    iron mine and a farm that hired workers can be sent to.
    """
    from mining.models import Land, LandType, User

    miner = User(username='miner')
    landlord = User(username='landlord')
    db.session.add_all([miner, landlord])
    db.session.flush()

    lands = {
        'miner_mine': Land(land_id='L-M001', land_type=LandType.IRON_MINE, owner_id=miner.id, region_name='north'),
        'miner_forest': Land(land_id='L-M002', land_type=LandType.FOREST, owner_id=miner.id, region_name='north'),
        'landlord_mine': Land(land_id='L-L001', land_type=LandType.IRON_MINE, owner_id=landlord.id, region_name='south'),
        'landlord_farm': Land(land_id='L-L002', land_type=LandType.FARM, owner_id=landlord.id, region_name='south'),
        'plaza': Land(land_id='L-L003', land_type=LandType.URBAN, owner_id=landlord.id, region_name='south'),
        'miner_yld': Land(land_id='L-M003', land_type=LandType.YLD_MINE, owner_id=miner.id, region_name='north'),
    }
    db.session.add_all(lands.values())
    db.session.commit()
    return SimpleNamespace(miner=miner.id, landlord=landlord.id, **{k: v.land_id for k, v in lands.items()})


@pytest.fixture()
def make_tool(engine):
    def _make(owner_id, tool_type='pickaxe', durability=None, now=None):
        with engine.unit_of_work():
            tool = engine.tools.create(owner_id, tool_type, durability, now or T0)
            return tool.id
    return _make


def auth(user_id) -> dict:
    return {'X-User-Id': str(user_id)}


def journal_total(user_id, resource_type):
    """Net amount implied by a user's journal rows for one resource type."""
    from mining.models import LedgerOperation, ResourceTransaction

    total = Decimal('0')
    for row in ResourceTransaction.query.filter_by(user_id=user_id, resource_type=resource_type):
        if row.operation == LedgerOperation.CREDIT:
            total += row.quantity
        elif row.operation in (LedgerOperation.DEBIT, LedgerOperation.CONSUME_FROZEN):
            total -= row.quantity
    return total
