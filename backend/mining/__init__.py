from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from mining.main import main
    flask_app.register_blueprint(main)

    from mining.api.production import production
    # Same prefix the web client uses for every production call
    flask_app.register_blueprint(production, url_prefix='/api/v1/production')

    # Importing here ensures the handlers bind to the initialized socketio instance
    from mining.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from mining.services.production import ProductionEngine
    flask_app.extensions['production'] = ProductionEngine.from_config(flask_app.config)

    from mining.models import User

    # Identity is resolved upstream; the gateway forwards the user id in a header
    @login_manager.request_loader
    def load_user_from_request(request):
        raw = request.headers.get(flask_app.config.get('USER_ID_HEADER', 'X-User-Id'))
        if not raw or not raw.isdigit():
            return None
        return db.session.get(User, int(raw))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'message': 'Authentication required', 'error': 'unauthorized'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from decimal import Decimal
        from mining.models import Land, LandType
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            users = ['miner1', 'miner2', 'landlord']
            for u in users:
                db.session.add(User(username=u))
            db.session.commit()

            landlord = User.query.filter_by(username='landlord').first()
            for idx, land_type in enumerate([LandType.IRON_MINE, LandType.FOREST, LandType.FARM], start=1):
                db.session.add(Land(
                    land_id=f'L-{idx:04d}',
                    land_type=land_type,
                    owner_id=landlord.id,
                    region_name='seed',
                ))
            db.session.commit()

            engine = flask_app.extensions['production']
            for user in User.query.all():
                for resource_type, qty in (('grain', '200'), ('iron', '500'), ('wood', '500'), ('yld', '5')):
                    engine.grant(user.id, resource_type, Decimal(qty), reason='seed')
            print('Database has been reset and seeded!')

    @click.command('grant')
    @click.argument('user_id', type=int)
    @click.argument('resource_type')
    @click.argument('quantity')
    def grant_command(user_id, resource_type, quantity):
        """Credit a user's ledger (custody resolved externally)."""
        with flask_app.app_context():
            balance = flask_app.extensions['production'].grant(user_id, resource_type, quantity)
            print(f'user={user_id} {resource_type} available={balance}')

    @click.command('settle')
    def settle_command():
        """Run one settlement tick over all active sessions."""
        from mining.services.production.scheduler import run_settlement_tick
        summary = run_settlement_tick(flask_app)
        print(f"settled={len(summary['settled'])} paused={len(summary['paused'])} busy={len(summary['busy'])}")

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(grant_command)
    flask_app.cli.add_command(settle_command)

    return flask_app
