from mining import create_app, socketio
from mining.services.production.scheduler import start_settlement_scheduler

app = create_app()

if __name__ == '__main__':
    start_settlement_scheduler(app)
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True, use_reloader=False)
