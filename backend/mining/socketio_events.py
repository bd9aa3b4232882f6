from decimal import Decimal
from flask_socketio import join_room, leave_room, emit
from flask import current_app, request
from mining import db, socketio
from typing import Dict, Any


# sid -> identity resolved on connect, dropped on disconnect
_sid_to_ctx: Dict[str, Dict[str, Any]] = {}


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def user_room(user_id) -> str:
    return f"user:{user_id}"


def _plain(value):
    # Socket.IO packets go through the stdlib json encoder
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def notify_user(user_id, event: str, payload: Dict[str, Any]) -> None:
    """Push an event to every socket subscribed to a user's production feed."""
    socketio.emit(event, _plain(payload), to=user_room(user_id), namespace='/ws')


def _identify():
    """User id forwarded by the gateway on the handshake, if it names a user."""
    from mining.models import User

    raw = request.headers.get(current_app.config.get('USER_ID_HEADER', 'X-User-Id'))
    if not raw or not raw.isdigit():
        return None
    user = db.session.get(User, int(raw))
    return user.id if user else None


def handle_connect(auth=None):
    user_id = _identify()
    _sid_to_ctx[_get_sid()] = {'user_id': user_id}
    emit('connected', {'message': 'Connected to /ws', 'user_id': user_id})


def handle_disconnect(*args):
    _sid_to_ctx.pop(_get_sid(), None)


def _own_room(data):
    # A socket may only follow the feed of the user it connected as
    own = (_sid_to_ctx.get(_get_sid()) or {}).get('user_id')
    if own is None:
        emit('error', {'message': 'Authentication required', 'error': 'unauthorized'})
        return None
    requested = (data or {}).get('user_id', own)
    if not str(requested).isdigit() or int(requested) != own:
        current_app.logger.info(f"[ws-reject] user={own} requested={requested}")
        emit('error', {'message': 'Cannot follow another user', 'error': 'forbidden'})
        return None
    return user_room(own)


def handle_subscribe(data=None):
    room = _own_room(data)
    if room:
        join_room(room)
        emit('subscribed', {'room': room})


def handle_unsubscribe(data=None):
    room = _own_room(data)
    if room:
        leave_room(room)
        emit('unsubscribed', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('disconnect', handle_disconnect, namespace='/ws')
    socketio.on_event('subscribe', handle_subscribe, namespace='/ws')
    socketio.on_event('unsubscribe', handle_unsubscribe, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('disconnect', handle_disconnect, namespace='/')
        socketio.on_event('subscribe', handle_subscribe, namespace='/')
        socketio.on_event('unsubscribe', handle_unsubscribe, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
