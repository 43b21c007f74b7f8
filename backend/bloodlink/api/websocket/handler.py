import logging

import socketio

from bloodlink.config import get_settings

logger = logging.getLogger(__name__)
_settings = get_settings()

# Use Redis manager so Celery workers can emit events via the same bus
_redis_mgr = socketio.AsyncRedisManager(_settings.REDIS_URL)
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    client_manager=_redis_mgr,
)


def user_room(user_id) -> str:
    return f"user_{user_id}"


@sio.event
async def connect(sid, environ):
    logger.info("Socket.IO client connected: %s", sid)


@sio.event
async def disconnect(sid):
    logger.info("Socket.IO client disconnected: %s", sid)


@sio.event
async def join_user(sid, data):
    """A signed-in client joins its personal room for notifications."""
    user_id = (data or {}).get("user_id")
    if user_id:
        await sio.enter_room(sid, user_room(user_id))
        await sio.emit("joined", {"room": user_room(user_id)}, to=sid)


@sio.event
async def leave_user(sid, data):
    user_id = (data or {}).get("user_id")
    if user_id:
        await sio.leave_room(sid, user_room(user_id))


# --- Push functions (called from services) ---

async def push_notification(user_id, notification_data: dict):
    """Deliver a notification to every socket the user has open."""
    await sio.emit("notification", notification_data, room=user_room(user_id))
