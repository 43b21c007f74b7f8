"""
Notification dispatch: delivers lifecycle messages to users.

Services never talk to sockets or mail servers directly.  They queue
``NotificationPayload``s on their session with ``defer``, and the owner of
the transaction calls ``deliver_pending`` once it has committed (``get_db``
does this for HTTP requests).  A rollback discards the queue.

Delivery is best-effort: every call is bounded by
``NOTIFICATION_TIMEOUT_SECONDS`` and any failure is logged and swallowed so
it can never undo the state change that triggered it.  Fan-out to many
recipients runs concurrently and one recipient's failure does not affect
the others.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from typing import Any, Iterable

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.config import get_settings
from bloodlink.db.session import async_session
from bloodlink.models.notification import Notification, NotificationType
from bloodlink.models.user import User

logger = logging.getLogger(__name__)


class NotificationPayload(BaseModel):
    title: str
    message: str
    type: NotificationType = NotificationType.SYSTEM
    action_url: str | None = None
    related_model: str | None = None
    related_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class NotificationDispatcher(abc.ABC):
    """Delivery capability injected into the request lifecycle services."""

    @abc.abstractmethod
    async def notify(self, user_id: uuid.UUID, payload: NotificationPayload) -> None:
        """Deliver *payload* to one user; may raise, callers isolate failures."""


def _notification_to_dict(n: Notification, details: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(n.id),
        "user_id": str(n.user_id),
        "title": n.title,
        "message": n.message,
        "type": n.type.value if n.type else None,
        "action_url": n.action_url,
        "related_to": {"model": n.related_model, "id": n.related_id} if n.related_model else None,
        "details": details,
        "is_read": n.is_read,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def _email_body(name: str | None, payload: NotificationPayload) -> str:
    body = f"Hello {name or 'there'},\n\n{payload.message}\n"
    if payload.action_url:
        body += f"\nLink: {payload.action_url}\n"
    return body + "\n--\nBloodLink - Connecting donors and patients in need\n"


def _queue_email(to: str, subject: str, body: str) -> None:
    from tasks.notification_tasks import send_notification_email

    send_notification_email.delay(to, subject, body)


class ChannelNotificationDispatcher(NotificationDispatcher):
    """Stores the notification, pushes it over Socket.IO and queues an e-mail.

    Runs after the caller has committed, in a session of its own, so the
    request it points at is already visible to the recipient.
    """

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory

    async def notify(self, user_id: uuid.UUID, payload: NotificationPayload) -> None:
        from bloodlink.api.websocket.handler import push_notification

        async with self._session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                logger.warning("Skipping notification for unknown user %s", user_id)
                return
            notification = Notification(
                id=uuid.uuid4(),
                user_id=user_id,
                title=payload.title,
                message=payload.message,
                type=payload.type,
                action_url=payload.action_url,
                related_model=payload.related_model,
                related_id=payload.related_id,
            )
            db.add(notification)
            await db.commit()

        if user.notify_by_push is not False:
            await push_notification(user_id, _notification_to_dict(notification, payload.details))

        if user.notify_by_email is not False and user.email:
            await asyncio.to_thread(
                _queue_email, user.email, f"BloodLink: {payload.title}", _email_body(user.name, payload),
            )


_default_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = ChannelNotificationDispatcher()
    return _default_dispatcher


# ---------------------------------------------------------------------------
# Bounded, failure-isolated delivery
# ---------------------------------------------------------------------------

async def dispatch(
    dispatcher: NotificationDispatcher,
    user_id: uuid.UUID,
    payload: NotificationPayload,
    *,
    timeout: float | None = None,
) -> bool:
    """Deliver one notification; returns ``False`` instead of raising on failure."""
    if timeout is None:
        timeout = get_settings().NOTIFICATION_TIMEOUT_SECONDS
    try:
        await asyncio.wait_for(dispatcher.notify(user_id, payload), timeout)
        return True
    except asyncio.TimeoutError:
        logger.warning("Notification %r to user %s timed out after %.1fs", payload.title, user_id, timeout)
    except Exception:
        logger.exception("Failed to notify user %s (%s)", user_id, payload.type.value)
    return False


async def fan_out(
    dispatcher: NotificationDispatcher,
    deliveries: Iterable[tuple[uuid.UUID, NotificationPayload]],
    *,
    timeout: float | None = None,
) -> int:
    """Deliver many notifications concurrently; returns how many succeeded."""
    tasks = [dispatch(dispatcher, user_id, payload, timeout=timeout) for user_id, payload in deliveries]
    if not tasks:
        return 0
    results = await asyncio.gather(*tasks)
    delivered = sum(1 for ok in results if ok)
    if delivered < len(results):
        logger.warning("Delivered %d of %d notifications", delivered, len(results))
    return delivered


# ---------------------------------------------------------------------------
# Delivery after commit
# ---------------------------------------------------------------------------

_PENDING_KEY = "bloodlink.pending_notifications"


def defer(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    deliveries: Iterable[tuple[uuid.UUID, NotificationPayload]],
) -> int:
    """Queue *deliveries* on *db* until its transaction commits; returns how many."""
    deliveries = list(deliveries)
    if deliveries:
        db.info.setdefault(_PENDING_KEY, []).append((dispatcher, deliveries))
    return len(deliveries)


def discard_pending(db: AsyncSession) -> int:
    """Drop everything queued on *db*; call after a rollback."""
    batches = db.info.pop(_PENDING_KEY, [])
    dropped = sum(len(deliveries) for _, deliveries in batches)
    if dropped:
        logger.info("Discarded %d notification(s) from a rolled-back transaction", dropped)
    return dropped


async def deliver_pending(db: AsyncSession) -> int:
    """Send everything queued on *db*, in the order it was queued."""
    delivered = 0
    for dispatcher, deliveries in db.info.pop(_PENDING_KEY, []):
        delivered += await fan_out(dispatcher, deliveries)
    return delivered


async def commit_and_deliver(db: AsyncSession) -> int:
    await db.commit()
    return await deliver_pending(db)
