"""Periodic maintenance of blood requests."""
import asyncio
import logging

from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _expire_overdue() -> int:
    from bloodlink.db.session import async_session, engine
    from bloodlink.services.notification_service import deliver_pending, discard_pending
    from bloodlink.services.request_service import expire_overdue_requests

    try:
        async with async_session() as db:
            try:
                count = await expire_overdue_requests(db)
                await db.commit()
            except Exception:
                await db.rollback()
                discard_pending(db)
                raise
            await deliver_pending(db)
        return count
    finally:
        # Pooled connections are bound to this task's event loop
        await engine.dispose()


@celery_app.task(name="tasks.request_tasks.expire_overdue_requests")
def expire_overdue_requests() -> int:
    """Expire every pending/matched request whose need-by date has passed."""
    count = _run_async(_expire_overdue())
    logger.info("Expiry sweep finished: %d request(s) expired", count)
    return count
