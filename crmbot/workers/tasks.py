"""
Celery Tasks for Conversation Maintenance

Periodic sweeps over conversation sessions: inactivity expiry and retention
cleanup. Each task opens its own database session on its own event loop.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete

from crmbot.core.config import settings
from crmbot.core.logging import get_logger, set_correlation_id
from crmbot.db.database import get_task_session, utcnow
from crmbot.db.models.webhook_event import WebhookEvent
from crmbot.domain.services.maintenance_service import SessionMaintenanceService
from crmbot.workers.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before closing
            from crmbot.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="crmbot.workers.tasks.expire_inactive_sessions")
def expire_inactive_sessions(
    inactivity_minutes: Optional[int] = None,
    tenant_id: Optional[str] = None,
):
    """Expire open sessions with no interaction within the inactivity window"""
    minutes = inactivity_minutes or settings.SESSION_INACTIVITY_MINUTES

    async def _expire():
        async with get_task_session() as db:
            count = await SessionMaintenanceService(db).mark_inactive_sessions(
                minutes, tenant_id=tenant_id
            )
            return {"expired": count}

    return run_async(_expire())


@celery_app.task(name="crmbot.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: Optional[int] = None, tenant_id: Optional[str] = None):
    """Delete conversation messages past the retention window"""
    retention_days = days or settings.MESSAGE_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await SessionMaintenanceService(db).cleanup_old_messages(
                retention_days, tenant_id=tenant_id
            )
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="crmbot.workers.tasks.cleanup_old_sessions")
def cleanup_old_sessions(days: Optional[int] = None, tenant_id: Optional[str] = None):
    """Delete closed sessions past the retention window"""
    retention_days = days or settings.SESSION_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await SessionMaintenanceService(db).cleanup_old_sessions(
                retention_days, tenant_id=tenant_id
            )
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="crmbot.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 7):
    """Prune completed idempotency records of inbound webhooks"""

    async def _cleanup():
        async with get_task_session() as db:
            cutoff = utcnow() - timedelta(days=days)

            result = await db.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.status == "completed",
                    WebhookEvent.created_at < cutoff,
                )
            )
            deleted = result.rowcount

            await db.commit()
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
