"""
Celery Tasks
Session housekeeping that runs outside the API process.
"""

import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from courier_dispatch.celery_worker import celery_app
from courier_dispatch.core.config import get_settings
from courier_dispatch.services.sessions import SessionService

logger = logging.getLogger(__name__)


async def _cleanup_sessions(database_url: str) -> int:
    # Each task run gets its own event loop, so pooled connections cannot be reused.
    engine = create_async_engine(database_url, poolclass=NullPool)
    try:
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        async with session_maker() as db:
            return await SessionService(get_settings()).cleanup_expired(db)
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def cleanup_expired_sessions(self) -> dict:
    """
    Deactivate lapsed sessions and purge long-expired inactive rows.

    Returns:
        dict: number of rows purged and timing
    """
    task_id = self.request.id
    logger.info(f"🧹 Task {task_id}: cleaning up expired sessions")
    start_time = time.time()

    try:
        purged = asyncio.run(_cleanup_sessions(get_settings().database_url))
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        logger.error(f"❌ Task {task_id}: session cleanup failed after {elapsed}s - {e}")
        # Celery will auto-retry based on configuration
        raise

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"✅ Task {task_id}: purged {purged} session(s) in {elapsed}s")
    return {
        'success': True,
        'purged': purged,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }

