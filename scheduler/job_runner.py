import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session

from bus.event_bus import EventBus
from bus.messages import FetchRequested, UserSignup
from config.settings import ENQUEUE_INTERVAL_MINUTES, ENQUEUE_PAGE_SIZE, PRUNE_INTERVAL_HOURS
from db.blob_store import FileBlobStore
from db.db_utils import iter_user_pages, prune_expired

logger = logging.getLogger(__name__)


@dataclass
class EnqueueResult:
    user_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total_users(self) -> int:
        return len(self.user_ids)


async def enqueue_users(db_session_factory: Callable[[], Session], bus: EventBus,
                        page_size: int = ENQUEUE_PAGE_SIZE) -> EnqueueResult:
    """
    Publishes one fetch request per registered user.
    Enumeration errors propagate; a failed publish is recorded and the
    remaining users are still enqueued.
    """
    result = EnqueueResult()
    with db_session_factory() as db:
        for page in iter_user_pages(db, page_size):
            requests = [FetchRequested(user_id=user.id, handle=user.handle) for user in page]
            for request in requests:
                try:
                    await bus.publish(request)
                except Exception as e:
                    logger.error(f'Failed to enqueue fetch for user {request.user_id}: {e}', exc_info=True)
                    result.errors.append(f'{request.user_id}: {e}')
                    continue
                result.user_ids.append(request.user_id)
    logger.info(f'Enqueued {result.total_users} users ({len(result.errors)} failures).')
    return result


async def scheduled_enqueue_job(db_session_factory: Callable[[], Session], bus: EventBus) -> Optional[EnqueueResult]:
    logger.info('Running scheduled enqueue job...')
    try:
        return await enqueue_users(db_session_factory, bus)
    except Exception as e:
        # The next tick retries the enumeration
        logger.error(f'Enqueue job failed to list users: {e}', exc_info=True)
        return None


async def scheduled_prune_job(db_session_factory: Callable[[], Session], blob_store: FileBlobStore) -> dict:
    logger.info('Running retention job...')
    with db_session_factory() as db:
        expired = prune_expired(db)
    removed_blobs = sum(1 for key in expired['blob_keys'] if blob_store.delete(key))
    logger.info(f'Retention job removed {expired["events"]} events, {expired["progress"]} stale fetches '
                f'and {removed_blobs} blobs.')
    return {'events': expired['events'], 'progress': expired['progress'], 'blobs': removed_blobs}


def signup_handler(bus: EventBus):
    """New users get their first snapshot right away instead of waiting for the next tick."""
    async def handle_new_user_signup(signup: UserSignup):
        logger.info(f'New user signup {signup.user_id} (@{signup.handle}); requesting first fetch.')
        await bus.publish(FetchRequested(user_id=signup.user_id, handle=signup.handle))
    return handle_new_user_signup


def setup_pipeline_jobs(scheduler: AsyncIOScheduler, db_session_factory: Callable[[], Session], bus: EventBus,
                        blob_store: FileBlobStore):
    scheduler.add_job(
        scheduled_enqueue_job,
        'interval',
        minutes=ENQUEUE_INTERVAL_MINUTES,
        args=[db_session_factory, bus],
        id='enqueue_users_job',
        replace_existing=True,
        coalesce=True,
        next_run_time=datetime.now() + timedelta(seconds=10)  # Run shortly after startup
    )
    scheduler.add_job(
        scheduled_prune_job,
        'interval',
        hours=PRUNE_INTERVAL_HOURS,
        args=[db_session_factory, blob_store],
        id='prune_expired_job',
        replace_existing=True,
        coalesce=True,
    )
    logger.info(f'Scheduled enqueue job every {ENQUEUE_INTERVAL_MINUTES} minutes '
                f'and retention job every {PRUNE_INTERVAL_HOURS} hours.')
