import asyncio
import logging
import time
from datetime import timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from bus.event_bus import EventBus
from bus.messages import FetchCompleted, FetchRequested
from config.settings import (
    FETCH_MAX_PAGES, FETCH_TIME_BUDGET_SECONDS, FETCH_MAX_ATTEMPTS, FETCH_BACKOFF_SECONDS,
    FETCH_PROGRESS_MAX_AGE_HOURS, SNAPSHOT_TTL_DAYS,
)
from db.blob_store import BlobNotFound, FileBlobStore, format_timestamp, partial_key, snapshot_key
from db.db_utils import (
    get_user, get_baseline, get_fetch_progress, save_fetch_progress, clear_fetch_progress,
    add_follower_list, get_follower_list,
)
from db.models import utcnow
from monitor.directory import (
    DirectoryClient, DirectoryError, InvalidToken, RateLimitExceeded, TransientDirectoryError,
    UserNotFound, UserSuspended, with_backoff,
)

logger = logging.getLogger(__name__)


class SnapshotFetcher:
    """
    Pulls a user's complete follower list from the directory and stores it
    as a snapshot blob.

    One invocation fetches at most max_pages pages within time_budget
    seconds. Whatever is left is picked up by a continuation request that
    resumes from the stored cursor.
    """

    def __init__(self, db_session_factory: Callable[[], Session], blob_store: FileBlobStore,
                 directory: DirectoryClient, bus: EventBus,
                 max_pages: int = FETCH_MAX_PAGES,
                 time_budget: float = FETCH_TIME_BUDGET_SECONDS,
                 max_attempts: int = FETCH_MAX_ATTEMPTS,
                 backoff: float = FETCH_BACKOFF_SECONDS,
                 progress_max_age: timedelta = timedelta(hours=FETCH_PROGRESS_MAX_AGE_HOURS),
                 snapshot_ttl: timedelta = timedelta(days=SNAPSHOT_TTL_DAYS),
                 continuation_delay: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep=asyncio.sleep):
        self.db_session_factory = db_session_factory
        self.blob_store = blob_store
        self.directory = directory
        self.bus = bus
        self.max_pages = max_pages
        self.time_budget = time_budget
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.progress_max_age = progress_max_age
        self.snapshot_ttl = snapshot_ttl
        self.continuation_delay = continuation_delay
        self._clock = clock
        self._sleep = sleep

    async def handle_fetch_request(self, request: FetchRequested) -> Optional[FetchCompleted]:
        user_id = request.user_id
        deadline = self._clock() + self.time_budget
        logger.info(f'Fetching followers for user {user_id} (@{request.handle}, continuation={request.continuation})')

        with self.db_session_factory() as db:
            if not get_user(db, user_id):
                logger.info(f'Skipping fetch for {user_id}: user no longer registered.')
                return None
            progress = get_fetch_progress(db, user_id)
            state = self._resume_state(db, user_id, progress)

        followers: Dict[str, dict] = state['followers']
        cursor = state['cursor']
        pages = state['pages']
        started_at = state['started_at']
        pages_this_run = 0

        while True:
            remaining = deadline - self._clock()
            if pages_this_run >= self.max_pages or remaining <= 0:
                logger.info(f'Fetch budget used up for {user_id} after {pages} pages; scheduling continuation.')
                await self._suspend(request, followers, cursor, pages, started_at, self.continuation_delay)
                return None
            try:
                page = await with_backoff(
                    lambda: self.directory.follower_page(user_id, cursor),
                    attempts=self.max_attempts, base_delay=self.backoff, max_wait=remaining, sleep=self._sleep,
                )
            except RateLimitExceeded as e:
                delay = e.retry_after()
                delay = self.continuation_delay if delay is None else delay
                logger.warning(f'Rate limited while fetching {user_id}; resuming in {delay:.0f}s.')
                await self._suspend(request, followers, cursor, pages, started_at, delay)
                return None
            except (UserNotFound, UserSuspended, InvalidToken) as e:
                logger.warning(f'Source account {user_id} cannot be fetched: {e}')
                self._discard_progress(user_id)
                return await self._fail(request, str(e))
            except TransientDirectoryError as e:
                logger.error(f'Giving up fetch for {user_id} after {self.max_attempts} attempts: {e}')
                if pages:
                    self._save_progress(user_id, followers, cursor, pages, started_at)
                return await self._fail(request, f'transient error: {e}')
            except DirectoryError as e:
                logger.error(f'Directory rejected fetch for {user_id}: {e}')
                return await self._fail(request, str(e))

            for follower in page.followers:
                followers[follower.id] = follower.to_dict()
            pages += 1
            pages_this_run += 1
            cursor = page.next_cursor
            if not cursor:
                break

        return await self._complete(request, followers, started_at)

    def _resume_state(self, db: Session, user_id: str, progress) -> dict:
        now = utcnow()
        fresh = {'followers': {}, 'cursor': None, 'pages': 0, 'started_at': now}
        if not progress:
            return fresh
        if now - progress.started_at > self.progress_max_age:
            logger.info(f'Discarding stale fetch progress for {user_id} from {progress.started_at}.')
            self.blob_store.delete(clear_fetch_progress(db, user_id))
            return fresh
        try:
            partial = self.blob_store.get_json(progress.partial_key)
        except BlobNotFound:
            logger.warning(f'Partial blob {progress.partial_key} is gone; restarting fetch for {user_id}.')
            clear_fetch_progress(db, user_id)
            return fresh
        logger.info(f'Resuming fetch for {user_id} at page {progress.pages_fetched} '
                    f'({progress.followers_fetched} followers so far).')
        return {
            'followers': {f['id']: f for f in partial},
            'cursor': progress.cursor,
            'pages': progress.pages_fetched,
            'started_at': progress.started_at,
        }

    def _save_progress(self, user_id: str, followers: Dict[str, dict], cursor: Optional[str], pages: int, started_at):
        key = partial_key(user_id, started_at)
        self.blob_store.put_json(key, list(followers.values()))
        with self.db_session_factory() as db:
            save_fetch_progress(db, user_id, cursor, key, pages, len(followers), started_at)

    def _discard_progress(self, user_id: str):
        with self.db_session_factory() as db:
            key = clear_fetch_progress(db, user_id)
        if key:
            self.blob_store.delete(key)

    async def _suspend(self, request: FetchRequested, followers, cursor, pages, started_at, delay: float):
        self._save_progress(request.user_id, followers, cursor, pages, started_at)
        await self.bus.publish(FetchRequested(user_id=request.user_id, handle=request.handle, continuation=True),
                               delay=delay)

    async def _fail(self, request: FetchRequested, reason: str) -> FetchCompleted:
        completed = FetchCompleted(user_id=request.user_id, failed=True, failure_reason=reason)
        await self.bus.publish(completed)
        return completed

    async def _complete(self, request: FetchRequested, followers: Dict[str, dict], started_at) -> FetchCompleted:
        user_id = request.user_id
        key = snapshot_key(user_id, started_at)
        records = [followers[follower_id] for follower_id in sorted(followers)]
        _, digest = self.blob_store.put_json(key, records)

        with self.db_session_factory() as db:
            if not get_follower_list(db, key):
                add_follower_list(db, user_id, key, digest, len(records), started_at, started_at + self.snapshot_ttl)
            baseline = get_baseline(db, user_id)
            previous_key = baseline.blob_key if baseline else None
            leftover = clear_fetch_progress(db, user_id)
        if leftover:
            self.blob_store.delete(leftover)

        completed = FetchCompleted(
            user_id=user_id,
            snapshot_key=key,
            previous_key=previous_key,
            fetched_at=format_timestamp(started_at),
            total_followers=len(records),
        )
        logger.info(f'Snapshot {key} saved with {len(records)} followers for {user_id}.')
        await self.bus.publish(completed)
        return completed
