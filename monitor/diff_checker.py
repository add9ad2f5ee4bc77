import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from bus.event_bus import EventBus
from bus.messages import FetchCompleted, FollowerChange
from config.settings import EVENT_TTL_DAYS, FETCH_MAX_ATTEMPTS, FETCH_BACKOFF_SECONDS, LOOKUP_MAX_WAIT_SECONDS
from db.blob_store import BlobNotFound, FileBlobStore, parse_timestamp, snapshot_timestamp
from db.db_utils import get_user, get_baseline, get_follower_list, add_follower_events, advance_baseline
from db.models import FollowerEvent, FollowerState, FollowerStateReason, InvalidRecordError, matches_ignore_list
from monitor.directory import DirectoryClient, IdentityLookup, RateLimitExceeded, with_backoff

logger = logging.getLogger(__name__)

EVENT_NAMESPACE = uuid.UUID('6f1c3b8e-5d0a-4c57-9a43-2f0e8d7b9c11')


@dataclass
class FollowerDiff:
    added: List[dict] = field(default_factory=list)
    removed: List[dict] = field(default_factory=list)


@dataclass
class DiffResult:
    events: List[dict] = field(default_factory=list)
    skipped: Optional[str] = None
    baseline_advanced: bool = False


def compare_followers(previous: Dict[str, dict], new: Dict[str, dict],
                      ignores: Optional[Callable[[str, str], bool]] = None) -> FollowerDiff:
    """
    Compares two snapshots keyed by follower id.
    Followers present in both are never reported, whatever else changed about them.
    ignores(follower_id, handle) filters followers out of both sides.
    """
    def kept(records: Dict[str, dict], ids) -> List[dict]:
        out = []
        for follower_id in sorted(ids):
            record = records[follower_id]
            if ignores and ignores(follower_id, record.get('handle', '')):
                continue
            out.append(record)
        return out

    diff = FollowerDiff(
        added=kept(new, new.keys() - previous.keys()),
        removed=kept(previous, previous.keys() - new.keys()),
    )
    logger.info(f'Follower comparison: New={len(diff.added)}, Lost={len(diff.removed)}')
    return diff


def classify_removed(lookup: IdentityLookup) -> FollowerStateReason:
    if not lookup.exists:
        return FollowerStateReason.DELETED
    if lookup.suspended:
        return FollowerStateReason.SUSPENDED
    return FollowerStateReason.UNFOLLOWED


def event_id(user_id: str, follower_id: str, snapshot_ts: str, state: FollowerState) -> str:
    return str(uuid.uuid5(EVENT_NAMESPACE, f'{user_id}:{follower_id}:{snapshot_ts}:{state.value}'))


def load_snapshot(blob_store: FileBlobStore, key: str) -> Dict[str, dict]:
    records = blob_store.get_json(key)
    if not isinstance(records, list):
        raise InvalidRecordError(f'snapshot {key} is not a list of followers')
    snapshot = {}
    for record in records:
        if not isinstance(record, dict) or 'id' not in record:
            raise InvalidRecordError(f'snapshot {key} holds a follower without an id')
        snapshot[str(record['id'])] = record
    return snapshot


class FollowerDiffer:
    def __init__(self, db_session_factory: Callable[[], Session], blob_store: FileBlobStore,
                 directory: DirectoryClient, bus: EventBus,
                 event_ttl: timedelta = timedelta(days=EVENT_TTL_DAYS),
                 lookup_attempts: int = FETCH_MAX_ATTEMPTS, backoff: float = FETCH_BACKOFF_SECONDS,
                 lookup_max_wait: float = LOOKUP_MAX_WAIT_SECONDS, retry_delay: float = 60.0,
                 sleep=asyncio.sleep):
        self.db_session_factory = db_session_factory
        self.blob_store = blob_store
        self.directory = directory
        self.bus = bus
        self.event_ttl = event_ttl
        self.lookup_attempts = lookup_attempts
        self.backoff = backoff
        self.lookup_max_wait = lookup_max_wait
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def handle_fetch_completed(self, completed: FetchCompleted) -> DiffResult:
        user_id = completed.user_id
        if completed.failed:
            logger.warning(f'Fetch failed for {user_id} ({completed.failure_reason}); not diffing.')
            return DiffResult(skipped='fetch failed')
        if not completed.snapshot_key:
            raise InvalidRecordError(f'completed fetch for {user_id} carries no snapshot key')

        with self.db_session_factory() as db:
            user = get_user(db, user_id)
            if not user:
                logger.info(f'Skipping diff for {user_id}: user no longer registered.')
                return DiffResult(skipped='user not found')
            ignore_list = list(user.ignore_followers or [])
            baseline = get_baseline(db, user_id)
            if baseline and baseline.blob_key == completed.snapshot_key:
                logger.info(f'Snapshot {completed.snapshot_key} is already the baseline for {user_id}.')
                return DiffResult(skipped='already processed')
            expected_key = baseline.blob_key if baseline else None
            expected_version = baseline.version if baseline else 0
            previous_list = get_follower_list(db, completed.previous_key) if completed.previous_key else None
            new_list = get_follower_list(db, completed.snapshot_key)
            previous_digest = previous_list.digest if previous_list else None
            new_digest = new_list.digest if new_list else None

        if expected_key != completed.previous_key:
            logger.warning(f'Baseline for {user_id} moved from {completed.previous_key} to {expected_key} '
                           f'before this diff ran; events stay valid but the pointer will not advance.')

        if not completed.previous_key:
            logger.info(f'First snapshot for {user_id}; using {completed.snapshot_key} as baseline.')
            return DiffResult(baseline_advanced=self._advance(user_id, completed, expected_key, expected_version))

        if previous_digest and previous_digest == new_digest:
            logger.info(f'Follower lists for {user_id} did not change.')
            return DiffResult(baseline_advanced=self._advance(user_id, completed, expected_key, expected_version))

        try:
            previous = load_snapshot(self.blob_store, completed.previous_key)
        except BlobNotFound:
            logger.warning(f'Previous snapshot {completed.previous_key} expired; rebasing {user_id} without events.')
            return DiffResult(baseline_advanced=self._advance(user_id, completed, expected_key, expected_version))
        try:
            new = load_snapshot(self.blob_store, completed.snapshot_key)
        except BlobNotFound:
            raise InvalidRecordError(f'snapshot {completed.snapshot_key} for {user_id} is missing') from None

        def ignores(follower_id, handle):
            return matches_ignore_list(ignore_list, follower_id, handle)

        diff = compare_followers(previous, new, ignores=ignores)
        try:
            events = await self._build_events(user_id, completed, diff, ignores)
        except RateLimitExceeded as e:
            # Nothing is stored yet, so a later run rebuilds the same events
            delay = e.retry_after()
            delay = self.retry_delay if delay is None else delay
            logger.warning(f'Rate limited while classifying lost followers of {user_id}; retrying diff in {delay:.0f}s.')
            await self.bus.publish(completed, delay=delay)
            return DiffResult(skipped='rate limited')
        event_dicts = [e.to_dict() for e in events]

        with self.db_session_factory() as db:
            inserted = add_follower_events(db, events)
        logger.info(f'Stored {inserted} new of {len(event_dicts)} events for {user_id}.')

        for event in event_dicts:
            await self.bus.publish(FollowerChange(event=event))

        advanced = self._advance(user_id, completed, expected_key, expected_version)
        return DiffResult(events=event_dicts, baseline_advanced=advanced)

    async def _build_events(self, user_id: str, completed: FetchCompleted, diff: FollowerDiff, ignores) -> List[FollowerEvent]:
        ts = completed.fetched_at
        created_at = parse_timestamp(ts) if ts else snapshot_timestamp(completed.snapshot_key)
        ts = ts or completed.snapshot_key
        events = []

        for record in diff.added:
            events.append(self._event(user_id, record, FollowerState.NEW, FollowerStateReason.FOLLOWED,
                                      completed.total_followers, ts, created_at))

        for record in diff.removed:
            follower_id = record['id']
            lookup = await with_backoff(lambda fid=follower_id: self.directory.lookup_identity(fid),
                                        attempts=self.lookup_attempts, base_delay=self.backoff,
                                        max_wait=self.lookup_max_wait, sleep=self._sleep)
            reason = classify_removed(lookup)
            # Deleted and suspended accounts only keep their id
            follower = lookup.user.to_dict() if lookup.user else {'id': follower_id}
            # The handle may have changed since the previous snapshot
            if ignores(follower_id, follower.get('handle', '')):
                logger.info(f'Ignoring lost follower {follower_id} (@{follower.get("handle")})')
                continue
            events.append(self._event(user_id, follower, FollowerState.LOST, reason,
                                      completed.total_followers, ts, created_at))
        return events

    def _event(self, user_id, follower: dict, state, reason, total_followers, ts, created_at) -> FollowerEvent:
        event = FollowerEvent(
            id=event_id(user_id, follower['id'], ts, state),
            user_id=user_id,
            follower_id=follower['id'],
            follower=follower,
            state=state.value,
            state_reason=reason.value,
            total_followers=total_followers,
            created_at=created_at,
            expires_at=created_at + self.event_ttl,
        )
        event.validate()
        return event

    def _advance(self, user_id: str, completed: FetchCompleted, expected_key, expected_version) -> bool:
        if expected_key != completed.previous_key:
            return False
        with self.db_session_factory() as db:
            advanced = advance_baseline(db, user_id, expected_key, expected_version, completed.snapshot_key)
        if advanced:
            logger.info(f'Baseline for {user_id} is now {completed.snapshot_key}.')
        else:
            logger.warning(f'Lost the race to advance the baseline for {user_id}; dropping this advance.')
        return advanced

