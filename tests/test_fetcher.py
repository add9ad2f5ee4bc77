import asyncio
import time
from datetime import timedelta

from bus.messages import FetchCompleted, FetchRequested
from db.blob_store import format_timestamp, partial_key
from db.db_utils import advance_baseline, get_fetch_progress, get_follower_list, save_fetch_progress
from db.models import FollowerList, utcnow
from monitor.directory import DirectoryConnectionError, RateLimitExceeded, UserSuspended
from monitor.fetcher import SnapshotFetcher
from helpers import OWNER_ID, FakeDirectory, RecordingBus, add_user, follower, no_sleep, page


def _fetcher(session_factory, blob_store, directory, bus, **kwargs):
    kwargs.setdefault('backoff', 0)
    return SnapshotFetcher(session_factory, blob_store, directory, bus, sleep=no_sleep, **kwargs)


def _request():
    return FetchRequested(user_id=OWNER_ID, handle='owner')


def test_fetches_all_pages_into_one_snapshot(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(pages={
        None: page([follower('2'), follower('1')], next_cursor='c1'),
        'c1': page([follower('3')]),
    })
    bus = RecordingBus()

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, bus).handle_fetch_request(_request()))

    assert directory.page_calls == [None, 'c1']
    assert not completed.failed
    assert completed.previous_key is None
    assert completed.total_followers == 3
    assert [r['id'] for r in blob_store.get_json(completed.snapshot_key)] == ['1', '2', '3']
    assert bus.of_type(FetchCompleted) == [completed]
    with session_factory() as db:
        row = get_follower_list(db, completed.snapshot_key)
        assert row.total_followers == 3
        assert row.expires_at - row.created_at == timedelta(days=30)
        assert get_fetch_progress(db, OWNER_ID) is None


def test_completed_fetch_names_current_baseline(session_factory, blob_store):
    add_user(session_factory)
    with session_factory() as db:
        advance_baseline(db, OWNER_ID, None, 0, 'user/1000/followers/20260101T000000000000Z.json')
    directory = FakeDirectory(pages={None: page([follower('1')])})

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, RecordingBus())
                            .handle_fetch_request(_request()))

    assert completed.previous_key == 'user/1000/followers/20260101T000000000000Z.json'


def test_page_budget_schedules_continuation_and_resumes(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(pages={
        None: page([follower('1'), follower('2')], next_cursor='c1'),
        'c1': page([follower('3')]),
    })
    bus = RecordingBus()

    first = asyncio.run(_fetcher(session_factory, blob_store, directory, bus, max_pages=1)
                        .handle_fetch_request(_request()))

    assert first is None
    continuation, delay = bus.published[0]
    assert continuation == FetchRequested(user_id=OWNER_ID, handle='owner', continuation=True)
    assert delay == 60.0
    with session_factory() as db:
        progress = get_fetch_progress(db, OWNER_ID)
        assert progress.cursor == 'c1'
        assert progress.pages_fetched == 1
        assert progress.followers_fetched == 2
        started_at, stored_partial = progress.started_at, progress.partial_key
    assert len(blob_store.get_json(stored_partial)) == 2

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, bus, max_pages=1)
                            .handle_fetch_request(continuation))

    assert directory.page_calls == [None, 'c1']
    assert completed.total_followers == 3
    assert completed.fetched_at == format_timestamp(started_at)
    assert not blob_store.exists(stored_partial)
    with session_factory() as db:
        assert get_fetch_progress(db, OWNER_ID) is None


def test_time_budget_is_checked_before_each_page(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(pages={None: page([follower('1')], next_cursor='c1')})
    ticks = iter([0.0, 0.0, 100.0])
    bus = RecordingBus()

    result = asyncio.run(_fetcher(session_factory, blob_store, directory, bus, time_budget=10,
                                  clock=lambda: next(ticks)).handle_fetch_request(_request()))

    assert result is None
    assert directory.page_calls == [None]
    assert bus.of_type(FetchRequested)[0].continuation


def test_rate_limit_beyond_budget_resumes_after_reset(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(errors=[RateLimitExceeded(reset_at=time.time() + 3600)])
    bus = RecordingBus()

    result = asyncio.run(_fetcher(session_factory, blob_store, directory, bus, time_budget=30)
                         .handle_fetch_request(_request()))

    assert result is None
    assert directory.page_calls == [None]
    message, delay = bus.published[0]
    assert message.continuation
    assert 3500 < delay <= 3600


def test_transient_errors_are_retried(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(pages={None: page([follower('1')])},
                              errors=[DirectoryConnectionError('reset by peer'), None])

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, RecordingBus())
                            .handle_fetch_request(_request()))

    assert directory.page_calls == [None, None]
    assert completed.total_followers == 1


def test_exhausted_retries_fail_and_keep_progress(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(
        pages={None: page([follower('1')], next_cursor='c1')},
        errors=[None] + [DirectoryConnectionError('reset by peer')] * 3,
    )
    bus = RecordingBus()

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, bus, max_attempts=3)
                            .handle_fetch_request(_request()))

    assert completed.failed
    assert completed.failure_reason.startswith('transient error')
    assert bus.of_type(FetchCompleted) == [completed]
    with session_factory() as db:
        assert get_fetch_progress(db, OWNER_ID).cursor == 'c1'
        assert db.query(FollowerList).count() == 0


def test_suspended_source_account_fails_without_snapshot(session_factory, blob_store):
    add_user(session_factory)
    directory = FakeDirectory(errors=[UserSuspended(OWNER_ID)])

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, RecordingBus())
                            .handle_fetch_request(_request()))

    assert completed.failed
    assert 'suspended' in completed.failure_reason
    assert directory.page_calls == [None]
    with session_factory() as db:
        assert db.query(FollowerList).count() == 0


def test_stale_progress_is_discarded(session_factory, blob_store):
    add_user(session_factory)
    started = utcnow() - timedelta(days=2)
    stale_key = partial_key(OWNER_ID, started)
    blob_store.put_json(stale_key, [follower('9')])
    with session_factory() as db:
        save_fetch_progress(db, OWNER_ID, 'old-cursor', stale_key, 3, 1, started)
    directory = FakeDirectory(pages={None: page([follower('1')])})

    completed = asyncio.run(_fetcher(session_factory, blob_store, directory, RecordingBus())
                            .handle_fetch_request(_request()))

    assert directory.page_calls == [None]
    assert [r['id'] for r in blob_store.get_json(completed.snapshot_key)] == ['1']
    assert not blob_store.exists(stale_key)


def test_unregistered_user_is_skipped(session_factory, blob_store):
    directory = FakeDirectory()
    bus = RecordingBus()

    result = asyncio.run(_fetcher(session_factory, blob_store, directory, bus).handle_fetch_request(_request()))

    assert result is None
    assert directory.page_calls == []
    assert bus.published == []
