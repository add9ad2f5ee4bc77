"""Fakes and builders shared by the test modules."""

from datetime import datetime
from typing import Dict, List, Optional

from bus.messages import kind_of
from db.blob_store import snapshot_key
from db.db_utils import add_follower_list
from db.models import User
from monitor.directory import DirectoryUser, FollowerPage, IdentityLookup

OWNER_ID = '1000'


async def no_sleep(_seconds):
    return None


def follower(follower_id: str, handle: Optional[str] = None, **extra) -> Dict:
    record = DirectoryUser(
        id=follower_id,
        handle=handle or f'user{follower_id}',
        name=(handle or f'user{follower_id}').title(),
        total_followers=10,
    ).to_dict()
    record.update(extra)
    return record


def add_user(session_factory, user_id: str = OWNER_ID, handle: str = 'owner', **fields) -> None:
    with session_factory() as db:
        db.add(User(id=user_id, handle=handle, name=handle.title(), ignore_followers=fields.pop('ignore_followers', []),
                    **fields))
        db.commit()


def seed_snapshot(session_factory, blob_store, records: List[Dict], at: datetime, user_id: str = OWNER_ID) -> str:
    key = snapshot_key(user_id, at)
    ordered = sorted(records, key=lambda r: r['id'])
    _, digest = blob_store.put_json(key, ordered)
    with session_factory() as db:
        add_follower_list(db, user_id, key, digest, len(ordered), at, at.replace(year=at.year + 1))
    return key


def page(records: List[Dict], next_cursor: Optional[str] = None) -> FollowerPage:
    return FollowerPage(followers=[DirectoryUser.from_dict(r) for r in records], next_cursor=next_cursor)


class RecordingBus:
    def __init__(self, fail_for_users=(), fail_on_type=None):
        self.published = []
        self.fail_for_users = set(fail_for_users)
        self.fail_on_type = fail_on_type

    async def publish(self, message, delay: float = 0) -> str:
        kind_of(message)
        if getattr(message, 'user_id', None) in self.fail_for_users:
            raise RuntimeError('bus unavailable')
        if self.fail_on_type is not None and isinstance(message, self.fail_on_type):
            raise RuntimeError('bus unavailable')
        self.published.append((message, delay))
        return str(len(self.published))

    def of_type(self, cls):
        return [message for message, _ in self.published if isinstance(message, cls)]


class FakeDirectory:
    def __init__(self, pages: Optional[Dict] = None, identities: Optional[Dict[str, IdentityLookup]] = None,
                 errors: Optional[list] = None):
        self.pages = pages or {}
        self.identities = identities or {}
        self.errors = list(errors or [])
        self.page_calls = []
        self.lookup_calls = []

    async def follower_page(self, user_id, cursor=None):
        self.page_calls.append(cursor)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return self.pages[cursor]

    async def lookup_identity(self, user_id):
        self.lookup_calls.append(user_id)
        result = self.identities.get(user_id, IdentityLookup(user=None, exists=False))
        if isinstance(result, Exception):
            raise result
        return result


def active(record: Dict) -> IdentityLookup:
    return IdentityLookup(user=DirectoryUser.from_dict(record), exists=True)


def suspended() -> IdentityLookup:
    return IdentityLookup(user=None, exists=True, suspended=True)
