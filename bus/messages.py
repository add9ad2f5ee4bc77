"""
Message types carried on the event bus.

Each EventKind maps to exactly one payload dataclass. Payloads travel as
plain JSON dicts so no stage ever shares objects with another.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Type


class EventKind(Enum):
    FETCH_REQUESTED = 'Fetch Followers'
    FETCH_COMPLETED = 'Followers Fetched'
    FOLLOWER_CHANGE = 'Twitter Follower Change'
    NEW_USER_SIGNUP = 'New User Signup'

    @property
    def detail_type(self) -> str:
        return self.value


@dataclass
class FetchRequested:
    user_id: str
    handle: str
    continuation: bool = False


@dataclass
class FetchCompleted:
    user_id: str
    snapshot_key: Optional[str] = None
    previous_key: Optional[str] = None
    fetched_at: Optional[str] = None
    total_followers: int = 0
    failed: bool = False
    failure_reason: Optional[str] = None


@dataclass
class FollowerChange:
    """Wraps one FollowerEvent as returned by FollowerEvent.to_dict()."""
    event: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_id(self) -> str:
        return self.event['id']

    @property
    def user_id(self) -> str:
        return self.event['userId']


@dataclass
class UserSignup:
    user_id: str
    handle: str


MESSAGE_TYPES: Dict[EventKind, Type] = {
    EventKind.FETCH_REQUESTED: FetchRequested,
    EventKind.FETCH_COMPLETED: FetchCompleted,
    EventKind.FOLLOWER_CHANGE: FollowerChange,
    EventKind.NEW_USER_SIGNUP: UserSignup,
}

KIND_BY_TYPE: Dict[Type, EventKind] = {cls: kind for kind, cls in MESSAGE_TYPES.items()}


def kind_of(message) -> EventKind:
    try:
        return KIND_BY_TYPE[type(message)]
    except KeyError:
        raise TypeError(f'{type(message).__name__} is not a bus message') from None


def encode(message) -> Dict[str, Any]:
    return asdict(message)


def decode(kind: EventKind, payload: Dict[str, Any]):
    return MESSAGE_TYPES[kind](**payload)
