from sqlalchemy import create_engine, Column, Integer, String, DateTime, Boolean, Text, JSON, Index
from sqlalchemy.orm import declarative_base, sessionmaker
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from config.settings import DATABASE_URL

Base = declarative_base()


def utcnow() -> datetime:
    # Naive UTC, which is what SQLite hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


class FollowerState(str, Enum):
    NEW = 'NEW'
    LOST = 'LOST'


class FollowerStateReason(str, Enum):
    FOLLOWED = 'FOLLOWED'
    UNFOLLOWED = 'UNFOLLOWED'
    DELETED = 'DELETED'
    SUSPENDED = 'SUSPENDED'


ALLOWED_REASONS = {
    FollowerState.NEW: {FollowerStateReason.FOLLOWED},
    FollowerState.LOST: {FollowerStateReason.UNFOLLOWED, FollowerStateReason.DELETED, FollowerStateReason.SUSPENDED},
}


class InvalidRecordError(ValueError):
    """A stored or about-to-be-stored record breaks a model invariant."""


def matches_ignore_list(ignore_list, follower_id: str, handle: Optional[str] = None) -> bool:
    # Entries are follower ids or handles, with or without a leading '@'
    for ignore in ignore_list:
        if ignore == follower_id:
            return True
        if handle and ignore.lstrip('@') == handle:
            return True
    return False


@dataclass
class NotificationConfig:
    enabled: bool = False
    webhook_url: Optional[str] = None
    channel: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def has_destination(self) -> bool:
        return bool(self.webhook_url or self.telegram_chat_id)

    def to_dict(self) -> dict:
        return {
            'enabled': self.enabled,
            'webhookUrl': self.webhook_url,
            'channel': self.channel,
            'telegramChatId': self.telegram_chat_id,
        }


class User(Base):
    __tablename__ = 'users'
    id = Column(String(64), primary_key=True)  # external directory id, provider prefix stripped
    handle = Column(String(100), nullable=False)
    name = Column(String(200), nullable=False)
    location = Column(String(200), nullable=True)
    bio = Column(Text, nullable=True)
    profile_image_url = Column(String(500), nullable=True)
    ignore_followers = Column(JSON, nullable=False, default=list)
    notify_enabled = Column(Boolean, nullable=False, default=False)
    notify_webhook_url = Column(String(500), nullable=True)
    notify_channel = Column(String(100), nullable=True)
    notify_telegram_chat_id = Column(String(64), nullable=True)
    logins_count = Column(Integer, nullable=False, default=0)
    idp = Column(String(200), nullable=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def notification_config(self) -> NotificationConfig:
        return NotificationConfig(
            enabled=bool(self.notify_enabled),
            webhook_url=self.notify_webhook_url,
            channel=self.notify_channel,
            telegram_chat_id=self.notify_telegram_chat_id,
        )

    @notification_config.setter
    def notification_config(self, config: NotificationConfig):
        self.notify_enabled = config.enabled
        self.notify_webhook_url = config.webhook_url
        self.notify_channel = config.channel
        self.notify_telegram_chat_id = config.telegram_chat_id

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'handle': self.handle,
            'name': self.name,
            'location': self.location,
            'bio': self.bio,
            'profileImageUrl': self.profile_image_url,
            'notification': self.notification_config.to_dict(),
            'ignoreFollowers': list(self.ignore_followers or []),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
            'lastLogin': self.last_login.isoformat() if self.last_login else None,
        }

    def __repr__(self):
        return f'<User(id={self.id}, handle={self.handle})>'


class FollowerList(Base):
    """Index row for one snapshot blob."""
    __tablename__ = 'follower_lists'
    blob_key = Column(String(255), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    digest = Column(String(64), nullable=False)
    total_followers = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f'<FollowerList(user_id={self.user_id}, key={self.blob_key}, followers={self.total_followers})>'


class Baseline(Base):
    __tablename__ = 'baselines'
    user_id = Column(String(64), primary_key=True)
    blob_key = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<Baseline(user_id={self.user_id}, key={self.blob_key}, version={self.version})>'


class FetchProgress(Base):
    __tablename__ = 'fetch_progress'
    user_id = Column(String(64), primary_key=True)
    cursor = Column(String(255), nullable=True)
    partial_key = Column(String(255), nullable=False)
    pages_fetched = Column(Integer, nullable=False, default=0)
    followers_fetched = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<FetchProgress(user_id={self.user_id}, pages={self.pages_fetched}, followers={self.followers_fetched})>'


class FollowerEvent(Base):
    __tablename__ = 'follower_events'
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False)
    follower_id = Column(String(64), nullable=False)
    follower = Column(JSON, nullable=False)
    state = Column(String(10), nullable=False)
    state_reason = Column(String(20), nullable=False)
    total_followers = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (Index('ix_follower_events_user_created', 'user_id', 'created_at'),)

    def validate(self):
        if not self.id or not self.user_id or not self.follower_id:
            raise InvalidRecordError(f'FollowerEvent {self.id!r} is missing an identifier')
        try:
            state = FollowerState(self.state)
            reason = FollowerStateReason(self.state_reason)
        except ValueError as e:
            raise InvalidRecordError(f'FollowerEvent {self.id}: {e}') from e
        if reason not in ALLOWED_REASONS[state]:
            raise InvalidRecordError(f'FollowerEvent {self.id}: {state.value} cannot have reason {reason.value}')
        if self.created_at is None or self.expires_at is None or self.expires_at <= self.created_at:
            raise InvalidRecordError(f'FollowerEvent {self.id}: expiry must be after creation')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'totalFollowers': self.total_followers,
            'follower': dict(self.follower),
            'followerState': self.state,
            'followerStateReason': self.state_reason,
            'createdAt': self.created_at.isoformat(),
            'expiresAt': self.expires_at.isoformat(),
        }

    def __repr__(self):
        return f'<FollowerEvent(id={self.id}, user_id={self.user_id}, {self.state}/{self.state_reason})>'


engine = create_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
