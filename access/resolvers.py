"""
Query and mutation operations exposed to the presentation layer.

Every entry point receives an already authenticated Identity and refuses to
touch a record unless the identity's subject is the record's owner.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from bus.event_bus import EventBus
from bus.messages import UserSignup
from config.settings import AUTH_PROVIDER_PREFIX, LATEST_EVENTS_LIMIT
from db import db_utils
from db.db_utils import UserNotFound
from db.models import NotificationConfig

logger = logging.getLogger(__name__)


class Unauthorized(PermissionError):
    pass


class ValidationError(ValueError):
    pass


@dataclass
class Identity:
    sub: str
    issuer: str = ''
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Profile:
    """User profile as supplied by the identity provider at sign-in."""
    handle: str
    name: str
    location: Optional[str] = None
    bio: Optional[str] = None
    profile_image_url: Optional[str] = None
    last_login: Optional[datetime] = None
    logins_count: int = 1


class Operation(Enum):
    GET_USER = 'getUser'
    UPDATE_USER = 'updateUser'
    REGISTER_USER = 'registerUser'
    DELETE_USER = 'deleteUser'
    GET_LATEST_FOLLOWER_EVENTS = 'getLatestFollowerEvents'


def normalize_user_id(raw: Optional[str], prefix: str = AUTH_PROVIDER_PREFIX) -> str:
    raw = (raw or '').strip()
    if prefix and raw.startswith(prefix):
        return raw[len(prefix):]
    return raw


def authorize(identity: Optional[Identity], target_user_id: Optional[str], prefix: str = AUTH_PROVIDER_PREFIX) -> str:
    """
    Returns the internal user id, or raises Unauthorized. Fails closed.
    The target must equal the subject as issued or with its provider prefix
    removed; the prefix is stripped from the target only to form the key.
    """
    subject = ((identity.sub if identity else None) or '').strip()
    target = (target_user_id or '').strip()
    if not subject:
        raise Unauthorized('unauthorized: missing subject claim')
    if target not in (subject, normalize_user_id(subject, prefix)):
        raise Unauthorized('unauthorized: user ID must match subject claim')
    user_id = normalize_user_id(target, prefix)
    if not user_id:
        raise Unauthorized('unauthorized: user ID must not be empty')
    return user_id


def _validate_url(value: str, name: str):
    parsed = urlparse(value)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError(f'{name} must be an absolute http(s) URL')


def parse_notification_config(data: Dict[str, Any]) -> NotificationConfig:
    config = NotificationConfig(
        enabled=bool(data.get('enabled', False)),
        webhook_url=data.get('webhookUrl') or None,
        channel=data.get('channel') or None,
        telegram_chat_id=str(data['telegramChatId']) if data.get('telegramChatId') else None,
    )
    if config.webhook_url:
        _validate_url(config.webhook_url, 'webhookUrl')
    if config.enabled and not config.has_destination:
        raise ValidationError('webhookUrl or telegramChatId is required when notifications are enabled')
    return config


def parse_ignore_followers(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)):
        raise ValidationError('ignoreFollowers must be a list')
    cleaned = []
    for value in values:
        value = str(value).strip()
        if not value or value == '@':
            raise ValidationError('ignoreFollowers entries must not be empty')
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


class AccessLayer:
    def __init__(self, db_session_factory: Callable[[], Session], bus: Optional[EventBus] = None,
                 provider_prefix: str = AUTH_PROVIDER_PREFIX, events_limit: int = LATEST_EVENTS_LIMIT):
        self.db_session_factory = db_session_factory
        self.bus = bus
        self.provider_prefix = provider_prefix
        self.events_limit = events_limit
        self._operations = {
            Operation.GET_USER: lambda identity, args: self.get_user(identity, args.get('id')),
            Operation.UPDATE_USER: lambda identity, args: self.update_user(identity, args.get('id'), args.get('input') or {}),
            Operation.REGISTER_USER: lambda identity, args: self.register_user(identity, args.get('id'), args['profile']),
            Operation.DELETE_USER: lambda identity, args: self.delete_user(identity, args.get('id')),
            Operation.GET_LATEST_FOLLOWER_EVENTS: lambda identity, args: self.get_latest_follower_events(identity, args.get('userId')),
        }

    async def resolve(self, operation: Operation, identity: Identity, arguments: Dict[str, Any]):
        return await self._operations[operation](identity, arguments)

    def _authorize(self, identity: Identity, target_user_id: Optional[str]) -> str:
        try:
            return authorize(identity, target_user_id, self.provider_prefix)
        except Unauthorized:
            logger.warning(f'Rejected {identity.sub if identity else None!r} acting on {target_user_id!r}')
            raise

    async def get_user(self, identity: Identity, user_id: str) -> Dict[str, Any]:
        user_id = self._authorize(identity, user_id)
        with self.db_session_factory() as db:
            user = db_utils.get_user(db, user_id)
            if not user:
                raise UserNotFound(user_id)
            return user.to_dict()

    async def update_user(self, identity: Identity, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = self._authorize(identity, user_id)
        notification = None
        ignore_followers = None
        if data.get('notification') is not None:
            notification = parse_notification_config(data['notification'])
        if data.get('ignoreFollowers') is not None:
            ignore_followers = parse_ignore_followers(data['ignoreFollowers'])
        with self.db_session_factory() as db:
            user = db_utils.update_user_settings(db, user_id, notification=notification, ignore_followers=ignore_followers)
            logger.info(f'Updated settings for user {user_id}')
            return user.to_dict()

    async def register_user(self, identity: Identity, user_id: str, profile: Profile) -> Dict[str, Any]:
        user_id = self._authorize(identity, user_id)
        if not profile.handle or not profile.name:
            raise ValidationError('handle and name are required')
        if profile.profile_image_url:
            _validate_url(profile.profile_image_url, 'profileImageUrl')
        with self.db_session_factory() as db:
            existed = db_utils.get_user(db, user_id) is not None
            user = db_utils.register_user(db, user_id, {
                'handle': profile.handle,
                'name': profile.name,
                'location': profile.location,
                'bio': profile.bio,
                'profile_image_url': profile.profile_image_url,
                'last_login': profile.last_login,
                'logins_count': profile.logins_count,
                'idp': identity.issuer or None,
            })
            result = user.to_dict()
            first_login = not existed and user.logins_count == 1
        logger.info(f'Registered user {user_id} (@{profile.handle})')

        if first_login and self.bus is not None:
            await self.bus.publish(UserSignup(user_id=user_id, handle=profile.handle))
        return result

    async def delete_user(self, identity: Identity, user_id: str) -> str:
        user_id = self._authorize(identity, user_id)
        with self.db_session_factory() as db:
            if not db_utils.delete_user(db, user_id):
                raise UserNotFound(user_id)
        logger.info(f'Deleted user {user_id}')
        return user_id

    async def get_latest_follower_events(self, identity: Identity, user_id: str) -> List[Dict[str, Any]]:
        user_id = self._authorize(identity, user_id)
        with self.db_session_factory() as db:
            events = db_utils.get_latest_follower_events(db, user_id, self.events_limit)
            return [event.to_dict() for event in events]
