import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from config.settings import (
    DIRECTORY_API_URL, DIRECTORY_BEARER_TOKEN, DIRECTORY_TIMEOUT_SECONDS, DIRECTORY_PAGE_SIZE,
    FETCH_MAX_ATTEMPTS, FETCH_BACKOFF_SECONDS,
)

logger = logging.getLogger(__name__)

USER_FIELDS = 'id,name,username,profile_image_url,protected,public_metrics,description,location'

# Legacy numeric error codes still returned by some endpoints
CODE_USER_NOT_FOUND = 50
CODE_USER_SUSPENDED = 63
CODE_RATE_LIMIT = 88
CODE_INVALID_TOKEN = 89


class DirectoryError(Exception):
    """Base class for directory service failures."""


class TransientDirectoryError(DirectoryError):
    """Worth retrying after a pause."""


class DirectoryConnectionError(TransientDirectoryError):
    pass


class DirectoryHTTPError(DirectoryError):
    def __init__(self, status_code: int, body: Any = None):
        super().__init__(f'directory API error: status_code={status_code}')
        self.status_code = status_code
        self.body = body


class DirectoryServerError(DirectoryHTTPError, TransientDirectoryError):
    pass


class RateLimitExceeded(TransientDirectoryError):
    def __init__(self, reset_at: Optional[float] = None):
        super().__init__('rate limit exceeded')
        self.reset_at = reset_at

    def retry_after(self, now: Optional[float] = None) -> Optional[float]:
        if self.reset_at is None:
            return None
        return max(0.0, self.reset_at - (now if now is not None else time.time()))


class UserNotFound(DirectoryError):
    def __init__(self, user_id: str = ''):
        super().__init__(f'user {user_id} not found')
        self.user_id = user_id


class UserSuspended(DirectoryError):
    def __init__(self, user_id: str = ''):
        super().__init__(f'user {user_id} suspended')
        self.user_id = user_id


class InvalidToken(DirectoryError):
    def __init__(self):
        super().__init__('invalid or expired token')


@dataclass
class DirectoryUser:
    id: str
    handle: str = ''
    name: str = ''
    profile_image_url: str = ''
    protected: bool = False
    total_followers: int = 0
    bio: str = ''
    location: str = ''

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'DirectoryUser':
        metrics = data.get('public_metrics') or {}
        return cls(
            id=str(data['id']),
            handle=data.get('username', ''),
            name=data.get('name', ''),
            profile_image_url=data.get('profile_image_url', ''),
            protected=bool(data.get('protected', False)),
            total_followers=int(metrics.get('followers_count', 0)),
            bio=data.get('description', ''),
            location=data.get('location', ''),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DirectoryUser':
        return cls(
            id=str(data['id']),
            handle=data.get('handle', ''),
            name=data.get('name', ''),
            profile_image_url=data.get('profileImageUrl', ''),
            protected=bool(data.get('protected', False)),
            total_followers=int(data.get('totalFollowers', 0)),
            bio=data.get('bio', ''),
            location=data.get('location', ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'handle': self.handle,
            'name': self.name,
            'profileImageUrl': self.profile_image_url,
            'protected': self.protected,
            'totalFollowers': self.total_followers,
            'bio': self.bio,
            'location': self.location,
        }


@dataclass
class FollowerPage:
    followers: List[DirectoryUser] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class IdentityLookup:
    user: Optional[DirectoryUser]
    exists: bool
    suspended: bool = False


async def with_backoff(call: Callable[[], Awaitable[Any]], attempts: int = FETCH_MAX_ATTEMPTS,
                       base_delay: float = FETCH_BACKOFF_SECONDS, max_wait: Optional[float] = None,
                       sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
    """
    Runs call(), retrying transient directory errors with exponential backoff.
    A rate limit waits for the advertised reset when it is within max_wait;
    otherwise the RateLimitExceeded is raised straight away.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except TransientDirectoryError as e:
            if attempt >= attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay / 2)
            if isinstance(e, RateLimitExceeded):
                retry_after = e.retry_after()
                if retry_after is not None:
                    delay = retry_after
                if max_wait is not None and delay > max_wait:
                    raise
            logger.warning(f'Directory call failed ({e}); retry {attempt}/{attempts - 1} in {delay:.1f}s')
            await sleep(delay)
            attempt += 1


class DirectoryClient:
    """
    Async client for a Twitter API v2 compatible directory service.

    Only two endpoints are used: the paginated follower listing of a user
    and the single user lookup.
    """

    def __init__(self, bearer_token: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, page_size: int = DIRECTORY_PAGE_SIZE,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(
            base_url=base_url or DIRECTORY_API_URL,
            timeout=timeout or DIRECTORY_TIMEOUT_SECONDS,
            headers={'Authorization': f'Bearer {bearer_token or DIRECTORY_BEARER_TOKEN}'},
            transport=transport,
        )
        self.page_size = page_size

    async def aclose(self):
        await self._client.aclose()

    async def _get(self, path: str, params: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.RequestError as exc:
            raise DirectoryConnectionError(str(exc)) from exc

        try:
            body = response.json()
        except ValueError:
            body = {'raw': response.text}

        if response.status_code == 429:
            reset = response.headers.get('x-rate-limit-reset')
            raise RateLimitExceeded(reset_at=float(reset) if reset else None)
        if response.status_code == 401:
            raise InvalidToken()
        if response.status_code >= 500:
            raise DirectoryServerError(response.status_code, body)

        error = self._map_errors(body, user_id)
        if error is not None:
            raise error
        if response.status_code == 404:
            raise UserNotFound(user_id)
        if response.status_code // 100 != 2:
            raise DirectoryHTTPError(response.status_code, body)
        return body

    @staticmethod
    def _map_errors(body: Any, user_id: str) -> Optional[DirectoryError]:
        # v2 reports lookup problems inside a 200 response
        if not isinstance(body, dict) or 'data' in body:
            return None
        errors = body.get('errors') or []
        if not errors:
            return None
        first = errors[0]
        code = first.get('code')
        text = ' '.join(str(first.get(k, '')) for k in ('type', 'title', 'detail')).lower()
        if code == CODE_USER_SUSPENDED or 'suspended' in text:
            return UserSuspended(user_id)
        if code == CODE_USER_NOT_FOUND or 'not-found' in text or 'not found' in text:
            return UserNotFound(user_id)
        if code == CODE_RATE_LIMIT:
            return RateLimitExceeded()
        if code == CODE_INVALID_TOKEN:
            return InvalidToken()
        return DirectoryHTTPError(200, body)

    async def follower_page(self, user_id: str, cursor: Optional[str] = None) -> FollowerPage:
        params = {'max_results': self.page_size, 'user.fields': USER_FIELDS}
        if cursor:
            params['pagination_token'] = cursor
        body = await self._get(f'/users/{user_id}/followers', params, user_id)
        followers = [DirectoryUser.from_api(item) for item in body.get('data') or []]
        next_cursor = (body.get('meta') or {}).get('next_token')
        return FollowerPage(followers=followers, next_cursor=next_cursor)

    async def user_by_id(self, user_id: str) -> DirectoryUser:
        body = await self._get(f'/users/{user_id}', {'user.fields': USER_FIELDS}, user_id)
        return DirectoryUser.from_api(body['data'])

    async def lookup_identity(self, user_id: str) -> IdentityLookup:
        """Resolves existence and suspension status of one account."""
        try:
            user = await self.user_by_id(user_id)
        except UserNotFound:
            return IdentityLookup(user=None, exists=False)
        except UserSuspended:
            return IdentityLookup(user=None, exists=True, suspended=True)
        return IdentityLookup(user=user, exists=True)
