import asyncio
import json

import httpx
import pytest

from monitor.directory import (
    DirectoryClient, DirectoryHTTPError, DirectoryServerError, InvalidToken, RateLimitExceeded, TransientDirectoryError,
    UserNotFound, with_backoff,
)
from helpers import no_sleep

API_USER = {
    'id': '42',
    'username': 'alice',
    'name': 'Alice',
    'profile_image_url': 'https://pbs.example.com/alice_normal.jpg',
    'protected': False,
    'public_metrics': {'followers_count': 1234},
    'description': 'hello',
    'location': 'Berlin',
}


def _call(handler, method, *args):
    async def scenario():
        client = DirectoryClient(bearer_token='t0ken', base_url='https://directory.test/2',
                                 transport=httpx.MockTransport(handler), page_size=2)
        try:
            return await getattr(client, method)(*args)
        finally:
            await client.aclose()
    return asyncio.run(scenario())


def test_follower_page_parses_users_and_cursor():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['path'] = request.url.path
        seen['params'] = dict(request.url.params)
        seen['auth'] = request.headers.get('Authorization')
        return httpx.Response(200, json={'data': [API_USER], 'meta': {'next_token': 'NEXT'}})

    result = _call(handler, 'follower_page', '1000', 'CUR')

    assert seen['path'] == '/2/users/1000/followers'
    assert seen['params']['pagination_token'] == 'CUR'
    assert seen['params']['max_results'] == '2'
    assert seen['auth'] == 'Bearer t0ken'
    assert result.next_cursor == 'NEXT'
    [user] = result.followers
    assert (user.id, user.handle, user.total_followers, user.bio) == ('42', 'alice', 1234, 'hello')


def test_last_page_has_no_cursor():
    def handler(request):
        assert 'pagination_token' not in request.url.params
        return httpx.Response(200, json={'meta': {'result_count': 0}})

    result = _call(handler, 'follower_page', '1000', None)

    assert result.followers == []
    assert result.next_cursor is None


def test_rate_limit_carries_reset_time():
    def handler(request):
        return httpx.Response(429, headers={'x-rate-limit-reset': '1900000000'}, json={'title': 'Too Many Requests'})

    with pytest.raises(RateLimitExceeded) as exc_info:
        _call(handler, 'follower_page', '1000', None)

    assert exc_info.value.reset_at == 1900000000.0
    assert exc_info.value.retry_after(now=1899999990.0) == 10.0


def test_status_codes_map_to_errors():
    with pytest.raises(InvalidToken):
        _call(lambda request: httpx.Response(401, json={}), 'follower_page', '1000', None)
    with pytest.raises(DirectoryServerError) as exc_info:
        _call(lambda request: httpx.Response(503, text='unavailable'), 'follower_page', '1000', None)
    assert isinstance(exc_info.value, TransientDirectoryError)
    assert exc_info.value.status_code == 503


def test_lookup_identity_distinguishes_outcomes():
    responses = {
        '/2/users/1': httpx.Response(200, json={'data': API_USER}),
        '/2/users/2': httpx.Response(200, json={'errors': [{'title': 'Forbidden', 'detail': 'User has been suspended: [2].'}]}),
        '/2/users/3': httpx.Response(200, json={'errors': [{'title': 'Not Found Error', 'type': 'https://api.twitter.com/2/problems/resource-not-found'}]}),
        '/2/users/4': httpx.Response(404, json={}),
    }

    def handler(request):
        return responses[request.url.path]

    active = _call(handler, 'lookup_identity', '1')
    assert active.exists and not active.suspended and active.user.handle == 'alice'
    suspended = _call(handler, 'lookup_identity', '2')
    assert suspended.exists and suspended.suspended and suspended.user is None
    assert not _call(handler, 'lookup_identity', '3').exists
    assert not _call(handler, 'lookup_identity', '4').exists


def test_user_by_id_raises_for_missing_user():
    def handler(request):
        return httpx.Response(200, json={'errors': [{'code': 50, 'message': 'User not found.'}]})

    with pytest.raises(UserNotFound):
        _call(handler, 'user_by_id', '9')


def test_connection_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    with pytest.raises(TransientDirectoryError):
        _call(handler, 'follower_page', '1000', None)


def test_with_backoff_retries_until_success():
    calls = []
    delays = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise DirectoryServerError(502)
        return 'ok'

    async def record_sleep(seconds):
        delays.append(seconds)

    result = asyncio.run(with_backoff(flaky, attempts=3, base_delay=1.0, sleep=record_sleep))

    assert result == 'ok'
    assert len(delays) == 2
    assert 1.0 <= delays[0] <= 1.5
    assert 2.0 <= delays[1] <= 2.5


def test_with_backoff_does_not_retry_permanent_errors():
    calls = []

    async def missing():
        calls.append(1)
        raise UserNotFound('9')

    with pytest.raises(UserNotFound):
        asyncio.run(with_backoff(missing, attempts=5, base_delay=0, sleep=no_sleep))
    assert calls == [1]


def test_with_backoff_gives_up_on_long_rate_limit():
    async def limited():
        raise RateLimitExceeded(reset_at=None)

    async def fail_sleep(seconds):
        raise AssertionError('should not sleep')

    with pytest.raises(RateLimitExceeded):
        asyncio.run(with_backoff(limited, attempts=3, base_delay=100, max_wait=1, sleep=fail_sleep))


def test_error_body_is_kept_for_diagnostics():
    body = {'errors': [{'code': 999, 'message': 'strange'}]}

    with pytest.raises(DirectoryHTTPError) as exc_info:
        _call(lambda request: httpx.Response(200, content=json.dumps(body)), 'user_by_id', '9')

    assert exc_info.value.body == body
    assert exc_info.value.status_code == 200
