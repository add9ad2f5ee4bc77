import asyncio

import pytest

from bus.event_bus import InProcessEventBus
from bus.messages import EventKind, FetchRequested, FollowerChange, UserSignup, decode, encode, kind_of


def _run(bus, *messages, delay=0):
    async def scenario():
        await bus.start()
        try:
            for message in messages:
                await bus.publish(message, delay=delay)
            await asyncio.wait_for(bus.join(), timeout=5)
        finally:
            await bus.stop()
    asyncio.run(scenario())


def test_messages_are_routed_by_kind():
    received = []

    async def on_fetch(message):
        received.append(('fetch', message))

    async def on_signup(message):
        received.append(('signup', message))

    bus = InProcessEventBus({EventKind.FETCH_REQUESTED: on_fetch, EventKind.NEW_USER_SIGNUP: on_signup})
    request = FetchRequested(user_id='1', handle='one')

    _run(bus, request, UserSignup(user_id='2', handle='two'))

    assert sorted(received, key=lambda r: r[0]) == [
        ('fetch', request),
        ('signup', UserSignup(user_id='2', handle='two')),
    ]


def test_failing_handler_is_redelivered_until_it_succeeds():
    attempts = []

    async def flaky(message):
        attempts.append(message.user_id)
        if len(attempts) < 3:
            raise RuntimeError('temporary')

    bus = InProcessEventBus({EventKind.FETCH_REQUESTED: flaky}, max_deliveries=3, redelivery_backoff=0.01)

    _run(bus, FetchRequested(user_id='1', handle='one'))

    assert attempts == ['1', '1', '1']
    assert bus.dead_letters == []


def test_exhausted_deliveries_are_dead_lettered():
    async def broken(message):
        raise RuntimeError('always')

    bus = InProcessEventBus({EventKind.FETCH_REQUESTED: broken}, max_deliveries=2, redelivery_backoff=0)

    _run(bus, FetchRequested(user_id='1', handle='one'))

    assert len(bus.dead_letters) == 1
    assert bus.dead_letters[0].attempt == 2
    assert bus.dead_letters[0].kind is EventKind.FETCH_REQUESTED


def test_delayed_publish_is_delivered_later():
    received = []

    async def on_fetch(message):
        received.append(message)

    bus = InProcessEventBus({EventKind.FETCH_REQUESTED: on_fetch})

    _run(bus, FetchRequested(user_id='1', handle='one', continuation=True), delay=0.05)

    assert received == [FetchRequested(user_id='1', handle='one', continuation=True)]


def test_unhandled_kind_is_dropped():
    bus = InProcessEventBus()

    _run(bus, FollowerChange(event={'id': 'e1', 'userId': '1'}))

    assert bus.dead_letters == []


def test_duplicate_registration_is_rejected():
    async def handler(message):
        return None

    bus = InProcessEventBus({EventKind.FETCH_REQUESTED: handler})
    with pytest.raises(ValueError):
        bus.register(EventKind.FETCH_REQUESTED, handler)


def test_only_known_message_types_can_be_published():
    with pytest.raises(TypeError):
        kind_of({'user_id': '1'})
    message = FollowerChange(event={'id': 'e1', 'userId': '1'})
    assert decode(kind_of(message), encode(message)) == message
    assert kind_of(message).detail_type == 'Twitter Follower Change'
