import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from bus.messages import EventKind, decode, encode, kind_of
from config.settings import BUS_WORKERS, BUS_MAX_DELIVERIES, BUS_REDELIVERY_BACKOFF_SECONDS

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]


class EventBus(Protocol):
    async def publish(self, message, delay: float = 0) -> str:  # pragma: no cover - Protocol
        ...


@dataclass
class Envelope:
    kind: EventKind
    body: str
    message_id: str
    attempt: int = 1


class InProcessEventBus:
    """
    asyncio-backed bus with a fixed dispatch table and a bounded worker pool.

    Delivery is at-least-once: a handler that raises is retried with
    exponential backoff until max_deliveries is reached, after which the
    envelope is parked in dead_letters.
    """

    def __init__(self, handlers: Optional[Dict[EventKind, Handler]] = None, workers: int = BUS_WORKERS,
                 max_deliveries: int = BUS_MAX_DELIVERIES, redelivery_backoff: float = BUS_REDELIVERY_BACKOFF_SECONDS):
        self._handlers: Dict[EventKind, Handler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)
        self._worker_count = max(1, workers)
        self.max_deliveries = max(1, max_deliveries)
        self.redelivery_backoff = redelivery_backoff
        self._queue: asyncio.Queue = asyncio.Queue()
        self._delayed: set = set()
        self._workers: List[asyncio.Task] = []
        self.dead_letters: List[Envelope] = []

    def register(self, kind: EventKind, handler: Handler):
        if kind in self._handlers:
            raise ValueError(f'a handler for {kind.detail_type!r} is already registered')
        self._handlers[kind] = handler

    async def publish(self, message, delay: float = 0) -> str:
        kind = kind_of(message)
        envelope = Envelope(kind=kind, body=json.dumps(encode(message)), message_id=str(uuid.uuid4()))
        self._enqueue(envelope, delay)
        logger.debug(f'Published {kind.detail_type} {envelope.message_id} (delay={delay}s)')
        return envelope.message_id

    def _enqueue(self, envelope: Envelope, delay: float):
        if delay <= 0:
            self._queue.put_nowait(envelope)
            return
        task = asyncio.ensure_future(self._enqueue_later(envelope, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _enqueue_later(self, envelope: Envelope, delay: float):
        await asyncio.sleep(delay)
        self._queue.put_nowait(envelope)

    async def start(self):
        if self._workers:
            return
        self._workers = [asyncio.ensure_future(self._worker(i)) for i in range(self._worker_count)]
        logger.info(f'Event bus started with {self._worker_count} workers.')

    async def stop(self):
        for task in list(self._delayed):
            task.cancel()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers = []
        logger.info('Event bus stopped.')

    async def join(self):
        """Waits until every queued and delayed envelope has been handled."""
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed), return_exceptions=True)

    async def _worker(self, number: int):
        while True:
            envelope = await self._queue.get()
            try:
                await self._deliver(envelope)
            finally:
                self._queue.task_done()

    async def _deliver(self, envelope: Envelope):
        handler = self._handlers.get(envelope.kind)
        if handler is None:
            logger.warning(f'No handler for {envelope.kind.detail_type}; dropping {envelope.message_id}')
            return
        try:
            message = decode(envelope.kind, json.loads(envelope.body))
            await handler(message)
        except Exception as e:
            if envelope.attempt >= self.max_deliveries:
                logger.error(f'Giving up on {envelope.kind.detail_type} {envelope.message_id} after '
                             f'{envelope.attempt} attempts: {e}', exc_info=True)
                self.dead_letters.append(envelope)
                return
            delay = self.redelivery_backoff * (2 ** (envelope.attempt - 1))
            logger.warning(f'Handler for {envelope.kind.detail_type} {envelope.message_id} failed '
                           f'(attempt {envelope.attempt}/{self.max_deliveries}): {e}. Redelivering in {delay}s.')
            envelope.attempt += 1
            self._enqueue(envelope, delay)
