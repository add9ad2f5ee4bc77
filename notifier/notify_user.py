import logging
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from bus.messages import FollowerChange
from db.db_utils import get_user
from notifier.render import RenderedMessage, render_follower_event
from notifier.senders import NotificationDeliveryError, NotificationSender

logger = logging.getLogger(__name__)


class Notifier:
    """
    Turns one follower-change event into a message on the owner's channels.
    Reads the user's settings only; safe to run more than once per event.
    """

    def __init__(self, db_session_factory: Callable[[], Session], senders: Iterable[NotificationSender]):
        self.db_session_factory = db_session_factory
        self._senders: List[NotificationSender] = list(senders)

    async def handle_follower_change(self, change: FollowerChange) -> Optional[RenderedMessage]:
        event = change.event
        with self.db_session_factory() as db:
            user = get_user(db, change.user_id)
            if not user:
                logger.info(f'Event {change.event_id}: owner {change.user_id} no longer exists, nothing to notify.')
                return None
            config = user.notification_config
            handle = user.handle

        if not config.enabled:
            logger.info(f'Event {change.event_id}: notifications disabled for {change.user_id}.')
            return None
        targets = [sender for sender in self._senders if sender.accepts(config)]
        if not targets:
            logger.info(f'Event {change.event_id}: no notification destination configured for {change.user_id}.')
            return None

        message = render_follower_event(event, handle)
        failures = []
        for sender in targets:
            try:
                await sender.send(config, message)
            except NotificationDeliveryError as e:
                logger.error(f'Event {change.event_id}: {type(sender).__name__} failed: {e}')
                failures.append(e)
        if failures:
            raise NotificationDeliveryError(f'{len(failures)} of {len(targets)} deliveries failed for event {change.event_id}')
        return message
