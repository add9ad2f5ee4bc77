"""
Delivery channels for follower notifications.

Every sender raises NotificationDeliveryError on failure so the bus can
redeliver the event; none of them remembers what it already sent.
"""

import logging
from typing import Optional, Protocol

import httpx
from telegram import Bot
from telegram.error import TelegramError

from config.settings import SLACK_USERNAME, SLACK_ICON_URL, TELEGRAM_BOT_TOKEN, NOTIFY_TIMEOUT_SECONDS
from db.models import NotificationConfig
from notifier.render import RenderedMessage, to_slack_payload

logger = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    pass


class NotificationSender(Protocol):
    def accepts(self, config: NotificationConfig) -> bool:  # pragma: no cover - Protocol
        ...

    async def send(self, config: NotificationConfig, message: RenderedMessage) -> None:  # pragma: no cover - Protocol
        ...


class WebhookSender:
    """Posts Slack-compatible block messages to an incoming webhook."""

    def __init__(self, username: Optional[str] = None, icon_url: Optional[str] = None,
                 timeout: float = NOTIFY_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.username = username if username is not None else SLACK_USERNAME
        self.icon_url = icon_url if icon_url is not None else SLACK_ICON_URL
        self.timeout = timeout
        self._transport = transport

    def accepts(self, config: NotificationConfig) -> bool:
        return bool(config.webhook_url)

    async def send(self, config: NotificationConfig, message: RenderedMessage) -> None:
        payload = to_slack_payload(message, channel=config.channel, username=self.username, icon_url=self.icon_url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(config.webhook_url, json=payload)
        except httpx.RequestError as exc:
            raise NotificationDeliveryError(f'webhook request failed: {exc}') from exc
        if response.status_code // 100 != 2:
            raise NotificationDeliveryError(f'webhook returned {response.status_code}: {response.text[:200]}')
        logger.info(f'Delivered "{message.header}" to webhook (channel={config.channel or "default"})')


class TelegramSender:
    def __init__(self, token: Optional[str] = None, bot: Optional[Bot] = None):
        self._token = token or TELEGRAM_BOT_TOKEN
        self._bot = bot

    def accepts(self, config: NotificationConfig) -> bool:
        return bool(config.telegram_chat_id) and bool(self._bot or self._token)

    async def send(self, config: NotificationConfig, message: RenderedMessage) -> None:
        bot = self._bot or Bot(token=self._token)
        try:
            async with bot:
                await bot.send_message(chat_id=config.telegram_chat_id, text=message.as_plain_text())
        except TelegramError as e:
            raise NotificationDeliveryError(f'telegram delivery failed: {e}') from e
        logger.info(f'Delivered "{message.header}" to Telegram chat {config.telegram_chat_id}')
