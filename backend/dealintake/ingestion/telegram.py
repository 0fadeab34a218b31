"""Telegram Bot API long-poller feeding the inbound fetcher.

Only channel posts (new and edited) are considered. Each accepted message is
buffered in the InboundFetcher and a run of the inbound source is requested
right away, so deals posted to a channel reach the queue within seconds.
"""

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
import structlog

from dealintake.ingestion.fetchers.inbound import ChannelMessage, InboundFetcher

logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
CHANNEL_UPDATE_TYPES = ("channel_post", "edited_channel_post")


def message_from_update(update: Mapping[str, Any]) -> Optional[ChannelMessage]:
    """ChannelMessage for a channel post update, None for anything else."""
    post = None
    for update_type in CHANNEL_UPDATE_TYPES:
        post = update.get(update_type)
        if post:
            break
    if not post:
        return None

    chat = post.get("chat") or {}
    if chat.get("type") != "channel":
        return None

    identity = chat.get("username") or str(chat.get("id", ""))
    text = post.get("text") or post.get("caption") or ""
    if not identity or not text:
        return None
    return ChannelMessage(channel_identity=identity, text=text, message_id=post.get("message_id"))


class TelegramPoller:
    """Long-polls ``getUpdates`` and pushes channel posts into a fetcher."""

    def __init__(
        self,
        token: str,
        fetcher: InboundFetcher,
        on_messages: Callable[[], Any],
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        poll_timeout: int = 30,
        backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 300.0,
    ):
        """Initialize the poller.

        Args:
            token: Bot API token
            fetcher: Inbound fetcher that buffers accepted messages
            on_messages: Called when buffered messages are waiting; expected
                to request a run of the inbound source
            http_client: Injected client (tests); owned by the poller if None
            poll_timeout: Long-poll timeout passed to Telegram, in seconds
            backoff_seconds: First delay after a failed poll
            max_backoff_seconds: Upper bound of the doubling back-off
        """
        self.token = token
        self.fetcher = fetcher
        self.on_messages = on_messages
        self.poll_timeout = poll_timeout
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._client = http_client
        self._owns_client = http_client is None
        self._offset: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.logger = logger.bind(service="telegram_poller", source_key=fetcher.source_key)

    @property
    def _url(self) -> str:
        return f"{TELEGRAM_API_BASE}/bot{self.token}/getUpdates"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Read timeout must outlast the long poll
            self._client = httpx.AsyncClient(timeout=self.poll_timeout + 10)
        return self._client

    async def _get_updates(self) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "timeout": self.poll_timeout,
            "allowed_updates": '["channel_post","edited_channel_post"]',
        }
        if self._offset is not None:
            params["offset"] = self._offset

        response = await self._get_client().get(self._url, params=params)
        response.raise_for_status()
        body = response.json()
        if not body.get("ok"):
            raise ValueError(f"Telegram API error: {body.get('description', 'unknown')}")
        return body.get("result") or []

    async def poll_once(self) -> int:
        """Fetch one batch of updates.

        Returns:
            Number of messages accepted into the fetcher's buffer
        """
        updates = await self._get_updates()
        accepted = 0
        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._offset = update_id + 1

            message = message_from_update(update)
            if message is not None and self.fetcher.accept(message) is not None:
                accepted += 1

        if accepted:
            self.logger.info("telegram_messages_accepted", count=accepted)
        if self.fetcher.pending:
            self.on_messages()
        return accepted

    async def run(self) -> None:
        """Poll until stopped, backing off on errors."""
        delay = self.backoff_seconds
        self.logger.info("telegram_poller_started")
        while not self._stopping:
            try:
                await self.poll_once()
                delay = self.backoff_seconds
            except (httpx.HTTPError, ValueError) as e:
                self.logger.warning("telegram_poll_failed", error=str(e), retry_in_seconds=delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_backoff_seconds)
            except Exception as e:
                # Anything else (a failing trigger, a malformed update) must not end the task
                self.logger.error(
                    "telegram_poll_crashed",
                    error=str(e),
                    retry_in_seconds=delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_backoff_seconds)
        self.logger.info("telegram_poller_stopped")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
