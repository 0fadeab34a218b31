"""Push-driven fetcher for chat channel messages.

A long-lived listener (``dealintake.ingestion.telegram.TelegramPoller``)
hands every received message to ``accept``. Accepted messages wait in a
buffer until the next run of the inbound source drains them.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Iterable, List, Mapping, Optional

from dealintake.ingestion.base import BaseFetcher, RawCandidate, SourceType
from dealintake.ingestion.normalizer import extract_url


@dataclass(frozen=True)
class ChannelMessage:
    """One message delivered by the chat collaborator."""

    channel_identity: str
    text: str
    message_id: Optional[int] = None


def _normalize_channel(identity: str) -> str:
    return identity.strip().lstrip("@").lower()


class InboundFetcher(BaseFetcher):
    """Buffers allow-listed channel messages that carry a URL."""

    source_type = SourceType.INBOUND

    def __init__(
        self,
        source_key: str,
        allowed_channels: Iterable[str] = (),
        max_buffer: int = 1000,
    ):
        super().__init__(source_key)
        self.allowed_channels = frozenset(_normalize_channel(c) for c in allowed_channels if c)
        self._buffer: Deque[RawCandidate] = deque(maxlen=max_buffer)

    def is_allowed(self, channel_identity: str) -> bool:
        """Empty allow-list admits every channel; matching ignores case."""
        if not self.allowed_channels:
            return True
        return _normalize_channel(channel_identity) in self.allowed_channels

    def accept(self, message: ChannelMessage) -> Optional[RawCandidate]:
        """Buffer one candidate for ``message``, or ignore it.

        Returns:
            The buffered candidate, or None for messages from channels not
            on the allow-list and messages without a URL
        """
        if not self.is_allowed(message.channel_identity):
            self.logger.debug("inbound_channel_ignored", channel=message.channel_identity)
            return None

        url = extract_url(message.text)
        if url is None:
            return None

        candidate = RawCandidate(
            kind=SourceType.INBOUND,
            source_key=self.source_key,
            payload={
                "text": message.text,
                "url": url,
                "channel": message.channel_identity,
                "message_id": message.message_id,
            },
        )
        if len(self._buffer) == self._buffer.maxlen:
            self.logger.warning("inbound_buffer_full", dropped=1)
        self._buffer.append(candidate)
        return candidate

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def fetch(self, config: Mapping[str, Any]) -> List[RawCandidate]:
        """Drain everything buffered since the last run, oldest first."""
        batch = list(self._buffer)
        self._buffer.clear()
        return batch
