import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Self


class TransportEventKind(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    MESSAGE = "message"
    ERROR = "error"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class TransportEvent:
    """Something that happened on a transport.

    Every event carries the URL of the transport that produced it so that
    consumers can tell events of a stale transport apart from current ones.
    """

    kind: TransportEventKind
    url: str
    reason: str | None = None
    will_reconnect: bool = False
    payload: dict[str, Any] | None = None


class Transport(ABC):
    """Abstract transport carrying messages between the client and one server.

    Handles the mechanics of connecting, sending and receiving messages
    without knowledge of message correlation or bootstrap semantics.

    Transports report everything that happens to them as a stream of
    `TransportEvent` objects:
    - Connect via connect()
    - Send messages via send()
    - Observe connection state and incoming messages by iterating over events()

    One instance serves exactly one URL for its whole life; connecting to a
    different URL requires a new instance.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._event_queue: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        self._events_finished = False

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if the transport can send messages right now."""

    @abstractmethod
    async def connect(self) -> None:
        """Start connecting in the background.

        Returns as soon as the connection attempt has been started; progress
        is reported through events().

        Raises:
            ConfigurationError: If the URL of the transport is unusable.
        """

    @abstractmethod
    async def send(self, payload: dict[str, Any]) -> None:
        """Send a message.

        Raises:
            TransportError: If the transport is not connected.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport and end the event stream.

        Safe to call multiple times.
        """

    def events(self) -> AsyncIterator[TransportEvent]:
        """Stream of transport events. Ends when the transport is closed."""
        return self._event_iterator()

    async def _event_iterator(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._event_queue.get()
            if event is None:
                break
            yield event

    def _emit(
        self,
        kind: TransportEventKind,
        *,
        reason: str | None = None,
        will_reconnect: bool = False,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if self._events_finished:
            return
        self._event_queue.put_nowait(
            TransportEvent(
                kind=kind,
                url=self.url,
                reason=reason,
                will_reconnect=will_reconnect,
                payload=payload,
            )
        )

    def _finish_events(self) -> None:
        """Terminate the event stream. Later events are dropped."""
        if not self._events_finished:
            self._events_finished = True
            self._event_queue.put_nowait(None)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
        return None
