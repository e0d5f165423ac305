"""Self-reconnecting WebSocket transport.

Reconnection and backoff are left to the `websockets` library: iterating over
`connect()` yields a new connection every time the previous one is lost. This
transport only decides which disconnections are worth reconnecting after and
reports everything as transport events.
"""

import asyncio
import json
import logging
from typing import Any, Callable

from websockets.asyncio.client import ClientConnection, connect, process_exception
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close, CloseCode

from groundlink.config import ConnectionTarget, parse_address
from groundlink.errors import TransportError
from groundlink.transport.base import Transport, TransportEventKind

logger = logging.getLogger(__name__)

CLIENT_DISCONNECT = "io client disconnect"
SERVER_DISCONNECT = "io server disconnect"
PING_TIMEOUT = "ping timeout"
TRANSPORT_CLOSE = "transport close"

RECONNECTING_REASONS = frozenset({PING_TIMEOUT, TRANSPORT_CLOSE})


def classify_close(rcvd: Close | None, sent: Close | None) -> str:
    """Map the close frames of a finished connection to a disconnection reason."""
    if (
        rcvd is None
        and sent is not None
        and sent.code == CloseCode.INTERNAL_ERROR
        and "keepalive" in sent.reason
    ):
        return PING_TIMEOUT
    if rcvd is not None and rcvd.code == CloseCode.NORMAL_CLOSURE:
        return SERVER_DISCONNECT
    return TRANSPORT_CLOSE


class WebSocketTransport(Transport):
    """Pub/sub transport over a WebSocket that reconnects on its own.

    Only `"ping timeout"` and `"transport close"` disconnections lead to a
    reconnection; a clean close initiated by either side ends the transport.
    """

    def __init__(
        self,
        target: ConnectionTarget,
        *,
        connect_timeout: float = 5.0,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        connector: Callable[..., Any] = connect,
    ) -> None:
        super().__init__(target.url)
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._connector = connector
        self._websocket: ClientConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._websocket is not None and not self._closing

    async def connect(self) -> None:
        """Start the connection loop in the background.

        Raises:
            ConfigurationError: If the URL has no usable host or port.
            TransportError: If the transport was already closed.
        """
        if self._closing:
            raise TransportError("Cannot connect: transport is closed")
        if self._task is not None:
            return

        parse_address(self.url)
        self._task = asyncio.create_task(self._run(), name=f"websocket_{self.url}")

    async def _run(self) -> None:
        self._emit(TransportEventKind.CONNECTING)
        try:
            async for websocket in self._connector(
                self.url,
                open_timeout=self.connect_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                process_exception=self._process_exception,
            ):
                self._websocket = websocket
                self._emit(TransportEventKind.CONNECTED)

                reason = await self._receive_until_closed(websocket)
                self._websocket = None

                will_reconnect = reason in RECONNECTING_REASONS and not self._closing
                self._emit(
                    TransportEventKind.DISCONNECTED,
                    reason=reason,
                    will_reconnect=will_reconnect,
                )
                if not will_reconnect:
                    break

                logger.debug(f"Reconnecting to {self.url} after {reason}")
                self._emit(TransportEventKind.RECONNECTING)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"WebSocket connection to {self.url} failed: {e}")
            self._emit(
                TransportEventKind.ERROR,
                reason=str(e) or type(e).__name__,
                will_reconnect=False,
            )
        finally:
            self._websocket = None

    def _process_exception(self, exc: Exception) -> Exception | None:
        """Report failed connection attempts; let websockets decide on retrying."""
        verdict = process_exception(exc)
        if verdict is None:
            if isinstance(exc, TimeoutError):
                self._emit(
                    TransportEventKind.TIMEOUT,
                    reason="connect timeout",
                    will_reconnect=True,
                )
            else:
                self._emit(
                    TransportEventKind.ERROR,
                    reason=str(exc) or type(exc).__name__,
                    will_reconnect=True,
                )
        return verdict

    async def _receive_until_closed(self, websocket: ClientConnection) -> str:
        try:
            async for raw in websocket:
                try:
                    payload = json.loads(raw)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    payload = None
                if not isinstance(payload, dict):
                    logger.warning(f"Invalid JSON from {self.url}: {raw!r}")
                    continue
                self._emit(TransportEventKind.MESSAGE, payload=payload)
        except ConnectionClosed as e:
            rcvd, sent = e.rcvd, e.sent
        else:
            rcvd, sent = websocket.protocol.close_rcvd, websocket.protocol.close_sent

        if self._closing:
            return CLIENT_DISCONNECT
        return classify_close(rcvd, sent)

    async def send(self, payload: dict[str, Any]) -> None:
        websocket = self._websocket
        if websocket is None or self._closing:
            raise TransportError(f"Not connected to {self.url}")
        try:
            await websocket.send(json.dumps(payload, ensure_ascii=False))
        except ConnectionClosed as e:
            raise TransportError(f"Connection to {self.url} closed: {e}") from e

    async def close(self) -> None:
        """Close the connection and stop reconnecting.

        Safe to call multiple times.
        """
        if self._closing:
            return
        self._closing = True

        websocket = self._websocket
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error while closing WebSocket to {self.url}: {e}")

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._finish_events()
        logger.debug(f"Closed WebSocket transport to {self.url}")
