"""Raw TCP sockets speaking newline-delimited JSON.

`TCPSocket` represents a single connection attempt. `ReconnectingTCPSocket`
wraps it and starts a new attempt after a short random delay whenever the
connection fails or drops, unless the client closed it on purpose.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable

from groundlink.errors import TransportError


logger = logging.getLogger(__name__)

CLIENT_DISCONNECT = "io client disconnect"
SERVER_DISCONNECT = "io server disconnect"
PING_TIMEOUT = "ping timeout"
TRANSPORT_ERROR = "transport error"

MAX_LINE_LENGTH = 16 * 1024 * 1024


@dataclass
class SocketOptions:
    url: str
    connect_timeout: float = 5.0


@dataclass
class SocketCallbacks:
    """Callbacks invoked by TCP sockets. All of them are optional."""

    on_connecting: Callable[[], None] | None = None
    on_connected: Callable[[], None] | None = None
    on_connection_error: Callable[[Exception, bool], None] | None = None
    on_connection_timeout: Callable[[bool], None] | None = None
    on_disconnected: Callable[[str, bool], None] | None = None
    on_message: Callable[[dict[str, Any]], None] | None = None


def decode_line(line: bytes) -> dict[str, Any] | None:
    """Decode one complete NDJSON line received from the server.

    Blank lines, invalid JSON and anything but a JSON object yield None.
    """
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring invalid JSON line: {text!r}")
        return None
    if not isinstance(message, dict):
        logger.warning(f"Ignoring non-object JSON line: {text!r}")
        return None
    return message


def encode_line(payload: dict[str, Any]) -> bytes:
    """Encode a message as a single newline-terminated line.

    Raises:
        ValueError: If the payload is not JSON-serializable.
    """
    try:
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    except TypeError as e:
        raise ValueError(f"Message is not JSON-serializable: {e}") from e
    return text.encode("utf-8") + b"\n"


class TCPSocket:
    """A single TCP connection attempt.

    The connected callback is only invoked after the first successful ping
    (see `notify_ping()`), not when the TCP handshake completes: an open
    socket does not mean that the server actually talks to us.
    """

    def __init__(
        self,
        address: tuple[str, int],
        options: SocketOptions,
        callbacks: SocketCallbacks,
    ) -> None:
        self.address = address
        self.options = options
        self._callbacks = callbacks
        self._writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task[None] | None = None
        self._disconnection_reason: str | None = None
        self._ping_received = False
        self._ended = False

    @property
    def is_writable(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"tcp_socket_{self.options.url}"
            )

    async def _run(self) -> None:
        host, port = self.address
        self._call("on_connecting")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=MAX_LINE_LENGTH),
                self.options.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.debug(f"Timed out while connecting to {self.options.url}")
            self._call("on_connection_timeout", False)
            return
        except OSError as e:
            logger.debug(f"Failed to connect to {self.options.url}: {e}")
            self._call("on_connection_error", e, False)
            return

        self._writer = writer
        if self._ended:
            writer.close()

        error: Exception | None = None
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                message = decode_line(line)
                if message is not None:
                    self._call("on_message", message)
        except (OSError, ValueError) as e:
            error = e
        finally:
            self._writer = None
            writer.close()

        if error is not None:
            logger.debug(f"Connection to {self.options.url} failed: {error}")
            reason = TRANSPORT_ERROR
        else:
            reason = self._disconnection_reason or SERVER_DISCONNECT

        self._call("on_disconnected", reason, False)

    async def send(self, payload: dict[str, Any]) -> None:
        """Write one message to the socket.

        Raises:
            TransportError: If the socket is not connected or the write fails.
        """
        writer = self._writer
        if writer is None or writer.is_closing():
            raise TransportError(f"Not connected to {self.options.url}")

        try:
            writer.write(encode_line(payload))
            await writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Failed to send message to {self.options.url}: {e}") from e

    def end(self, reason: str = CLIENT_DISCONNECT) -> None:
        """Close the connection, reporting `reason` to the disconnection callback.

        Safe to call multiple times.
        """
        if self._ended:
            return
        self._ended = True
        self._disconnection_reason = reason

        if self._writer is not None:
            self._writer.close()
        elif self._task is not None and not self._task.done():
            # Still connecting; there is no stream to close yet
            self._task.cancel()
            self._call("on_disconnected", reason, False)

    def detach(self) -> None:
        """Drop all callbacks and abandon the connection silently."""
        self._callbacks = SocketCallbacks()
        self._ended = True
        if self._writer is not None:
            self._writer.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def notify_ping(self, success: bool = True) -> None:
        """Tell the socket about the outcome of a liveness probe.

        The first successful ping reports the connection as established. A
        failed ping after a successful one ends the socket.
        """
        if success:
            if not self._ping_received:
                self._ping_received = True
                self._call("on_connected")
        elif self._ping_received:
            self._ping_received = False
            self.end(PING_TIMEOUT)

    def _call(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Socket callback {name} failed: {e}")


class ReconnectingTCPSocket:
    """TCP socket that keeps trying to reconnect until ended by the client."""

    def __init__(
        self,
        address: tuple[str, int],
        options: SocketOptions,
        callbacks: SocketCallbacks,
        reconnect_delay: tuple[float, float] = (1.0, 3.0),
    ) -> None:
        self.address = address
        self.options = options
        self.reconnect_delay = reconnect_delay
        self._callbacks = callbacks
        self._socket: TCPSocket | None = None
        self._reconnection_handle: asyncio.TimerHandle | None = None
        self._connecting_reported = False
        self._ended = False

    @property
    def is_writable(self) -> bool:
        return self._socket is not None and self._socket.is_writable

    def start(self) -> None:
        if self._socket is None:
            self._start_new_connection_attempt()

    async def send(self, payload: dict[str, Any]) -> None:
        if self._socket is None:
            raise TransportError(f"Not connected to {self.options.url}")
        await self._socket.send(payload)

    def end(self) -> None:
        self._ended = True
        self._cancel_reconnection_attempt()
        if self._socket is not None:
            self._socket.end()

    def detach(self) -> None:
        self._ended = True
        self._cancel_reconnection_attempt()
        self._callbacks = SocketCallbacks()
        if self._socket is not None:
            self._socket.detach()

    def notify_ping(self, success: bool = True) -> None:
        if self._socket is not None:
            self._socket.notify_ping(success)

    def _random_reconnection_delay(self) -> float:
        low, high = self.reconnect_delay
        return random.uniform(low, high)

    def _cancel_reconnection_attempt(self) -> None:
        if self._reconnection_handle is not None:
            self._reconnection_handle.cancel()
            self._reconnection_handle = None

    def _schedule_new_reconnection_attempt(self) -> None:
        self._cancel_reconnection_attempt()
        if self._ended:
            return
        delay = self._random_reconnection_delay()
        logger.debug(f"Reconnecting to {self.options.url} in {delay:.1f}s")
        self._reconnection_handle = asyncio.get_running_loop().call_later(
            delay, self._start_new_connection_attempt
        )

    def _start_new_connection_attempt(self) -> None:
        self._reconnection_handle = None
        if self._ended:
            return

        if self._socket is not None:
            self._socket.detach()

        self._socket = TCPSocket(
            self.address,
            self.options,
            SocketCallbacks(
                on_connecting=self._on_connecting,
                on_connected=self._on_connected,
                on_connection_error=self._on_connection_error,
                on_connection_timeout=self._on_connection_timeout,
                on_disconnected=self._on_disconnected,
                on_message=self._on_message,
            ),
        )
        self._socket.start()

    def _on_connecting(self) -> None:
        if not self._connecting_reported:
            self._connecting_reported = True
            if self._callbacks.on_connecting:
                self._callbacks.on_connecting()

    def _on_connected(self) -> None:
        if self._callbacks.on_connected:
            self._callbacks.on_connected()

    def _on_connection_error(self, error: Exception, _will_reconnect: bool) -> None:
        if self._callbacks.on_connection_error:
            self._callbacks.on_connection_error(error, True)
        self._schedule_new_reconnection_attempt()

    def _on_connection_timeout(self, _will_reconnect: bool) -> None:
        if self._callbacks.on_connection_timeout:
            self._callbacks.on_connection_timeout(True)
        self._schedule_new_reconnection_attempt()

    def _on_disconnected(self, reason: str, _will_reconnect: bool) -> None:
        will_reconnect = reason != CLIENT_DISCONNECT
        if self._callbacks.on_disconnected:
            self._callbacks.on_disconnected(reason, will_reconnect)
        if will_reconnect:
            self._schedule_new_reconnection_attempt()

    def _on_message(self, message: dict[str, Any]) -> None:
        if self._callbacks.on_message:
            self._callbacks.on_message(message)


def create_tcp_socket(
    address: tuple[str, int],
    options: SocketOptions,
    callbacks: SocketCallbacks,
) -> ReconnectingTCPSocket:
    """Create a self-reconnecting TCP socket and start connecting."""
    socket = ReconnectingTCPSocket(address, options, callbacks)
    socket.start()
    return socket
