"""Request/response transport over a raw TCP socket."""

import logging
from typing import Any, Awaitable, Callable

from groundlink.config import ConnectionTarget, parse_address
from groundlink.errors import TransportError
from groundlink.transport.base import Transport, TransportEventKind
from groundlink.transport.tcp.heartbeat import HeartbeatMonitor
from groundlink.transport.tcp.socket import (
    ReconnectingTCPSocket,
    SocketCallbacks,
    SocketOptions,
    create_tcp_socket,
)

logger = logging.getLogger(__name__)

SocketFactory = Callable[
    [tuple[str, int], SocketOptions, SocketCallbacks], ReconnectingTCPSocket
]


class TCPTransport(Transport):
    """Transport for servers reachable over a plain TCP socket.

    TCP sockets have no liveness detection of their own, so this transport
    owns a `HeartbeatMonitor` that pings the server through the message hub
    and reports the outcome to the socket via `notify_ping()`. The socket
    decides what a failed ping means for the connection.
    """

    def __init__(
        self,
        target: ConnectionTarget,
        *,
        ping: Callable[[], Awaitable[Any]],
        connect_timeout: float = 5.0,
        ping_interval: float = 5.0,
        ping_timeout: float = 5.0,
        socket_factory: SocketFactory = create_tcp_socket,
    ) -> None:
        super().__init__(target.url)
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._ping = ping
        self._socket_factory = socket_factory
        self._socket: ReconnectingTCPSocket | None = None
        self._heartbeat: HeartbeatMonitor | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._socket is not None and self._socket.is_writable

    @property
    def heartbeat(self) -> HeartbeatMonitor | None:
        return self._heartbeat

    async def connect(self) -> None:
        """Open the socket and start the heartbeat.

        Raises:
            ConfigurationError: If the host or port cannot be parsed from the URL.
            TransportError: If the transport was already closed.
        """
        if self._closed:
            raise TransportError("Cannot connect: transport is closed")
        if self._socket is not None:
            return

        address = parse_address(self.url)
        logger.debug(f"Connecting to TCP server at {address[0]}:{address[1]}")

        self._socket = self._socket_factory(
            address,
            SocketOptions(url=self.url, connect_timeout=self.connect_timeout),
            SocketCallbacks(
                on_connecting=self._on_connecting,
                on_connected=self._on_connected,
                on_connection_error=self._on_connection_error,
                on_connection_timeout=self._on_connection_timeout,
                on_disconnected=self._on_disconnected,
                on_message=self._on_message,
            ),
        )
        self._heartbeat = HeartbeatMonitor(
            self._ping,
            self._socket.notify_ping,
            interval=self.ping_interval,
            timeout=self.ping_timeout,
        )
        self._heartbeat.start()

    async def send(self, payload: dict[str, Any]) -> None:
        if self._socket is None:
            raise TransportError(f"Not connected to {self.url}")
        await self._socket.send(payload)

    async def close(self) -> None:
        """Stop the heartbeat, then close the socket.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True

        if self._heartbeat is not None:
            await self._heartbeat.stop()
            self._heartbeat = None

        if self._socket is not None:
            self._socket.end()
            self._socket.detach()
            self._socket = None

        self._finish_events()
        logger.debug(f"Closed TCP transport to {self.url}")

    # ================================
    # Socket callbacks
    # ================================

    def _on_connecting(self) -> None:
        self._emit(TransportEventKind.CONNECTING)

    def _on_connected(self) -> None:
        self._emit(TransportEventKind.CONNECTED)

    def _on_connection_error(self, error: Exception, will_reconnect: bool) -> None:
        self._emit(
            TransportEventKind.ERROR,
            reason=str(error) or type(error).__name__,
            will_reconnect=will_reconnect,
        )

    def _on_connection_timeout(self, will_reconnect: bool) -> None:
        self._emit(
            TransportEventKind.TIMEOUT,
            reason="connect timeout",
            will_reconnect=will_reconnect,
        )

    def _on_disconnected(self, reason: str, will_reconnect: bool) -> None:
        self._emit(
            TransportEventKind.DISCONNECTED,
            reason=reason,
            will_reconnect=will_reconnect,
        )

    def _on_message(self, message: dict[str, Any]) -> None:
        self._emit(TransportEventKind.MESSAGE, payload=message)
