from typing import Any, Awaitable, Callable

from groundlink.config import ConnectionTarget, Protocol, ServerSettings
from groundlink.errors import ConfigurationError
from groundlink.transport.base import Transport
from groundlink.transport.tcp.transport import TCPTransport
from groundlink.transport.websocket import WebSocketTransport

TransportFactory = Callable[..., Transport]


def create_transport(
    target: ConnectionTarget,
    settings: ServerSettings,
    *,
    ping: Callable[[], Awaitable[Any]],
) -> Transport:
    """Create the transport matching the protocol of the target.

    Args:
        target: Server to connect to.
        settings: Timeouts and intervals to configure the transport with.
        ping: Liveness probe for transports that need a heartbeat.

    Raises:
        ConfigurationError: If the protocol is not supported.
    """
    if target.protocol == Protocol.WS.value:
        return WebSocketTransport(
            target, connect_timeout=settings.connect_timeout_ms / 1000
        )

    if target.protocol == Protocol.TCP.value:
        return TCPTransport(
            target,
            ping=ping,
            connect_timeout=settings.connect_timeout_ms / 1000,
            ping_interval=settings.ping_interval_ms / 1000,
            ping_timeout=settings.ping_timeout_ms / 1000,
        )

    raise ConfigurationError(f"Unsupported server protocol: {target.protocol!r}")
