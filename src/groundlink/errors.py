"""Exception hierarchy for groundlink.

Each failure mode of the connection lifecycle has its own exception type so
callers can decide whether to retry, surface or ignore it.
"""

from __future__ import annotations


class GroundlinkError(Exception):
    """Base exception for all groundlink errors."""

    pass


class ConfigurationError(GroundlinkError, ValueError):
    """Raised for unsupported protocols or unparsable server addresses.

    Configuration errors are fatal for the current connection attempt and are
    never retried.
    """

    pass


class TransportError(GroundlinkError, ConnectionError):
    """Raised when the transport fails to connect, send or stay connected."""

    pass


class LivenessError(TransportError):
    """Raised when a heartbeat probe fails or times out."""

    pass


class ProtocolError(GroundlinkError):
    """Raised when the server sends a malformed or unexpected response.

    Args:
        message: Human-readable description of the problem.
        step: Name of the bootstrap step or message type that failed, if known.
    """

    def __init__(self, message: str, step: str | None = None):
        self.step = step
        super().__init__(message)


class ServerRejectedError(ProtocolError):
    """Raised when the server answers a request with an ACK-NAK message."""

    def __init__(self, reason: str | None = None, step: str | None = None):
        self.reason = reason
        super().__init__(
            f"Request rejected by server: {reason}" if reason else "Request rejected by server",
            step=step,
        )


class MessageTimeout(GroundlinkError, TimeoutError):
    """Raised when the server fails to respond to a message in time."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Response to message {message_id} timed out")


class RequestCancelledError(GroundlinkError):
    """Raised when a pending request is cancelled through its cancel token."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Request {message_id} was cancelled")


class NoEmitterError(TransportError):
    """Raised when a message is sent while no transport is attached."""

    def __init__(self, message: str | None = None):
        super().__init__(message or "No transport is attached to the message hub")


class LocalProcessError(GroundlinkError):
    """Raised when the local server fails to start or exits unexpectedly.

    Args:
        message: Human-readable description of the problem.
        never_started: True if the process never got to a running state,
            False if it died while it was believed to be running.
    """

    def __init__(self, message: str, never_started: bool = False):
        self.never_started = never_started
        super().__init__(message)
