from dataclasses import dataclass
from enum import Enum

from groundlink.transport.websocket import (
    CLIENT_DISCONNECT,
    PING_TIMEOUT,
    SERVER_DISCONNECT,
    TRANSPORT_CLOSE,
)

CONNECT_TIMEOUT = "connect timeout"

WARNING_REASONS = frozenset({PING_TIMEOUT, TRANSPORT_CLOSE, CONNECT_TIMEOUT})


class Severity(str, Enum):
    SILENT = "silent"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Classification:
    """What to tell the user about a connection event."""

    severity: Severity
    message: str | None
    will_reconnect: bool


class DisconnectionClassifier:
    """Decides how loudly a disconnection or connection failure is reported."""

    def classify_disconnection(
        self, reason: str | None, will_reconnect: bool
    ) -> Classification:
        """Classify a `disconnected` transport event.

        - server-initiated clean close: silent, the server already sent an
          explicit close message that was shown to the user
        - client-initiated close: informational
        - lost connection (ping timeout, transport close): warning
        - anything else: error
        """
        if reason == SERVER_DISCONNECT:
            return Classification(Severity.SILENT, None, will_reconnect)
        if reason == CLIENT_DISCONNECT:
            return Classification(
                Severity.INFO, "Disconnected from server", will_reconnect
            )
        if reason in WARNING_REASONS:
            return Classification(
                Severity.WARNING, "Connection to server lost", will_reconnect
            )
        return Classification(
            Severity.ERROR,
            f"Disconnected from server: {reason or 'unknown reason'}",
            will_reconnect,
        )

    def classify_connection_failure(
        self, reason: str | None, will_reconnect: bool, *, timeout: bool = False
    ) -> Classification:
        """Classify an `error` or `timeout` event of a connection attempt.

        Failures that the transport will retry on its own are silent.
        """
        if will_reconnect:
            return Classification(Severity.SILENT, None, True)
        if timeout or reason == CONNECT_TIMEOUT:
            return Classification(
                Severity.WARNING, "Timeout while connecting to server", False
            )
        return Classification(
            Severity.ERROR,
            f"Failed to connect to server: {reason or 'unknown error'}",
            False,
        )

    @staticmethod
    def should_mark_target_inactive(
        event_url: str | None, current_url: str | None, will_reconnect: bool
    ) -> bool:
        """Whether a final disconnection may mark the configured target inactive.

        Only allowed when the event belongs to the currently configured target;
        a late event from a previous target must not touch the new one.
        """
        if will_reconnect or event_url is None or current_url is None:
            return False
        return event_url == current_url
