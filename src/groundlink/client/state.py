from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from groundlink.timesync import ClockSkewSample


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass
class ServerState:
    """Everything the client knows about the server it is connected to."""

    # Connection state
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    target_url: str | None = None
    target_active: bool = False

    # Server-derived state
    version: str | None = None
    connections: dict[str, Any] = field(default_factory=dict)
    clocks: dict[str, Any] = field(default_factory=dict)
    docks: dict[str, Any] = field(default_factory=dict)
    beacons: dict[str, Any] = field(default_factory=dict)
    beacon_properties: dict[str, Any] = field(default_factory=dict)
    features: dict[str, Any] = field(default_factory=dict)
    license: dict[str, Any] | None = None
    show_sync: dict[str, Any] = field(default_factory=dict)
    weather: dict[str, Any] = field(default_factory=dict)
    clock_skew: ClockSkewSample | None = None
    time_sync_dialog_open: bool = False

    def clear_server_derived(self) -> None:
        """Forget everything learned from the server; keep the connection state."""
        self.version = None
        self.connections.clear()
        self.clocks.clear()
        self.docks.clear()
        self.beacons.clear()
        self.beacon_properties.clear()
        self.features.clear()
        self.license = None
        self.show_sync.clear()
        self.weather.clear()
        self.clock_skew = None
        self.time_sync_dialog_open = False

    @property
    def has_server_derived_state(self) -> bool:
        return any(
            (
                self.version is not None,
                self.connections,
                self.clocks,
                self.docks,
                self.beacons,
                self.beacon_properties,
                self.features,
                self.license is not None,
                self.show_sync,
                self.weather,
                self.clock_skew is not None,
                self.time_sync_dialog_open,
            )
        )
