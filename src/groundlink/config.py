"""Connection settings and connection targets.

Settings are read-only from the point of view of the connection manager; a
`ConnectionTarget` is derived from them for every connection attempt.
"""

from enum import Enum
from pathlib import Path
from typing import Self
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from groundlink.errors import ConfigurationError


class Protocol(str, Enum):
    """Transport protocols understood by the connection manager."""

    WS = "ws"
    TCP = "tcp"


class ConnectionTarget(BaseModel):
    """Immutable description of the server to connect to."""

    model_config = ConfigDict(frozen=True)

    protocol: str
    host: str
    port: int
    is_secure: bool = False

    @property
    def url(self) -> str:
        """Unique URL identifying this target."""
        if self.protocol == Protocol.WS.value:
            scheme = "wss" if self.is_secure else "ws"
        else:
            scheme = self.protocol
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def address(self) -> tuple[str, int]:
        """Host and port parsed back from the URL.

        Raises:
            ConfigurationError: If the URL has no usable host or port.
        """
        return parse_address(self.url)


def parse_address(url: str) -> tuple[str, int]:
    """Extract the host and port from a server URL.

    Args:
        url: URL such as ``tcp://localhost:5001``

    Returns:
        Tuple of (host, port)

    Raises:
        ConfigurationError: If the host or the port cannot be parsed.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"Invalid server address '{url}': {e}") from e

    if not parts.hostname:
        raise ConfigurationError(f"Invalid server address '{url}': missing host")
    if port is None:
        raise ConfigurationError(f"Invalid server address '{url}': missing port")

    return parts.hostname, port


class LocalServerSettings(BaseModel):
    """How to launch a server process on this machine, if at all."""

    enabled: bool = False
    executable: str = "skybrushd"
    search_paths: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    launch_timeout: float = 5.0
    """
    Seconds to wait for the executable lookup and the spawn to finish.
    """


class ServerSettings(BaseModel):
    """User-facing server connection settings."""

    protocol: str = Protocol.WS.value
    host: str | None = None
    port: int = 5000
    is_secure: bool = False

    connect_timeout_ms: int = Field(default=5000, ge=0)
    ping_interval_ms: int = Field(default=5000, gt=0)
    ping_timeout_ms: int = Field(default=5000, gt=0)
    request_timeout_ms: int = Field(default=5000, gt=0)
    clock_skew_warning_threshold_ms: float = Field(default=1000, ge=0)

    local_server: LocalServerSettings = Field(default_factory=LocalServerSettings)

    def target(self) -> ConnectionTarget | None:
        """Connection target derived from these settings, or None without a host."""
        if not self.host:
            return None
        return ConnectionTarget(
            protocol=self.protocol,
            host=self.host,
            port=self.port,
            is_secure=self.is_secure,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> Self:
        """Load settings from a JSON file.

        Raises:
            ConfigurationError: If the file cannot be read or fails validation.
        """
        try:
            return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"Cannot read settings from {path}: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings in {path}: {e}") from e
