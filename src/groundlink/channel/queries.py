"""Convenience queries built on top of the message hub."""

from typing import TYPE_CHECKING, Any

from groundlink.errors import ProtocolError

if TYPE_CHECKING:
    from groundlink.channel.hub import MessageHub


class QueryHandler:
    """Typed wrappers for the simple request/response queries of the server.

    Available on every hub as ``hub.query``.
    """

    def __init__(self, hub: "MessageHub"):
        self._hub = hub

    async def get_server_version(self) -> str:
        """Version number of the server (``SYS-VER``).

        Raises:
            ProtocolError: If the response carries no version.
        """
        response = await self._hub.send_message("SYS-VER")
        version = response.body.get("version")
        if not isinstance(version, str):
            raise ProtocolError("Server did not report its version", step="SYS-VER")
        return version

    async def is_extension_loaded(self, name: str) -> bool:
        """Whether the server extension with the given name is loaded (``EXT-INF``)."""
        response = await self._hub.send_message({"type": "EXT-INF", "ids": [name]})
        result = response.body.get("result")
        info = result.get(name) if isinstance(result, dict) else None
        return bool(info.get("loaded")) if isinstance(info, dict) else False

    async def get_license_information(self) -> dict[str, Any] | None:
        """License currently active on the server (``LCN-INF``), if any."""
        response = await self._hub.send_message("LCN-INF")
        license_info = response.body.get("license")
        return license_info if isinstance(license_info, dict) else None

    async def get_server_time(self) -> float:
        """Current server clock in milliseconds since the epoch (``SYS-TIME``).

        Raises:
            ProtocolError: If the response carries no numeric timestamp.
        """
        response = await self._hub.send_message("SYS-TIME")
        timestamp = response.body.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int | float):
            raise ProtocolError("Server did not report its time", step="SYS-TIME")
        return float(timestamp)
