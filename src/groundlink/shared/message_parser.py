"""Wire envelope of server messages and helpers to build and parse it.

Every message exchanged with the server is a JSON object of the form::

    {"$fw.version": "1.0", "id": "...", "body": {"type": "SYS-VER", ...}}

Responses additionally carry a ``correlationId`` pointing to the ``id`` of the
request they answer. Messages without a correlation ID are notifications.
"""

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

PROTOCOL_VERSION = "1.0"


class Message(BaseModel):
    """A single message on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(default=PROTOCOL_VERSION, alias="$fw.version")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    body: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = Field(default=None, alias="correlationId")

    @property
    def type(self) -> str | None:
        """Message type stored in the body, e.g. ``"SYS-VER"``."""
        value = self.body.get("type")
        return value if isinstance(value, str) else None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def create_message(body: str | dict[str, Any]) -> Message:
    """Create an outbound message from a bare type string or a full body."""
    if isinstance(body, str):
        body = {"type": body}
    return Message(body=dict(body))


class MessageParser:
    """Parses raw payloads received from a transport into `Message` objects."""

    def parse(self, payload: dict[str, Any]) -> Message | None:
        """Parse a raw payload.

        Returns:
            The parsed message, or None if the payload is not a valid message.
        """
        try:
            return Message.model_validate(payload)
        except ValidationError:
            return None

    def is_valid_response(self, message: Message) -> bool:
        """Check if the message answers one of our requests."""
        return message.correlation_id is not None

    def is_valid_notification(self, message: Message) -> bool:
        """Check if the message is a server-initiated notification."""
        return message.correlation_id is None and message.type is not None

    def is_rejection(self, message: Message) -> bool:
        """Check if the message is a negative acknowledgement."""
        return message.type == "ACK-NAK"
