import asyncio
import time
import uuid
from typing import Any, Callable

import pytest

from groundlink.channel.hub import MessageHub
from groundlink.client.dispatcher import Dispatcher
from groundlink.config import ServerSettings
from groundlink.errors import ConfigurationError, TransportError
from groundlink.transport.base import Transport, TransportEventKind

Reply = dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any] | None] | None


def make_response(request: dict[str, Any], body: dict[str, Any]) -> dict[str, Any]:
    """Build a server response to the given request."""
    return {
        "$fw.version": "1.0",
        "id": str(uuid.uuid4()),
        "correlationId": request["id"],
        "body": {"type": request["body"]["type"], **body},
    }


def make_notification(body: dict[str, Any]) -> dict[str, Any]:
    return {"$fw.version": "1.0", "id": str(uuid.uuid4()), "body": body}


class MockTransport(Transport):
    """Mock transport answering requests from a table of canned replies."""

    def __init__(self, url: str = "ws://localhost:5000"):
        super().__init__(url)
        self.sent_messages: list[dict[str, Any]] = []
        self.replies: dict[str, Reply] = {}
        self.connect_calls = 0
        self.closed = False
        self.ping = None

    @property
    def is_open(self) -> bool:
        return self.connect_calls > 0 and not self.closed

    async def connect(self) -> None:
        self.connect_calls += 1

    async def send(self, payload: dict[str, Any]) -> None:
        if self.closed:
            raise TransportError("Transport closed")
        self.sent_messages.append(payload)

        reply = self.replies.get(payload["body"]["type"])
        if callable(reply):
            reply = reply(payload["body"])
        if reply is not None:
            self._emit(TransportEventKind.MESSAGE, payload=make_response(payload, reply))

    async def close(self) -> None:
        self.closed = True
        self._finish_events()

    # Test helpers
    def reply_to(self, message_type: str, reply: Reply) -> None:
        self.replies[message_type] = reply

    def emit(self, kind: TransportEventKind, **kwargs: Any) -> None:
        """Simulate something happening on the network."""
        self._emit(kind, **kwargs)

    def sent_types(self) -> list[str]:
        return [message["body"]["type"] for message in self.sent_messages]


def install_server_replies(transport: MockTransport, **overrides: Reply) -> None:
    """Answer every bootstrap request like a healthy server with one of each object."""

    def object_list(body: dict[str, Any]) -> dict[str, Any]:
        kind = body["filter"][0]
        return {"ids": [f"{kind}-1"]}

    def extension_info(body: dict[str, Any]) -> dict[str, Any]:
        name = body["ids"][0]
        return {"result": {name: {"loaded": name in ("show", "weather")}}}

    def server_time(body: dict[str, Any]) -> dict[str, Any]:
        return {"timestamp": time.time() * 1000}

    replies: dict[str, Reply] = {
        "SYS-VER": {"version": "2.17.0"},
        "CONN-LIST": {"ids": ["gps"]},
        "CONN-INF": {"status": {"gps": {"status": "connected"}}},
        "CLK-LIST": {"ids": ["system"]},
        "CLK-INF": {"status": {"system": {"running": True}}},
        "OBJ-LIST": object_list,
        "DOCK-INF": {"status": {"dock-1": {"position": [47.5, 19.0]}}},
        "BCN-INF": {"status": {"beacon-1": {"active": True}}},
        "BCN-PROPS": {"result": {"beacon-1": {"name": "Home"}}},
        "EXT-INF": extension_info,
        "LCN-INF": {"license": {"id": "demo"}},
        "SYS-TIME": server_time,
        "SYS-PING": {},
    }
    replies.update(overrides)
    for message_type, reply in replies.items():
        transport.reply_to(message_type, reply)


class TransportRecorder:
    """Transport factory that hands out mock transports and remembers them."""

    def __init__(self):
        self.created: list[MockTransport] = []

    def __call__(self, target, settings, *, ping) -> MockTransport:
        if target.protocol not in ("ws", "tcp"):
            raise ConfigurationError(f"Unsupported server protocol: {target.protocol!r}")
        transport = MockTransport(target.url)
        transport.ping = ping
        install_server_replies(transport)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> MockTransport:
        return self.created[-1]


async def pump_messages(transport: MockTransport, hub: MessageHub) -> None:
    async for event in transport.events():
        if event.kind == TransportEventKind.MESSAGE:
            await hub.process_incoming_message(event.payload)


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
async def hub(mock_transport):
    """Message hub attached to the mock transport, with replies routed back."""
    message_hub = MessageHub(timeout=0.2)
    message_hub.attach(mock_transport)
    task = asyncio.create_task(pump_messages(mock_transport, message_hub))
    yield message_hub
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@pytest.fixture
def dispatcher():
    return Dispatcher()


@pytest.fixture
def settings():
    return ServerSettings(host="localhost", port=5000)


async def yield_to_event_loop(seconds: float = 0.01) -> None:
    """Let the event loop process pending tasks and callbacks.

    Args:
        seconds: Small delay to ensure async operations settle.
    """
    await asyncio.sleep(seconds)


@pytest.fixture
def yield_loop():
    """Helper to yield to event loop in tests."""
    return yield_to_event_loop


@pytest.fixture
def server_replies():
    """Installs the replies of a healthy server on a mock transport."""
    return install_server_replies


@pytest.fixture
def notification():
    """Builds a server-initiated notification payload."""
    return make_notification


@pytest.fixture
def transports():
    return TransportRecorder()
