"""World model updates and user-visible notifications.

The dispatcher is the single place where the connection manager and the
bootstrap sequence record what they learned about the server and what the
user should be told. Host applications subscribe to it to render state.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from groundlink.client.state import ConnectionState, ServerState
from groundlink.shared.subscriptions import Subscription, subscribe
from groundlink.timesync import ClockSkewSample

logger = logging.getLogger(__name__)

NOTIFICATION = "notification"
STATE_CHANGE = "state_change"


class MessageSemantics(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class NotificationAction:
    label: str
    callback: Callable[[], None]


@dataclass(frozen=True)
class Notification:
    message: str
    semantics: MessageSemantics = MessageSemantics.INFO
    persistent: bool = False
    action: NotificationAction | None = None


class Dispatcher:
    """Owns the world model and the stream of user notifications."""

    def __init__(self) -> None:
        self.state = ServerState()
        self.notifications: list[Notification] = []
        self._listeners: dict[str, list[Callable[..., Any]]] = {}
        self._action_handlers: dict[str, list[Callable[..., Any]]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # ================================
    # Notifications
    # ================================

    def notify(
        self,
        message: str,
        semantics: MessageSemantics = MessageSemantics.INFO,
        *,
        persistent: bool = False,
        action: NotificationAction | None = None,
    ) -> Notification:
        notification = Notification(message, semantics, persistent, action)
        self.notifications.append(notification)
        self._call_listeners(NOTIFICATION, notification)
        return notification

    def show_error(self, message: str) -> Notification:
        return self.notify(message, MessageSemantics.ERROR)

    def show_warning(self, message: str) -> Notification:
        return self.notify(message, MessageSemantics.WARNING)

    def on_notification(self, callback: Callable[[Notification], None]) -> Subscription:
        """Register a callback for every user-visible notification."""
        return subscribe(self._listeners, NOTIFICATION, callback)

    # ================================
    # Connection state
    # ================================

    @property
    def connection_state(self) -> ConnectionState:
        return self.state.connection_state

    def set_connection_state(self, new_state: ConnectionState) -> None:
        old_state = self.state.connection_state
        if old_state == new_state:
            return
        self.state.connection_state = new_state
        logger.debug(f"Connection state: {old_state.value} -> {new_state.value}")
        self._call_listeners(STATE_CHANGE, old_state, new_state)

    def on_state_change(
        self, callback: Callable[[ConnectionState, ConnectionState], None]
    ) -> Subscription:
        """Register a callback invoked with (old_state, new_state)."""
        return subscribe(self._listeners, STATE_CHANGE, callback)

    def mark_target_active(self, url: str) -> None:
        self.state.target_url = url
        self.state.target_active = True

    def mark_target_inactive(self) -> None:
        self.state.target_active = False

    # ================================
    # World model
    # ================================

    def set_server_version(self, version: str) -> None:
        self.state.version = version

    def update_connections(self, status: dict[str, Any]) -> None:
        self.state.connections.update(status)

    def update_clocks(self, status: dict[str, Any]) -> None:
        self.state.clocks.update(status)

    def update_docks(self, status: dict[str, Any]) -> None:
        self.state.docks.update(status)

    def update_beacons(self, status: dict[str, Any]) -> None:
        self.state.beacons.update(status)

    def update_beacon_properties(self, properties: dict[str, Any]) -> None:
        self.state.beacon_properties.update(properties)

    def add_server_feature(self, name: str, data: Any = True) -> None:
        self.state.features[name] = data

    def set_license(self, license_info: dict[str, Any] | None) -> None:
        self.state.license = license_info

    def set_clock_skew(self, sample: ClockSkewSample | None) -> None:
        self.state.clock_skew = sample

    def open_time_sync_dialog(self) -> None:
        self.state.time_sync_dialog_open = True

    def close_time_sync_dialog(self) -> None:
        self.state.time_sync_dialog_open = False

    def clear_server_state(self) -> None:
        """Forget everything that was learned from the server."""
        self.state.clear_server_derived()

    # ================================
    # Actions
    # ================================

    def on_action(self, name: str, handler: Callable[..., Any]) -> Subscription:
        """Register a handler for actions dispatched with the given name."""
        return subscribe(self._action_handlers, name, handler)

    def dispatch(self, name: str, payload: Any = None) -> None:
        """Fire-and-forget an action to its registered handlers.

        Coroutine handlers are scheduled as background tasks; their failures
        are logged.
        """
        handlers = list(self._action_handlers.get(name, ()))
        if not handlers:
            logger.debug(f"No handler for action '{name}'")

        for handler in handlers:
            try:
                result = handler(payload)
            except Exception as e:
                logger.error(f"Handler for action '{name}' failed: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background_tasks.add(task)
                task.add_done_callback(
                    lambda t, name=name: self._on_action_done(name, t)
                )

    def _on_action_done(self, name: str, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Handler for action '{name}' failed: {task.exception()}")

    # ================================
    # Helpers
    # ================================

    def _call_listeners(self, key: str, *args: Any) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Listener for '{key}' failed: {e}")
