"""Connection state machine for the link to the flight-control server.

The state machine owns the single transport session, reacts to the events of
the transport, triggers the bootstrap after every successful connection and
decides what the user is told when the connection breaks.

Sessions are bound to the transport instance that created them: events of a
transport that has since been replaced are dropped before they reach the
state machine, so a late disconnection of a previous target can never tear
down or mark inactive the current one.
"""

import asyncio
import logging
from typing import Any

from groundlink.channel.hub import MessageHub
from groundlink.client.bootstrap import BootstrapProgress, BootstrapSequencer
from groundlink.client.classifier import (
    Classification,
    DisconnectionClassifier,
    Severity,
)
from groundlink.client.dispatcher import Dispatcher, MessageSemantics
from groundlink.client.local_server import (
    Disposer,
    LocalProcessSupervisor,
    LocalServerCallbacks,
)
from groundlink.client.state import ConnectionState
from groundlink.config import ConnectionTarget, ServerSettings
from groundlink.errors import ConfigurationError, LocalProcessError
from groundlink.shared.message_parser import Message
from groundlink.shared.subscriptions import SubscriptionGroup
from groundlink.timesync import ClockSkewEstimator
from groundlink.transport.base import Transport, TransportEvent, TransportEventKind
from groundlink.transport.factory import TransportFactory, create_transport
from groundlink.transport.websocket import CLIENT_DISCONNECT

logger = logging.getLogger(__name__)


class ConnectionStateMachine:
    """Top-level orchestrator of the server connection.

    Args:
        hub: Message hub that the active transport is attached to.
        dispatcher: Receives state changes, world model updates and notices.
        settings: Server settings; read-only.
        transport_factory: Creates the transport for a connection target.
        local_server: Supervisor for a server launched on this machine.
            Created from the settings if omitted and a local server is
            enabled.
        bootstrap: Post-connect handshake. Created if omitted.
        classifier: Decides how disconnections are reported.
    """

    def __init__(
        self,
        hub: MessageHub,
        dispatcher: Dispatcher,
        settings: ServerSettings,
        *,
        transport_factory: TransportFactory = create_transport,
        local_server: LocalProcessSupervisor | None = None,
        bootstrap: BootstrapSequencer | None = None,
        classifier: DisconnectionClassifier | None = None,
    ):
        self.hub = hub
        self.dispatcher = dispatcher
        self.settings = settings
        self.classifier = classifier or DisconnectionClassifier()
        self.bootstrap = bootstrap or BootstrapSequencer(
            hub,
            dispatcher,
            estimator=ClockSkewEstimator(),
            clock_skew_warning_threshold_ms=settings.clock_skew_warning_threshold_ms,
        )

        if local_server is None and settings.local_server.enabled:
            local_server = LocalProcessSupervisor(
                settings.local_server.executable,
                search_paths=settings.local_server.search_paths,
            )
        self.local_server = local_server

        self._transport_factory = transport_factory
        self._target: ConnectionTarget | None = None
        self._transport: Transport | None = None
        self._event_task: asyncio.Task[None] | None = None
        self._bootstrap_task: asyncio.Task[BootstrapProgress] | None = None
        self._session_subscriptions = SubscriptionGroup()
        self._local_server_disposer: Disposer | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: ServerSettings, **kwargs: Any) -> "ConnectionStateMachine":
        """Create a state machine with its own hub and dispatcher."""
        hub = MessageHub(timeout=settings.request_timeout_ms / 1000)
        return cls(hub, Dispatcher(), settings, **kwargs)

    # ================================
    # Properties
    # ================================

    @property
    def state(self) -> ConnectionState:
        return self.dispatcher.connection_state

    @property
    def target(self) -> ConnectionTarget | None:
        return self._target

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def bootstrap_task(self) -> asyncio.Task[BootstrapProgress] | None:
        return self._bootstrap_task

    # ================================
    # Lifecycle
    # ================================

    async def open(self) -> None:
        """Connect to the server configured in the settings."""
        target = self.settings.target()
        if target is None:
            logger.warning("No server configured, not connecting")
            return
        await self.start(target)

    async def close(self) -> None:
        """Disconnect from the server and stop the local server."""
        await self.stop()

    async def start(self, target: ConnectionTarget) -> None:
        """Start connecting to the given target.

        Starting the target that is already active does nothing. Starting a
        different target tears down the current session first.

        Raises:
            ConfigurationError: If the protocol or the address of the target
                is unusable. Nothing is retried.
            LocalProcessError: If the local server cannot be launched.
        """
        async with self._lock:
            if self._transport is not None and target == self._target:
                logger.debug(f"Already connecting or connected to {target.url}")
                return

            if self._transport is not None:
                logger.info(f"Switching server from {self._target.url} to {target.url}")
                await self._release_session()
                self.dispatcher.clear_server_state()
                self.dispatcher.set_connection_state(ConnectionState.DISCONNECTED)

            await self._start_session(target)

    async def stop(self) -> None:
        """Force-close the transport and the local server. Safe to call twice."""
        async with self._lock:
            had_session = self._transport is not None
            if not had_session and self._local_server_disposer is None:
                self.dispatcher.set_connection_state(ConnectionState.DISCONNECTED)
                return

            self.dispatcher.set_connection_state(ConnectionState.DISCONNECTING)
            await self._release_session()
            await self._stop_local_server()

            self.dispatcher.mark_target_inactive()
            self.dispatcher.clear_server_state()
            self.dispatcher.set_connection_state(ConnectionState.DISCONNECTED)

            if had_session:
                self._surface(
                    self.classifier.classify_disconnection(CLIENT_DISCONNECT, False)
                )

    # ================================
    # Transport events
    # ================================

    def on_transport_connected(self) -> asyncio.Task[BootstrapProgress] | None:
        """Mark the connection as established and start the bootstrap.

        Returns:
            The bootstrap task of this transition, or None if the state
            machine was not waiting for a connection.
        """
        if self.state != ConnectionState.CONNECTING:
            logger.debug(f"Ignoring connection event in state {self.state.value}")
            return None

        transport = self._transport
        self.dispatcher.set_connection_state(ConnectionState.CONNECTED)
        self.dispatcher.notify("Connected to server", MessageSemantics.SUCCESS)
        logger.info(f"Connected to {transport.url if transport else 'server'}")

        def is_current() -> bool:
            return (
                self._transport is transport
                and self.state == ConnectionState.CONNECTED
            )

        self._bootstrap_task = asyncio.create_task(
            self.bootstrap.run(is_current), name="bootstrap"
        )
        return self._bootstrap_task

    def on_transport_reconnecting(self) -> None:
        """The transport lost the connection and is retrying on its own."""
        if self.state == ConnectionState.CONNECTED:
            self.dispatcher.set_connection_state(ConnectionState.CONNECTING)

    async def on_transport_error(
        self, reason: str | None, will_reconnect: bool, url: str | None = None
    ) -> None:
        await self._on_connection_failure(reason, will_reconnect, url, timeout=False)

    async def on_transport_timeout(
        self, reason: str | None, will_reconnect: bool, url: str | None = None
    ) -> None:
        await self._on_connection_failure(reason, will_reconnect, url, timeout=True)

    async def on_transport_disconnected(
        self, reason: str | None, will_reconnect: bool, url: str | None = None
    ) -> None:
        """Classify a disconnection and tear down the session if it is final."""
        if self._is_stale(url):
            return

        self._surface(self.classifier.classify_disconnection(reason, will_reconnect))

        if will_reconnect:
            logger.info(f"Disconnected from server ({reason}), reconnecting")
            self.dispatcher.set_connection_state(ConnectionState.CONNECTING)
            return

        logger.info(f"Disconnected from server ({reason})")
        await self._end_session(url, will_reconnect)

    async def _on_connection_failure(
        self, reason: str | None, will_reconnect: bool, url: str | None, *, timeout: bool
    ) -> None:
        if self._is_stale(url):
            return

        classification = self.classifier.classify_connection_failure(
            reason, will_reconnect, timeout=timeout
        )
        if will_reconnect:
            logger.debug(f"Connection attempt failed ({reason}), retrying")
            if self.state == ConnectionState.CONNECTED:
                self.dispatcher.set_connection_state(ConnectionState.CONNECTING)
            return

        logger.warning(f"Connection attempt failed: {reason}")
        self._surface(classification)
        await self._end_session(url, will_reconnect)

    # ================================
    # Sessions
    # ================================

    async def _start_session(self, target: ConnectionTarget) -> None:
        self._target = target
        self.dispatcher.mark_target_active(target.url)
        self.dispatcher.set_connection_state(ConnectionState.CONNECTING)

        try:
            transport = self._transport_factory(target, self.settings, ping=self._ping)
            await self._ensure_local_server(target)
        except (ConfigurationError, LocalProcessError) as e:
            await self._abort_start(e)
            raise

        self._transport = transport
        self.hub.attach(transport)
        self._session_subscriptions.add(
            self.hub.register_notification_handler("SYS-CLOSE", self._on_server_close)
        )
        self._session_subscriptions.add(
            self.hub.register_notification_handler("CONN-INF", self._on_connection_info)
        )
        self._session_subscriptions.add(
            self.hub.register_notification_handler("CLK-INF", self._on_clock_info)
        )
        self._event_task = asyncio.create_task(
            self._consume_events(transport), name=f"transport_events_{target.url}"
        )

        try:
            await transport.connect()
        except ConfigurationError as e:
            await self._release_session()
            await self._abort_start(e)
            raise

    async def _abort_start(self, error: Exception) -> None:
        logger.error(str(error))
        self.dispatcher.show_error(str(error))
        if isinstance(error, LocalProcessError):
            self._local_server_disposer = None
        self.dispatcher.mark_target_inactive()
        self.dispatcher.set_connection_state(ConnectionState.DISCONNECTED)

    async def _end_session(self, url: str | None, will_reconnect: bool) -> None:
        transport = self._transport
        async with self._lock:
            if self._transport is not transport:
                logger.debug("Session was replaced while ending it, leaving it alone")
                return

            if self.classifier.should_mark_target_inactive(
                url or self._current_url(), self._current_url(), will_reconnect
            ):
                self.dispatcher.mark_target_inactive()
            await self._release_session()
            self.dispatcher.clear_server_state()
            self.dispatcher.set_connection_state(ConnectionState.DISCONNECTED)

    async def _release_session(self) -> None:
        """Close the transport and drop everything bound to it.

        The heartbeat and the socket are gone when this returns.
        """
        transport, self._transport = self._transport, None
        event_task, self._event_task = self._event_task, None
        self._session_subscriptions.release()

        if transport is not None:
            self.hub.detach(transport)
            await transport.close()

        if event_task is not None and event_task is not asyncio.current_task():
            event_task.cancel()
            try:
                await event_task
            except asyncio.CancelledError:
                pass

    async def _consume_events(self, transport: Transport) -> None:
        async for event in transport.events():
            if transport is not self._transport:
                logger.debug(
                    f"Dropping {event.kind.value} event of stale transport {event.url}"
                )
                continue
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle {event.kind.value} event: {e}")

    async def _handle_event(self, event: TransportEvent) -> None:
        kind = event.kind
        if kind == TransportEventKind.CONNECTING:
            logger.debug(f"Connecting to {event.url}")
        elif kind == TransportEventKind.CONNECTED:
            self.on_transport_connected()
        elif kind == TransportEventKind.RECONNECTING:
            self.on_transport_reconnecting()
        elif kind == TransportEventKind.MESSAGE:
            if event.payload is not None:
                await self.hub.process_incoming_message(event.payload)
        elif kind == TransportEventKind.ERROR:
            await self.on_transport_error(event.reason, event.will_reconnect, event.url)
        elif kind == TransportEventKind.TIMEOUT:
            await self.on_transport_timeout(event.reason, event.will_reconnect, event.url)
        elif kind == TransportEventKind.DISCONNECTED:
            await self.on_transport_disconnected(
                event.reason, event.will_reconnect, event.url
            )

    async def _ping(self) -> None:
        await self.hub.send_message("SYS-PING")

    # ================================
    # Server notifications
    # ================================

    def _on_server_close(self, message: Message) -> None:
        reason = message.body.get("reason")
        if reason:
            self.dispatcher.show_warning(f"Server closed the connection: {reason}")
        else:
            self.dispatcher.show_warning("Server closed the connection")

    def _on_connection_info(self, message: Message) -> None:
        status = message.body.get("status")
        if isinstance(status, dict):
            self.dispatcher.update_connections(status)

    def _on_clock_info(self, message: Message) -> None:
        status = message.body.get("status")
        if isinstance(status, dict):
            self.dispatcher.update_clocks(status)

    # ================================
    # Local server
    # ================================

    async def _ensure_local_server(self, target: ConnectionTarget) -> None:
        if self.local_server is None or not self.settings.local_server.enabled:
            return
        if self.local_server.running:
            if self._local_server_disposer is not None:
                return
            logger.warning("Terminating local server left over from a failed session")
            await self.local_server.terminate()

        try:
            disposer = await self.local_server.ensure_running(
                args=self.settings.local_server.args,
                port=target.port,
                callbacks=LocalServerCallbacks(
                    error=self._on_local_server_failure,
                    exit=self._on_local_server_exit,
                ),
                timeout=self.settings.local_server.launch_timeout,
            )
        except RuntimeError as e:
            raise LocalProcessError(str(e)) from e
        self._local_server_disposer = disposer

    async def _stop_local_server(self) -> None:
        disposer, self._local_server_disposer = self._local_server_disposer, None
        if disposer is not None:
            await disposer()
        elif self.local_server is not None:
            await self.local_server.terminate()

    def _on_local_server_exit(
        self, code: int | None, signal_name: str | None, error: LocalProcessError
    ) -> None:
        self._on_local_server_failure(error)

    def _on_local_server_failure(self, error: LocalProcessError) -> None:
        self.dispatcher.show_error(str(error))
        self._spawn(self._force_disconnect())

    async def _force_disconnect(self) -> None:
        async with self._lock:
            await self._release_session()
            await self._stop_local_server()
            self.dispatcher.mark_target_inactive()
            self.dispatcher.clear_server_state()
            self.dispatcher.set_connection_state(ConnectionState.DISCONNECTED)

    # ================================
    # Helpers
    # ================================

    def _current_url(self) -> str | None:
        return self._target.url if self._target is not None else None

    def _is_stale(self, url: str | None) -> bool:
        if url is not None and url != self._current_url():
            logger.debug(f"Ignoring event of previous target {url}")
            return True
        return False

    def _surface(self, classification: Classification) -> None:
        if classification.severity == Severity.SILENT or not classification.message:
            return
        if classification.severity == Severity.INFO:
            self.dispatcher.notify(classification.message, MessageSemantics.INFO)
        elif classification.severity == Severity.WARNING:
            self.dispatcher.show_warning(classification.message)
        else:
            self.dispatcher.show_error(classification.message)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
