"""Request/response correlation on top of a transport.

The message hub turns the fire-and-forget message stream of a transport into
awaitable request/response pairs, and routes unsolicited server messages to
the notification handlers registered for their type.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from groundlink.channel.queries import QueryHandler
from groundlink.errors import (
    MessageTimeout,
    NoEmitterError,
    RequestCancelledError,
    ServerRejectedError,
)
from groundlink.shared.message_parser import Message, MessageParser, create_message
from groundlink.shared.request_tracker import RequestTracker
from groundlink.shared.subscriptions import Subscription, subscribe
from groundlink.transport.base import Transport

NotificationHandler = Callable[[Message], Awaitable[None] | None]

DEFAULT_TIMEOUT = 5.0


class CancelToken:
    """Lets a caller abandon a long-running request before it times out."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], None]] = []
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Subscription:
        if self.cancelled:
            callback()
            return Subscription(lambda: None)
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return Subscription(remove)


class MessageHub:
    """Sends messages to the server and matches responses to requests.

    The hub is detached from any transport initially; the connection manager
    attaches the active transport when a session is created and detaches it
    on teardown. Pending requests are not failed when the transport changes;
    they run into their timeout instead.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self.parser = MessageParser()
        self.requests = RequestTracker()
        self.query = QueryHandler(self)
        self._transport: Transport | None = None
        self._notification_handlers: dict[str, list[NotificationHandler]] = {}
        self.logger = logging.getLogger("groundlink.channel.hub")

    # ================================
    # Transport binding
    # ================================

    @property
    def transport(self) -> Transport | None:
        return self._transport

    def attach(self, transport: Transport) -> None:
        """Route outbound messages through the given transport."""
        self._transport = transport

    def detach(self, transport: Transport | None = None) -> None:
        """Stop using the current transport.

        If `transport` is given, the hub only detaches if that transport is
        the one currently attached.
        """
        if transport is None or transport is self._transport:
            self._transport = None

    # ================================
    # Send messages
    # ================================

    def create_cancel_token(self) -> CancelToken:
        return CancelToken()

    async def send_message(
        self,
        message: str | dict[str, Any],
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> Message:
        """Send a message to the server and wait for the response.

        Args:
            message: Bare message type (``"SYS-VER"``) or a full message body
                (``{"type": "CONN-INF", "ids": [...]}``).
            timeout: Seconds to wait for the response. Defaults to the hub
                timeout.
            cancel_token: Optional token that abandons the request when
                cancelled.

        Returns:
            Message: The response from the server.

        Raises:
            NoEmitterError: If no transport is attached.
            TransportError: If the transport fails to send the message.
            MessageTimeout: If the server does not respond in time.
            RequestCancelledError: If the request was cancelled.
            ServerRejectedError: If the server responded with ACK-NAK.
        """
        transport = self._transport
        if transport is None:
            raise NoEmitterError()

        request = create_message(message)
        future: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        self.requests.track_outbound_request(request.id, future)

        cancel_subscription: Subscription | None = None
        if cancel_token is not None:
            cancel_subscription = cancel_token.on_cancel(
                lambda: self.requests.fail_outbound_request(
                    request.id, RequestCancelledError(request.id)
                )
            )

        try:
            await transport.send(request.to_wire())
            response = await asyncio.wait_for(
                future, self.timeout if timeout is None else timeout
            )
        except asyncio.TimeoutError:
            raise MessageTimeout(request.id) from None
        finally:
            self.requests.untrack_outbound_request(request.id)
            if cancel_subscription is not None:
                cancel_subscription.unsubscribe()

        if self.parser.is_rejection(response):
            raise ServerRejectedError(response.body.get("reason"), step=request.type)

        return response

    async def send_notification(self, message: str | dict[str, Any]) -> None:
        """Send a message without waiting for any response."""
        transport = self._transport
        if transport is None:
            raise NoEmitterError()
        await transport.send(create_message(message).to_wire())

    def cancel_all(self, error: Exception) -> None:
        """Fail all pending requests with the given error."""
        self.requests.cleanup_all_requests(error)

    # ================================
    # Incoming messages
    # ================================

    async def process_incoming_message(self, payload: dict[str, Any]) -> None:
        """Resolve the matching request or dispatch a notification."""
        message = self.parser.parse(payload)
        if message is None:
            self.logger.warning(f"Dropping malformed message: {payload}")
            return

        if self.parser.is_valid_response(message):
            if not self.requests.resolve_outbound_request(
                message.correlation_id, message
            ):
                self.logger.debug(
                    f"Stale response received for message {message.correlation_id}"
                )
        elif self.parser.is_valid_notification(message):
            await self._handle_notification(message)
        else:
            self.logger.warning(f"Unknown message from server: {payload}")

    async def _handle_notification(self, message: Message) -> None:
        handlers = list(self._notification_handlers.get(message.type, ()))
        if not handlers:
            self.logger.debug(f"No handler for notification '{message.type}'")
            return

        for handler in handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.warning(
                    f"Notification handler for '{message.type}' failed: {e}"
                )

    # ================================
    # Register handlers
    # ================================

    def register_notification_handler(
        self, message_type: str, handler: NotificationHandler
    ) -> Subscription:
        """Register a handler for server notifications of the given type."""
        return subscribe(self._notification_handlers, message_type, handler)

    def register_notification_handlers(
        self, handlers: dict[str, NotificationHandler]
    ) -> list[Subscription]:
        return [
            self.register_notification_handler(message_type, handler)
            for message_type, handler in handlers.items()
        ]
