import asyncio

from groundlink.shared.message_parser import Message

MessageId = str


class RequestTracker:
    """Tracks outbound requests that are waiting for a response."""

    def __init__(self):
        self._outbound_requests: dict[MessageId, asyncio.Future[Message]] = {}

    def __len__(self) -> int:
        return len(self._outbound_requests)

    def track_outbound_request(
        self, message_id: MessageId, future: asyncio.Future[Message]
    ) -> None:
        if message_id in self._outbound_requests:
            raise ValueError(f"Request {message_id} is already being tracked")
        self._outbound_requests[message_id] = future

    def get_outbound_request(
        self, message_id: MessageId
    ) -> asyncio.Future[Message] | None:
        return self._outbound_requests.get(message_id)

    def untrack_outbound_request(
        self, message_id: MessageId
    ) -> asyncio.Future[Message] | None:
        return self._outbound_requests.pop(message_id, None)

    def resolve_outbound_request(self, message_id: MessageId, response: Message) -> bool:
        """Resolve a pending request with its response.

        Returns:
            True if a pending request was resolved, False if the ID is unknown
            or the request already completed.
        """
        future = self._outbound_requests.pop(message_id, None)
        if future is None or future.done():
            return False
        future.set_result(response)
        return True

    def fail_outbound_request(self, message_id: MessageId, error: Exception) -> bool:
        future = self._outbound_requests.pop(message_id, None)
        if future is None or future.done():
            return False
        future.set_exception(error)
        return True

    def cleanup_all_requests(self, error: Exception) -> None:
        """Fail every pending request with the given error."""
        requests, self._outbound_requests = self._outbound_requests, {}
        for future in requests.values():
            if not future.done():
                future.set_exception(error)
