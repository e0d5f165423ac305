"""Clock skew estimation between the client and the server.

Positive skews mean that the server clock is ahead of ours.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx

from groundlink.errors import ProtocolError, ServerRejectedError, TransportError

if TYPE_CHECKING:
    from groundlink.channel.hub import MessageHub

logger = logging.getLogger(__name__)

MAX_ROUNDTRIP_TIME_MS = 500
"""Round-trip times above this are considered unreliable for skew estimation."""

THRESHOLD_MAX_RETRIES = 5
ACCURATE_SAMPLE_COUNT = 10
ACCURATE_SAMPLE_SPACING = 0.5

TIME_API_URL = "https://timeapi.io/api/time/current/zone?timeZone=UTC"


def wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class ClockSkewSample:
    """Result of a clock skew measurement, all values in milliseconds."""

    server_time: float
    local_time_before: float
    local_time_after: float
    estimated_skew_ms: float
    round_trip_time_ms: float

    def __post_init__(self) -> None:
        if self.local_time_before > self.local_time_after:
            raise ValueError("local_time_before must not be later than local_time_after")

    @classmethod
    def from_measurement(
        cls, server_time: float, local_time_before: float, local_time_after: float
    ) -> "ClockSkewSample":
        """Assume the server read its clock halfway through the round trip."""
        midpoint = (local_time_before + local_time_after) / 2
        return cls(
            server_time=server_time,
            local_time_before=local_time_before,
            local_time_after=local_time_after,
            estimated_skew_ms=server_time - midpoint,
            round_trip_time_ms=local_time_after - local_time_before,
        )


class ClockSkewEstimator:
    """Measures the clock skew of the server with ``SYS-TIME`` round trips.

    Methods:
        single: one round trip.
        threshold: repeat up to five more times while the round-trip time is
            above `max_round_trip_time_ms` and keep the fastest sample.
        accurate: ten round trips half a second apart; the two slowest are
            dropped as outliers, the round-trip time is the average of the
            rest and the skew is averaged over the three fastest.
    """

    def __init__(
        self,
        clock: Callable[[], float] = wall_clock_ms,
        *,
        max_round_trip_time_ms: float = MAX_ROUNDTRIP_TIME_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.clock = clock
        self.max_round_trip_time_ms = max_round_trip_time_ms
        self._sleep = sleep

    async def estimate(
        self, hub: "MessageHub", method: str = "threshold"
    ) -> ClockSkewSample:
        """Estimate the clock skew using the given method.

        Raises:
            ValueError: If the method is unknown.
            ProtocolError: If the server does not report its time.
        """
        if method == "single":
            return await self._single(hub)
        if method == "threshold":
            return await self._threshold(hub)
        if method == "accurate":
            return await self._accurate(hub)
        raise ValueError(f"Unknown clock skew estimation method: {method!r}")

    async def _single(self, hub: "MessageHub") -> ClockSkewSample:
        before = self.clock()
        server_time = await hub.query.get_server_time()
        after = self.clock()
        return ClockSkewSample.from_measurement(server_time, before, after)

    async def _threshold(self, hub: "MessageHub") -> ClockSkewSample:
        best = await self._single(hub)
        retries_left = THRESHOLD_MAX_RETRIES
        while retries_left > 0 and best.round_trip_time_ms > self.max_round_trip_time_ms:
            retries_left -= 1
            sample = await self._single(hub)
            if sample.round_trip_time_ms < best.round_trip_time_ms:
                best = sample
        return best

    async def _accurate(self, hub: "MessageHub") -> ClockSkewSample:
        samples: list[ClockSkewSample] = []
        for index in range(ACCURATE_SAMPLE_COUNT):
            started_at = self.clock()
            try:
                samples.append(await self._single(hub))
            except (ProtocolError, TransportError, TimeoutError) as e:
                logger.debug(f"Clock skew sample failed: {e}")

            if index < ACCURATE_SAMPLE_COUNT - 1:
                elapsed = (self.clock() - started_at) / 1000
                if elapsed < ACCURATE_SAMPLE_SPACING:
                    await self._sleep(ACCURATE_SAMPLE_SPACING - elapsed)

        if not samples:
            raise ProtocolError(
                "Failed to calculate clock skew and round-trip time", step="SYS-TIME"
            )

        samples.sort(key=lambda sample: sample.round_trip_time_ms)
        if len(samples) > 5:
            samples = samples[:-2]
        elif len(samples) > 3:
            samples = samples[:-1]

        fastest = samples[:3]
        best = samples[0]
        return ClockSkewSample(
            server_time=best.server_time,
            local_time_before=best.local_time_before,
            local_time_after=best.local_time_after,
            estimated_skew_ms=sum(s.estimated_skew_ms for s in fastest) / len(fastest),
            round_trip_time_ms=sum(s.round_trip_time_ms for s in samples) / len(samples),
        )


def rounded_clock_skew(sample: ClockSkewSample | None) -> float | None:
    """Clock skew, or zero if it is within the measurement uncertainty."""
    if sample is None:
        return None
    rtt = sample.round_trip_time_ms
    if rtt <= MAX_ROUNDTRIP_TIME_MS and abs(sample.estimated_skew_ms) <= rtt / 2:
        return 0.0
    return sample.estimated_skew_ms


def format_clock_skew(skew_ms: float | None) -> str:
    """Human-readable magnitude of a clock skew."""
    if skew_ms is None:
        return "an unknown amount"

    magnitude = abs(skew_ms)
    if magnitude < 1000:
        return f"{round(magnitude)}ms"
    if magnitude <= 30000:
        return f"{magnitude / 1000:.1f}s"
    return "more than 30s"


def describe_clock_skew(skew_ms: float) -> str:
    direction = "ahead of" if skew_ms > 0 else "behind"
    return (
        f"The clock of the server is {format_clock_skew(skew_ms)} {direction} "
        "the clock of this computer."
    )


async def adjust_server_time(hub: "MessageHub", clock_skew_ms: float) -> None:
    """Ask the server to shift its clock by the given skew to match ours.

    Raises:
        ProtocolError: If the server refuses or answers with something else.
    """
    try:
        response = await hub.send_message(
            {"type": "SYS-TIME", "adjustment": -clock_skew_ms}
        )
    except ServerRejectedError as e:
        raise ProtocolError(
            f"Failed to adjust server time: {e.reason}", step="SYS-TIME"
        ) from e

    if response.type != "SYS-TIME":
        raise ProtocolError("Failed to adjust server time", step="SYS-TIME")


async def fetch_reference_clock_skew(
    url: str = TIME_API_URL,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 5.0,
    clock: Callable[[], float] = wall_clock_ms,
) -> float:
    """Compare the local clock against a public time service.

    Returns:
        Skew of the reference clock relative to ours, in milliseconds.

    Raises:
        TransportError: If the time service cannot be reached.
        ProtocolError: If the response has no parsable ``dateTime``.
    """
    own_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)

    try:
        before = clock()
        response = await client.get(url)
        after = clock()
        response.raise_for_status()
        reference = datetime.fromisoformat(response.json()["dateTime"])
    except httpx.HTTPError as e:
        raise TransportError(f"Time service request failed: {e}") from e
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Unexpected response from time service: {e}") from e
    finally:
        if own_client:
            await client.aclose()

    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)

    return reference.timestamp() * 1000 - (before + after) / 2
