import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from groundlink.errors import LivenessError

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatRecord:
    """Liveness bookkeeping. Only the heartbeat monitor mutates it."""

    last_sent_at: float | None = None
    last_ack_at: float | None = None
    outstanding: int = 0
    sent: int = 0
    failures: int = 0
    last_error: LivenessError | None = None


class HeartbeatMonitor:
    """Sends periodic liveness probes and reports their outcome.

    The first probe is sent as soon as the monitor is started, then one per
    interval. A probe that fails or does not complete within `timeout` counts
    as a ping failure. The monitor only reports results through `on_result`;
    it never tears down the connection itself.

    Args:
        probe: Coroutine function that performs one round-trip to the server.
        on_result: Called with True or False after every probe.
        interval: Seconds between probes.
        timeout: Seconds after which a probe counts as failed.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[Any]],
        on_result: Callable[[bool], None],
        *,
        interval: float = 5.0,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self.timeout = timeout
        self.record = HeartbeatRecord()
        self._probe = probe
        self._on_result = on_result
        self._clock = clock
        self._ticker: asyncio.Task[None] | None = None
        self._probes: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> None:
        """Send the first probe right away and schedule the following ones.

        Safe to call multiple times.
        """
        if self.running:
            return
        self._send_probe()
        self._ticker = asyncio.create_task(self._tick(), name="heartbeat_ticker")

    async def stop(self) -> None:
        """Stop sending probes and abandon the outstanding ones.

        Safe to call multiple times.
        """
        tasks = list(self._probes)
        if self._ticker is not None:
            tasks.append(self._ticker)
            self._ticker = None
        self._probes.clear()

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._send_probe()

    def _send_probe(self) -> None:
        task = asyncio.create_task(self._run_probe(), name="heartbeat_probe")
        self._probes.add(task)
        task.add_done_callback(self._probes.discard)

    async def _run_probe(self) -> None:
        record = self.record
        record.last_sent_at = self._clock()
        record.sent += 1
        record.outstanding += 1

        error: LivenessError | None = None
        try:
            await asyncio.wait_for(self._probe(), self.timeout)
        except asyncio.TimeoutError:
            error = LivenessError(f"No response to ping within {self.timeout}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = LivenessError(f"Ping failed: {e}")
        finally:
            record.outstanding -= 1

        if error is None:
            record.last_ack_at = self._clock()
        else:
            record.failures += 1
            record.last_error = error
            logger.debug(str(error))

        try:
            self._on_result(error is None)
        except Exception as e:
            logger.error(f"Heartbeat result handler failed: {e}")
