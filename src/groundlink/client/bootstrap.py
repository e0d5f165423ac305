"""Post-connect handshake that populates the world model.

The bootstrap runs once every time the transport reports a successful
connection. Steps run in a fixed order; the first three are mandatory and
abort the rest when they fail, the others degrade gracefully.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from groundlink.channel.hub import MessageHub
from groundlink.client.dispatcher import (
    Dispatcher,
    MessageSemantics,
    NotificationAction,
)
from groundlink.errors import ProtocolError
from groundlink.timesync import (
    ClockSkewEstimator,
    describe_clock_skew,
    rounded_clock_skew,
)

logger = logging.getLogger(__name__)

OPTIONAL_EXTENSIONS = ("beacon", "dock", "mission_planning", "rtk", "show", "weather")
"""Server extensions whose presence is recorded as a server feature."""

MANDATORY_STEPS = ("version", "connections", "clocks")

SHOW_SYNC_ACTION = "show/synchronize_to_server"
DEVICE_TREE_REFRESH_ACTION = "device_tree/refresh_subscriptions"

IsCurrent = Callable[[], bool]


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    error: Exception | None = None


@dataclass
class BootstrapProgress:
    """Ordered per-step results of one bootstrap run."""

    steps: list[StepResult] = field(default_factory=list)
    abandoned: bool = False
    """
    True if the run stopped because the connection target changed under it.
    """

    def record(
        self, name: str, status: StepStatus, error: Exception | None = None
    ) -> StepResult:
        result = StepResult(name, status, error)
        self.steps.append(result)
        return result

    def status_of(self, name: str) -> StepStatus | None:
        for result in self.steps:
            if result.name == name:
                return result.status
        return None

    @property
    def ready(self) -> bool:
        """True if every mandatory step succeeded."""
        return all(self.status_of(name) == StepStatus.SUCCESS for name in MANDATORY_STEPS)

    @property
    def failed(self) -> bool:
        return any(self.status_of(name) == StepStatus.FAILED for name in MANDATORY_STEPS)


class _TargetChanged(Exception):
    """The connection target changed while a step was waiting for a response."""


class BootstrapSequencer:
    """Runs the ordered post-connect handshake against the server.

    Args:
        hub: Message hub of the active connection.
        dispatcher: Receives the learned world model and the notifications.
        estimator: Clock skew estimator used by the last step.
        clock_skew_warning_threshold_ms: Skews larger than this are reported
            to the user.
        extensions: Optional server extensions to probe for.
    """

    def __init__(
        self,
        hub: MessageHub,
        dispatcher: Dispatcher,
        *,
        estimator: ClockSkewEstimator | None = None,
        clock_skew_warning_threshold_ms: float = 1000,
        extensions: tuple[str, ...] = OPTIONAL_EXTENSIONS,
    ):
        self.hub = hub
        self.dispatcher = dispatcher
        self.estimator = estimator or ClockSkewEstimator()
        self.clock_skew_warning_threshold_ms = clock_skew_warning_threshold_ms
        self.extensions = extensions

    def steps(self) -> list[tuple[str, Callable[[IsCurrent], Awaitable[None]]]]:
        return [
            ("version", self._query_version),
            ("connections", self._query_connections),
            ("clocks", self._query_clocks),
            ("docks", self._query_docks),
            ("beacons", self._query_beacons),
            ("features", self._query_features),
            ("license", self._query_license),
            ("show_sync", self._synchronize_show),
            ("device_tree", self._refresh_device_tree),
            ("clock_skew", self._check_clock_skew),
        ]

    async def run(self, is_current: IsCurrent = lambda: True) -> BootstrapProgress:
        """Execute all steps in order.

        Args:
            is_current: Tells whether the connection this run belongs to is
                still the active one. Checked before every state mutation.

        Returns:
            BootstrapProgress: Result of every step. Never raises for step
                failures; a failed mandatory step is surfaced to the user as
                a protocol error and the remaining steps are skipped.
        """
        progress = BootstrapProgress()
        stopped = False

        for name, step in self.steps():
            if stopped:
                progress.record(name, StepStatus.SKIPPED)
                continue

            try:
                self._ensure_current(is_current)
                await step(is_current)
            except _TargetChanged:
                logger.debug(f"Connection target changed during bootstrap step '{name}'")
                progress.abandoned = True
                progress.record(name, StepStatus.SKIPPED)
                stopped = True
            except Exception as e:
                if name in MANDATORY_STEPS:
                    error = self._as_protocol_error(name, e)
                    progress.record(name, StepStatus.FAILED, error)
                    stopped = True
                    if is_current():
                        logger.error(str(error))
                        self.dispatcher.show_error(str(error))
                else:
                    logger.warning(f"Optional bootstrap step '{name}' failed: {e}")
                    progress.record(name, StepStatus.FAILED, e)
            else:
                progress.record(name, StepStatus.SUCCESS)

        if progress.ready:
            logger.debug("Bootstrap finished")
        return progress

    # ================================
    # Steps
    # ================================

    async def _query_version(self, is_current: IsCurrent) -> None:
        version = await self.hub.query.get_server_version()
        self._ensure_current(is_current)
        self.dispatcher.set_server_version(version)

    async def _query_connections(self, is_current: IsCurrent) -> None:
        ids = await self._list_ids({"type": "CONN-LIST"})
        self._ensure_current(is_current)
        status = await self._query_status("CONN-INF", ids)
        self._ensure_current(is_current)
        self.dispatcher.update_connections(status)

    async def _query_clocks(self, is_current: IsCurrent) -> None:
        ids = await self._list_ids({"type": "CLK-LIST"})
        self._ensure_current(is_current)
        status = await self._query_status("CLK-INF", ids)
        self._ensure_current(is_current)
        self.dispatcher.update_clocks(status)

    async def _query_docks(self, is_current: IsCurrent) -> None:
        ids = await self._list_ids({"type": "OBJ-LIST", "filter": ["dock"]})
        if not ids:
            return
        self._ensure_current(is_current)
        status = await self._query_status("DOCK-INF", ids)
        self._ensure_current(is_current)
        self.dispatcher.update_docks(status)

    async def _query_beacons(self, is_current: IsCurrent) -> None:
        ids = await self._list_ids({"type": "OBJ-LIST", "filter": ["beacon"]})
        if not ids:
            return
        self._ensure_current(is_current)
        status = await self._query_status("BCN-INF", ids)
        self._ensure_current(is_current)
        response = await self.hub.send_message({"type": "BCN-PROPS", "ids": ids})
        properties = response.body.get("result")
        self._ensure_current(is_current)
        self.dispatcher.update_beacons(status)
        if isinstance(properties, dict):
            self.dispatcher.update_beacon_properties(properties)

    async def _query_features(self, is_current: IsCurrent) -> None:
        results = await asyncio.gather(
            *(self.hub.query.is_extension_loaded(name) for name in self.extensions),
            return_exceptions=True,
        )
        self._ensure_current(is_current)
        for name, loaded in zip(self.extensions, results):
            if isinstance(loaded, BaseException):
                logger.warning(f"Cannot tell whether extension '{name}' is loaded: {loaded}")
            elif loaded:
                self.dispatcher.add_server_feature(name)

    async def _query_license(self, is_current: IsCurrent) -> None:
        license_info = await self.hub.query.get_license_information()
        self._ensure_current(is_current)
        self.dispatcher.set_license(license_info)

    async def _synchronize_show(self, is_current: IsCurrent) -> None:
        self._ensure_current(is_current)
        if "show" in self.dispatcher.state.features:
            self.dispatcher.dispatch(SHOW_SYNC_ACTION)

    async def _refresh_device_tree(self, is_current: IsCurrent) -> None:
        self._ensure_current(is_current)
        self.dispatcher.dispatch(DEVICE_TREE_REFRESH_ACTION)

    async def _check_clock_skew(self, is_current: IsCurrent) -> None:
        sample = await self.estimator.estimate(self.hub, "threshold")
        self._ensure_current(is_current)
        self.dispatcher.set_clock_skew(sample)

        skew = rounded_clock_skew(sample)
        if skew is None or abs(skew) <= self.clock_skew_warning_threshold_ms:
            return
        if self.dispatcher.state.time_sync_dialog_open:
            return

        logger.warning(f"Clock skew of server is {skew:.0f} ms")
        self.dispatcher.notify(
            describe_clock_skew(skew),
            MessageSemantics.WARNING,
            persistent=True,
            action=NotificationAction(
                "Show details", self.dispatcher.open_time_sync_dialog
            ),
        )

    # ================================
    # Helpers
    # ================================

    async def _list_ids(self, request: dict[str, Any]) -> list[str]:
        response = await self.hub.send_message(request)
        ids = response.body.get("ids")
        if not isinstance(ids, list):
            raise ProtocolError(
                f"Malformed response to {request['type']}", step=request["type"]
            )
        return ids

    async def _query_status(self, message_type: str, ids: list[str]) -> dict[str, Any]:
        if not ids:
            return {}
        response = await self.hub.send_message({"type": message_type, "ids": ids})
        status = response.body.get("status")
        if not isinstance(status, dict):
            raise ProtocolError(f"Malformed response to {message_type}", step=message_type)
        return status

    @staticmethod
    def _ensure_current(is_current: IsCurrent) -> None:
        if not is_current():
            raise _TargetChanged()

    @staticmethod
    def _as_protocol_error(step: str, error: Exception) -> ProtocolError:
        if isinstance(error, ProtocolError):
            return error
        wrapped = ProtocolError(f"Bootstrap step '{step}' failed: {error}", step=step)
        wrapped.__cause__ = error
        return wrapped
