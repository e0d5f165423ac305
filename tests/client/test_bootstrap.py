import time

import pytest

from groundlink.client.bootstrap import (
    DEVICE_TREE_REFRESH_ACTION,
    SHOW_SYNC_ACTION,
    BootstrapSequencer,
    StepStatus,
)
from groundlink.client.dispatcher import MessageSemantics
from groundlink.errors import ProtocolError
from groundlink.timesync import ClockSkewEstimator


@pytest.fixture
def sequencer(hub, dispatcher):
    return BootstrapSequencer(hub, dispatcher)


def statuses(progress):
    return {step.name: step.status for step in progress.steps}


class TestBootstrapHappyPath:
    async def test_runs_all_steps_in_order(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)

        # Act
        progress = await sequencer.run()

        # Assert
        assert [step.name for step in progress.steps] == [
            "version",
            "connections",
            "clocks",
            "docks",
            "beacons",
            "features",
            "license",
            "show_sync",
            "device_tree",
            "clock_skew",
        ]
        assert all(step.status == StepStatus.SUCCESS for step in progress.steps)
        assert progress.ready
        assert not progress.failed

    async def test_populates_world_model(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)

        # Act
        await sequencer.run()

        # Assert
        state = dispatcher.state
        assert state.version == "2.17.0"
        assert state.connections == {"gps": {"status": "connected"}}
        assert state.clocks == {"system": {"running": True}}
        assert state.docks == {"dock-1": {"position": [47.5, 19.0]}}
        assert state.beacons == {"beacon-1": {"active": True}}
        assert state.beacon_properties == {"beacon-1": {"name": "Home"}}
        assert set(state.features) == {"show", "weather"}
        assert state.license == {"id": "demo"}
        assert state.clock_skew is not None
        assert dispatcher.notifications == []

    async def test_sends_expected_requests(
        self, sequencer, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)

        # Act
        await sequencer.run()

        # Assert
        bodies = [message["body"] for message in mock_transport.sent_messages]
        assert bodies[:4] == [
            {"type": "SYS-VER"},
            {"type": "CONN-LIST"},
            {"type": "CONN-INF", "ids": ["gps"]},
            {"type": "CLK-LIST"},
        ]
        assert {"type": "OBJ-LIST", "filter": ["dock"]} in bodies
        assert {"type": "OBJ-LIST", "filter": ["beacon"]} in bodies
        assert {"type": "BCN-PROPS", "ids": ["beacon-1"]} in bodies
        assert mock_transport.sent_types()[-1] == "SYS-TIME"

    async def test_show_sync_and_device_tree_refresh_are_dispatched(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)
        actions = []
        dispatcher.on_action(SHOW_SYNC_ACTION, lambda p: actions.append(SHOW_SYNC_ACTION))
        dispatcher.on_action(
            DEVICE_TREE_REFRESH_ACTION, lambda p: actions.append(DEVICE_TREE_REFRESH_ACTION)
        )

        # Act
        await sequencer.run()

        # Assert
        assert actions == [SHOW_SYNC_ACTION, DEVICE_TREE_REFRESH_ACTION]

    async def test_show_sync_skipped_without_show_extension(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"EXT-INF": {"result": {}}})
        actions = []
        dispatcher.on_action(SHOW_SYNC_ACTION, actions.append)

        # Act
        progress = await sequencer.run()

        # Assert
        assert actions == []
        assert statuses(progress)["show_sync"] == StepStatus.SUCCESS


class TestMandatorySteps:
    async def test_version_failure_stops_everything(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"SYS-VER": {"type": "ACK-NAK", "reason": "no"}})

        # Act
        progress = await sequencer.run()

        # Assert
        assert mock_transport.sent_types() == ["SYS-VER"]
        assert progress.failed
        assert not progress.ready
        result = statuses(progress)
        assert result["version"] == StepStatus.FAILED
        assert all(
            status == StepStatus.SKIPPED
            for name, status in result.items()
            if name != "version"
        )
        assert isinstance(progress.steps[0].error, ProtocolError)

    async def test_mandatory_failure_surfaces_one_error(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"CLK-LIST": {"ids": "not a list"}})

        # Act
        progress = await sequencer.run()

        # Assert
        assert statuses(progress)["clocks"] == StepStatus.FAILED
        errors = [
            n for n in dispatcher.notifications if n.semantics == MessageSemantics.ERROR
        ]
        assert len(errors) == 1
        assert "CLK-LIST" in errors[0].message

    async def test_timeout_of_mandatory_step_is_protocol_error(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"CONN-INF": None})

        # Act
        progress = await sequencer.run()

        # Assert
        failed = progress.steps[1]
        assert failed.name == "connections"
        assert failed.status == StepStatus.FAILED
        assert isinstance(failed.error, ProtocolError)
        assert isinstance(failed.error.__cause__, TimeoutError)


class TestOptionalSteps:
    async def test_empty_dock_list_skips_dock_info(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        def object_list(body):
            return {"ids": []} if body["filter"] == ["dock"] else {"ids": ["beacon-1"]}

        server_replies(mock_transport, **{"OBJ-LIST": object_list})

        # Act
        progress = await sequencer.run()

        # Assert
        assert "DOCK-INF" not in mock_transport.sent_types()
        assert statuses(progress)["docks"] == StepStatus.SUCCESS
        assert dispatcher.state.docks == {}

    async def test_no_beacons_skips_beacon_queries(
        self, sequencer, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"OBJ-LIST": {"ids": []}})

        # Act
        await sequencer.run()

        # Assert
        assert "BCN-INF" not in mock_transport.sent_types()
        assert "BCN-PROPS" not in mock_transport.sent_types()

    async def test_optional_failure_does_not_abort_later_steps(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"DOCK-INF": {"type": "ACK-NAK"}})

        # Act
        progress = await sequencer.run()

        # Assert
        result = statuses(progress)
        assert result["docks"] == StepStatus.FAILED
        assert result["beacons"] == StepStatus.SUCCESS
        assert result["clock_skew"] == StepStatus.SUCCESS
        assert progress.ready
        assert dispatcher.notifications == []

    async def test_extension_queries_are_individually_tolerant(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        def extension_info(body):
            name = body["ids"][0]
            if name == "rtk":
                return {"type": "ACK-NAK", "reason": "boom"}
            return {"result": {name: {"loaded": name in ("rtk", "weather", "dock")}}}

        server_replies(mock_transport, **{"EXT-INF": extension_info})

        # Act
        progress = await sequencer.run()

        # Assert
        assert statuses(progress)["features"] == StepStatus.SUCCESS
        assert set(dispatcher.state.features) == {"weather", "dock"}

    async def test_license_failure_keeps_readiness(
        self, sequencer, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"LCN-INF": {"type": "ACK-NAK"}})

        # Act
        progress = await sequencer.run()

        # Assert
        assert statuses(progress)["license"] == StepStatus.FAILED
        assert progress.ready


class TestClockSkewWarning:
    async def test_large_skew_raises_persistent_warning_with_details_action(
        self, hub, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(
            mock_transport, **{"SYS-TIME": lambda body: {"timestamp": time.time() * 1000 + 5_000}}
        )
        sequencer = BootstrapSequencer(hub, dispatcher, clock_skew_warning_threshold_ms=1000)

        # Act
        await sequencer.run()

        # Assert
        assert len(dispatcher.notifications) == 1
        warning = dispatcher.notifications[0]
        assert warning.semantics == MessageSemantics.WARNING
        assert warning.persistent
        assert "ahead of" in warning.message
        assert warning.action.label == "Show details"

        warning.action.callback()
        assert dispatcher.state.time_sync_dialog_open

    async def test_no_warning_when_dialog_already_open(
        self, hub, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(
            mock_transport, **{"SYS-TIME": lambda body: {"timestamp": time.time() * 1000 - 5_000}}
        )
        dispatcher.open_time_sync_dialog()
        sequencer = BootstrapSequencer(hub, dispatcher)

        # Act
        await sequencer.run()

        # Assert
        assert dispatcher.notifications == []
        assert dispatcher.state.clock_skew.estimated_skew_ms < 0

    async def test_small_skew_is_not_reported(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)

        # Act
        await sequencer.run()

        # Assert
        assert dispatcher.notifications == []

    async def test_uses_threshold_method(self, hub, dispatcher, mock_transport, server_replies):
        # Arrange
        server_replies(mock_transport)
        methods = []

        class RecordingEstimator(ClockSkewEstimator):
            async def estimate(self, hub, method="threshold"):
                methods.append(method)
                return await super().estimate(hub, method)

        sequencer = BootstrapSequencer(hub, dispatcher, estimator=RecordingEstimator())

        # Act
        await sequencer.run()

        # Assert
        assert methods == ["threshold"]


class TestStaleTarget:
    async def test_no_state_mutation_after_target_changed(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)

        def is_current():
            return not dispatcher.state.connections

        # Act
        progress = await sequencer.run(is_current)

        # Assert
        assert progress.abandoned
        assert dispatcher.state.version == "2.17.0"
        assert dispatcher.state.connections == {"gps": {"status": "connected"}}
        assert dispatcher.state.clocks == {}
        assert statuses(progress)["clocks"] == StepStatus.SKIPPED
        assert dispatcher.notifications == []

    async def test_stops_sending_once_target_changed(
        self, sequencer, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport)

        def is_current():
            return "BCN-INF" not in mock_transport.sent_types()

        # Act
        progress = await sequencer.run(is_current)

        # Assert
        assert mock_transport.sent_types()[-1] == "BCN-INF"
        assert "BCN-PROPS" not in mock_transport.sent_types()
        assert dispatcher.state.beacons == {}
        assert statuses(progress)["beacons"] == StepStatus.SKIPPED
        assert progress.abandoned

    async def test_failed_optional_step_does_not_continue_on_stale_target(
        self, hub, dispatcher, mock_transport, server_replies
    ):
        # Arrange
        server_replies(mock_transport, **{"DOCK-INF": None})
        sequencer = BootstrapSequencer(hub, dispatcher)

        def is_current():
            return "DOCK-INF" not in mock_transport.sent_types()

        # Act
        progress = await sequencer.run(is_current)

        # Assert
        assert mock_transport.sent_types()[-1] == "DOCK-INF"
        result = statuses(progress)
        assert result["docks"] == StepStatus.FAILED
        assert result["beacons"] == StepStatus.SKIPPED
        assert progress.abandoned
