import pytest

from groundlink.client.classifier import DisconnectionClassifier, Severity


class TestClassifyDisconnection:
    def setup_method(self):
        self.classifier = DisconnectionClassifier()

    def test_server_disconnect_is_silent(self):
        # Act
        result = self.classifier.classify_disconnection("io server disconnect", False)

        # Assert
        assert result.severity == Severity.SILENT
        assert result.message is None

    def test_client_disconnect_is_informational(self):
        # Act
        result = self.classifier.classify_disconnection("io client disconnect", False)

        # Assert
        assert result.severity == Severity.INFO
        assert result.message == "Disconnected from server"

    @pytest.mark.parametrize("reason", ["ping timeout", "transport close", "connect timeout"])
    def test_lost_connection_is_warning(self, reason):
        # Act
        result = self.classifier.classify_disconnection(reason, True)

        # Assert
        assert result.severity == Severity.WARNING
        assert result.message == "Connection to server lost"
        assert result.will_reconnect

    @pytest.mark.parametrize("reason", ["transport error", "parse error", None])
    def test_other_reasons_are_errors(self, reason):
        assert self.classifier.classify_disconnection(reason, False).severity == Severity.ERROR


class TestClassifyConnectionFailure:
    def setup_method(self):
        self.classifier = DisconnectionClassifier()

    def test_retried_failure_is_silent(self):
        # Act
        result = self.classifier.classify_connection_failure("refused", True)

        # Assert
        assert result.severity == Severity.SILENT

    def test_final_timeout_is_warning(self):
        # Act
        result = self.classifier.classify_connection_failure(
            "connect timeout", False, timeout=True
        )

        # Assert
        assert result.severity == Severity.WARNING
        assert result.message == "Timeout while connecting to server"

    def test_final_error_is_error(self):
        # Act
        result = self.classifier.classify_connection_failure("refused", False)

        # Assert
        assert result.severity == Severity.ERROR
        assert "refused" in result.message


class TestShouldMarkTargetInactive:
    def test_matching_url_without_reconnect(self):
        assert DisconnectionClassifier.should_mark_target_inactive(
            "ws://a:1", "ws://a:1", False
        )

    @pytest.mark.parametrize(
        "event_url, current_url, will_reconnect",
        [
            ("ws://a:1", "ws://b:2", False),
            ("ws://a:1", "ws://a:1", True),
            (None, "ws://a:1", False),
            ("ws://a:1", None, False),
        ],
    )
    def test_never_marks_inactive_otherwise(self, event_url, current_url, will_reconnect):
        assert not DisconnectionClassifier.should_mark_target_inactive(
            event_url, current_url, will_reconnect
        )
