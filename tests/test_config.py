import json

import pytest

from groundlink.config import ConnectionTarget, ServerSettings, parse_address
from groundlink.errors import ConfigurationError


class TestConnectionTarget:
    def test_websocket_url(self):
        target = ConnectionTarget(protocol="ws", host="host", port=1234)
        assert target.url == "ws://host:1234"

    def test_secure_websocket_url(self):
        target = ConnectionTarget(protocol="ws", host="host", port=443, is_secure=True)
        assert target.url == "wss://host:443"

    def test_tcp_url_and_address(self):
        # Arrange
        target = ConnectionTarget(protocol="tcp", host="10.0.0.5", port=5001)

        # Act & Assert
        assert target.url == "tcp://10.0.0.5:5001"
        assert target.address == ("10.0.0.5", 5001)

    def test_targets_are_immutable_and_comparable(self):
        # Arrange
        a = ConnectionTarget(protocol="ws", host="host", port=1234)
        b = ConnectionTarget(protocol="ws", host="host", port=1234)

        # Act & Assert
        assert a == b
        with pytest.raises(Exception):
            a.port = 1


class TestParseAddress:
    def test_parses_host_and_port(self):
        assert parse_address("tcp://localhost:5001") == ("localhost", 5001)

    @pytest.mark.parametrize(
        "url", ["tcp://localhost", "tcp://:5001", "tcp://localhost:abc", "tcp://h:70000"]
    )
    def test_rejects_unusable_addresses(self, url):
        with pytest.raises(ConfigurationError):
            parse_address(url)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_address("nonsense")


class TestServerSettings:
    def test_defaults(self):
        # Act
        settings = ServerSettings()

        # Assert
        assert settings.protocol == "ws"
        assert settings.connect_timeout_ms == 5000
        assert settings.ping_interval_ms == 5000
        assert settings.ping_timeout_ms == 5000
        assert settings.clock_skew_warning_threshold_ms == 1000
        assert not settings.local_server.enabled

    def test_target_requires_host(self):
        assert ServerSettings().target() is None

    def test_target_from_settings(self):
        # Arrange
        settings = ServerSettings(protocol="tcp", host="localhost", port=5001)

        # Act
        target = settings.target()

        # Assert
        assert target == ConnectionTarget(protocol="tcp", host="localhost", port=5001)

    def test_from_file(self, tmp_path):
        # Arrange
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps(
                {
                    "host": "example.com",
                    "port": 443,
                    "is_secure": True,
                    "local_server": {"enabled": True, "args": ["-c", "x.cfg"]},
                }
            )
        )

        # Act
        settings = ServerSettings.from_file(path)

        # Assert
        assert settings.target().url == "wss://example.com:443"
        assert settings.local_server.args == ["-c", "x.cfg"]

    def test_from_missing_file_is_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ServerSettings.from_file(tmp_path / "missing.json")

    def test_from_invalid_file_is_configuration_error(self, tmp_path):
        # Arrange
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"ping_interval_ms": 0}))

        # Act & Assert
        with pytest.raises(ConfigurationError):
            ServerSettings.from_file(path)
