"""Unit tests for environment-driven settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from armhub.config import BridgeSettings, CommandSettings, PollingSettings, RemoteSettings, RobotSettings, USBSettings


class TestDefaults:
    def test_robot_settings_defaults(self):
        settings = RobotSettings.from_env({})
        assert settings.usb.baud_rate == 1_000_000
        assert settings.usb.max_retries == 3
        assert settings.polling.consumer_polling_rate == pytest.approx(0.040)
        assert settings.commands.max_queue_size == 50
        assert settings.commands.dedup_window == pytest.approx(0.016)
        assert settings.calibration.min_range_threshold == 500
        assert settings.calibration.calibration_path is None
        assert settings.log_level == "INFO"


class TestFromEnv:
    def test_sections_read_prefixed_keys(self):
        env = {
            "ARMHUB_USB_PORT": "/dev/ttyACM0",
            "ARMHUB_USB_BAUD_RATE": "500000",
            "ARMHUB_POLLING_MAX_POLLING_ERRORS": "7",
            "ARMHUB_COMMANDS_DEDUP_EPSILON": "0.25",
            "ARMHUB_REMOTE_RELAY_URL": "mqtt://relay:1883",
            "ARMHUB_CALIBRATION_CALIBRATION_PATH": "/tmp/arm.json",
            "ARMHUB_LOG_LEVEL": "debug",
        }
        settings = RobotSettings.from_env(env)
        assert settings.usb.port == "/dev/ttyACM0"
        assert settings.usb.baud_rate == 500000
        assert settings.polling.max_polling_errors == 7
        assert settings.commands.dedup_epsilon == pytest.approx(0.25)
        assert settings.remote.relay_url == "mqtt://relay:1883"
        assert settings.calibration.calibration_path == Path("/tmp/arm.json")
        assert settings.log_level == "DEBUG"

    def test_malformed_numbers_fall_back_to_defaults(self):
        settings = USBSettings.from_env({"ARMHUB_USB_BAUD_RATE": "fast", "ARMHUB_USB_RETRY_DELAY": ""})
        assert settings.baud_rate == 1_000_000
        assert settings.retry_delay == pytest.approx(0.1)

    def test_bridge_settings(self):
        settings = BridgeSettings.from_env(
            {
                "ARMHUB_BRIDGE_MODE": "Follower",
                "ARMHUB_BRIDGE_ROOM_ID": "room-7",
                "ARMHUB_BRIDGE_JOIN_EXISTING": "yes",
                "ARMHUB_BRIDGE_CALIBRATION": "skip",
            }
        )
        assert settings.mode == "follower"
        assert settings.room_id == "room-7"
        assert settings.join_existing is True
        assert settings.calibration == "skip"
        assert settings.robot.usb.baud_rate == 1_000_000

    def test_unknown_bridge_mode_is_rejected(self):
        with pytest.raises(ValidationError):
            BridgeSettings.from_env({"ARMHUB_BRIDGE_MODE": "observer"})


class TestValidation:
    def test_polling_intervals_must_be_positive(self):
        with pytest.raises(ValidationError):
            PollingSettings(consumer_polling_rate=0)

    def test_relay_url_scheme(self):
        with pytest.raises(ValidationError):
            RemoteSettings(relay_url="http://relay")

    def test_queue_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            CommandSettings(max_queue_size=0)
