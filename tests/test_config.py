"""
Tests for mapper configuration and logging setup.
"""
import json

import pytest
import structlog

from upnp_portmap.config import IGD_DEVICE_TYPE, MapperConfig
from upnp_portmap.log import configure_logging


class TestMapperConfig:
    """Test cases for MapperConfig."""

    def test_defaults(self):
        """Test default values."""
        config = MapperConfig()

        assert config.device_type == IGD_DEVICE_TYPE
        assert config.external_base_port == 55001
        assert config.description == "PacPhone"
        assert config.protocol == "UDP"
        assert config.allow_partial_pairs is True
        assert config.event_sub_url == ""
        assert config.wake_interval == 0.2
        assert config.validate()

    def test_file_round_trip(self, tmp_path):
        """Test saving and loading a configuration file."""
        path = tmp_path / "mapper.json"
        MapperConfig(external_base_port=40000, description="Phone").to_file(str(path))

        loaded = MapperConfig.from_file(str(path))

        assert loaded.external_base_port == 40000
        assert loaded.description == "Phone"
        assert json.loads(path.read_text())["rtp_port_base"] == 5000

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "mapper.json"
        path.write_text(json.dumps({"no_such_option": 1}))

        with pytest.raises(TypeError):
            MapperConfig.from_file(str(path))

    @pytest.mark.parametrize("overrides", [
        {"external_base_port": 0},
        {"external_base_port": 65535},
        {"event_port": 70000},
        {"rtp_port_base": 0},
        {"rtp_port_base": 6000, "rtp_port_max": 6000},
        {"call_timeout": 0},
        {"wake_interval": -1},
        {"subscription_timeout": 0},
        {"event_poll_interval": 0},
        {"protocol": "SCTP"},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValueError):
            MapperConfig(**overrides).validate()

    def test_protocol_case_insensitive(self):
        assert MapperConfig(protocol="udp").validate()

    def test_invalid_protocol_message(self):
        with pytest.raises(ValueError, match="Invalid protocol: SCTP"):
            MapperConfig(protocol="SCTP").validate()


class TestLogging:
    """Test cases for logging setup."""

    def test_configure(self):
        configure_logging("DEBUG")
        structlog.get_logger().debug("logging_configured")
        configure_logging("INFO")

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            configure_logging("CHATTY")
