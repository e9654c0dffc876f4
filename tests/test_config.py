"""
Tests for oinit-ca Settings
===========================

Tests process settings and logging setup.
"""

import json
import logging
import os
from unittest.mock import patch

import pytest

from oinit_ca.config import CAServiceConfig
from oinit_ca.errors import ConfigInvalidError
from oinit_ca.logging_config import JSONFormatter, configure_logging


class TestCAServiceConfig:
    """Test settings loading."""

    def test_defaults(self):
        """Default config has sensible values."""
        config = CAServiceConfig()
        assert config.port == 8080
        assert config.config_path == "/etc/oinit-ca/config.ini"
        assert config.force_command == "oinit-switch"
        assert config.log_format == "json"

    def test_from_env(self):
        """Config loads from environment variables."""
        env = {
            "OINIT_CA_PORT": "9000",
            "OINIT_CA_CONFIG": "/tmp/ca.ini",
            "OINIT_CA_FORCE_COMMAND": "/usr/bin/oinit-switch",
            "OINIT_CA_UPSTREAM_TIMEOUT": "2.5",
            "LOG_LEVEL": "DEBUG",
        }
        with patch.dict(os.environ, env, clear=False):
            config = CAServiceConfig.from_env()
            assert config.port == 9000
            assert config.config_path == "/tmp/ca.ini"
            assert config.force_command == "/usr/bin/oinit-switch"
            assert config.upstream_timeout == 2.5
            assert config.log_level == "DEBUG"

    def test_invalid_number(self):
        with patch.dict(os.environ, {"OINIT_CA_PORT": "eighty"}):
            with pytest.raises(ConfigInvalidError):
                CAServiceConfig.from_env()

    def test_empty_force_command_rejected(self):
        """The CA refuses to run without a forced command."""
        with pytest.raises(ConfigInvalidError):
            CAServiceConfig(force_command="  ").validate()

    def test_valid(self):
        CAServiceConfig().validate()


class TestLogging:
    """Test log formatting."""

    def test_json_formatter_extra_fields(self):
        record = logging.LogRecord(
            "oinit_ca.signer", logging.INFO, __file__, 1,
            "Certificate signed: %s", ("x",), None,
        )
        record.group = "cluster1"
        record.serial = 42
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Certificate signed: x"
        assert entry["level"] == "INFO"
        assert entry["group"] == "cluster1"
        assert entry["serial"] == 42
        assert "host" not in entry

    def test_configure_text(self):
        configure_logging("debug", "text")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
