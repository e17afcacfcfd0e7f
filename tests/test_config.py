"""Tests for configuration loading."""

import json
import os

import pytest
import yaml
from pydantic import ValidationError

from kv_gateway.config import Config, substitute_env_vars


class TestEnvSubstitution:
    """Tests for environment variable substitution."""

    def test_substitute_string(self):
        """Test substituting a string value."""
        os.environ["TEST_VAR"] = "hello"
        result = substitute_env_vars("${TEST_VAR}")
        assert result == "hello"

    def test_substitute_in_dict(self):
        """Test substituting values in a dictionary."""
        os.environ["TEST_KEY"] = "secret"
        data = {"key": "${TEST_KEY}", "other": "value"}
        result = substitute_env_vars(data)
        assert result == {"key": "secret", "other": "value"}

    def test_substitute_in_list(self):
        """Test substituting values in a list."""
        os.environ["TEST_ITEM"] = "item1"
        data = ["${TEST_ITEM}", "item2"]
        result = substitute_env_vars(data)
        assert result == ["item1", "item2"]

    def test_missing_env_var_raises(self):
        """Test that missing env vars raise ValueError."""
        os.environ.pop("NONEXISTENT_VAR", None)
        with pytest.raises(ValueError, match="NONEXISTENT_VAR"):
            substitute_env_vars("${NONEXISTENT_VAR}")

    def test_non_string_values_untouched(self):
        """Numbers and booleans pass through."""
        assert substitute_env_vars({"port": 8787, "debug": True}) == {"port": 8787, "debug": True}


class TestConfigLoading:
    """Tests for configuration loading."""

    def test_defaults(self):
        """An empty config selects the memory backend and the standard limits."""
        config = Config()
        assert config.auth.secret_key is None
        assert config.auth.timestamp_tolerance_ms == 300_000
        assert config.storage.backend == "memory"
        assert config.bulk.max_attempts == 3
        assert config.bulk.retry_delays_seconds == [1.0, 2.0, 4.0]
        assert config.server.base_path == "/api/v1"
        assert config.server.port == 8787

    def test_from_dict(self, sample_config_dict):
        """Test loading config from dictionary."""
        config = Config.from_dict(sample_config_dict)
        assert config.storage.backend == "relational"
        assert config.storage.database.backend == "sqlite"
        assert config.storage.database.path == ":memory:"
        assert config.server.port == 9000
        assert config.logging.format == "text"

    def test_from_yaml_file(self, sample_config_dict, tmp_path):
        """Test loading config from a YAML file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(sample_config_dict))

        config = Config.from_file(path)
        assert config.auth.secret_key == sample_config_dict["auth"]["secret_key"]

    def test_from_json_file(self, sample_config_dict, tmp_path):
        """Test loading config from a JSON file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps(sample_config_dict))

        config = Config.from_file(path)
        assert config.storage.backend == "relational"

    def test_secret_from_environment(self, tmp_path):
        """The shared secret is usually injected from the environment."""
        os.environ["AUTH_SECRET_KEY"] = "from-env"
        path = tmp_path / "config.yaml"
        path.write_text("auth:\n  secret_key: ${AUTH_SECRET_KEY}\n")

        config = Config.from_file(path)
        assert config.auth.secret_key == "from-env"

    def test_empty_yaml_file(self, tmp_path):
        """An empty file yields defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = Config.from_file(path)
        assert config.storage.backend == "memory"


class TestConfigValidation:
    """Tests for field validation."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("/api/v1", "/api/v1"), ("api/v1/", "/api/v1"), ("/", ""), ("", "")],
    )
    def test_base_path_normalized(self, raw, expected):
        """Base paths get one leading slash and no trailing slash."""
        config = Config.from_dict({"server": {"base_path": raw}})
        assert config.server.base_path == expected

    def test_rejects_empty_retry_delays(self):
        """A retry table needs at least one delay."""
        with pytest.raises(ValidationError):
            Config.from_dict({"bulk": {"retry_delays_seconds": []}})

    def test_rejects_zero_attempts(self):
        """At least one attempt is required."""
        with pytest.raises(ValidationError):
            Config.from_dict({"bulk": {"max_attempts": 0}})

    def test_rejects_negative_cleanup_interval(self):
        """Cleanup interval cannot be negative."""
        with pytest.raises(ValidationError):
            Config.from_dict({"storage": {"cleanup_interval_seconds": -1}})
