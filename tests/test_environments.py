"""
Tests for environment discovery.
"""
import json

import pytest

from cantonlance.environments import EnvironmentRegistry, LedgerConfig, load_config_file
from cantonlance.exceptions import EnvironmentUnavailableError

from .conftest import config_payload


def write(path, payload):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload)


class TestDiscovery:
    def test_both_environments(self, tmp_path, settings):
        write(tmp_path / "local-config.json", config_payload("local"))
        write(tmp_path / "devnet-config.json", config_payload("devnet", "https://devnet.example.com"))

        registry = EnvironmentRegistry.discover(tmp_path, settings)

        assert registry.keys() == ["local", "devnet"]
        assert registry.default_key() == "local"
        assert registry.is_sandbox("local")
        assert not registry.is_sandbox("devnet")

    def test_devnet_only(self, tmp_path, settings):
        write(tmp_path / "devnet-config.json", config_payload("devnet"))

        registry = EnvironmentRegistry.discover(tmp_path, settings)

        assert registry.keys() == ["devnet"]
        assert registry.default_key() == "devnet"

    def test_local_file_may_carry_devnet_mode(self, tmp_path, settings):
        write(tmp_path / "local-config.json", config_payload("devnet"))

        registry = EnvironmentRegistry.discover(tmp_path, settings)

        assert registry.require("local").short_label == "DEVNET"

    def test_devnet_file_must_be_devnet(self, tmp_path):
        write(tmp_path / "devnet-config.json", config_payload("local"))
        assert load_config_file(tmp_path / "devnet-config.json", {"devnet"}) is None

    def test_missing_and_broken_files_are_unavailable(self, tmp_path, settings):
        write(tmp_path / "local-config.json", "{not json")

        registry = EnvironmentRegistry.discover(tmp_path, settings)

        assert registry.keys() == []
        assert registry.default_key() is None

    def test_invalid_shape_is_unavailable(self, tmp_path):
        write(tmp_path / "local-config.json", {"mode": "local"})
        assert load_config_file(tmp_path / "local-config.json", {"local"}) is None

    def test_uses_settings_directory(self, settings):
        write(settings.config_dir / "local-config.json", config_payload("local"))
        assert EnvironmentRegistry.discover(settings=settings).is_available("local")


class TestLedgerConfig:
    def test_aliases(self):
        config = LedgerConfig.model_validate(config_payload("local"))
        assert config.ledger_api_url == "http://localhost:7575"
        assert config.dar_package_id == "cantonlance-freelance"
        assert config.parties["client"].user_id == "client-user"
        assert config.label == "Local Sandbox"
        assert config.package_id is None


class TestActivation:
    def test_activate_unknown(self, local_config):
        registry = EnvironmentRegistry({"local": local_config})
        with pytest.raises(EnvironmentUnavailableError, match="Cannot switch to devnet"):
            registry.activate("devnet")
        assert registry.active_key is None

    def test_activate(self, local_config):
        registry = EnvironmentRegistry({"local": local_config})
        assert registry.activate("local") is local_config
        assert registry.active is local_config
