"""Settings loading."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from cantonlance.config import CantonlanceSettings


def test_defaults():
    settings = CantonlanceSettings(_env_file=None)
    assert settings.config_dir == Path("public")
    assert settings.application_id == "cantonlance"
    assert settings.call_log_size == 100


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CANTONLANCE_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("CANTONLANCE_MAX_RETRIES", "5")

    settings = CantonlanceSettings(_env_file=None)

    assert settings.config_dir == tmp_path
    assert settings.max_retries == 5


def test_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("CANTONLANCE_APPLICATION_ID=freelance-demo\n")

    assert CantonlanceSettings(_env_file=env_file).application_id == "freelance-demo"


@pytest.mark.parametrize("field,value", [("request_timeout", 0), ("call_log_size", -1)])
def test_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        CantonlanceSettings(_env_file=None, **{field: value})
