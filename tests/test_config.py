"""Tests for settings loading."""

import os
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from tariffcost.config import Settings, load_settings

ENV_VARS = ["OCTOPUS_API_KEY", "OCTOPUS_MPAN", "OCTOPUS_METER_SERIAL", "OCTOPUS_TARIFF_CODE", "TARIFFCOST_DB_PATH"]

CONFIG = """
octopus:
  api_key: sk_test_yaml
  mpan: "1200000000000"
  meter_serial: 21L0000000
tariff_code: E-1R-AGILE-24-10-01-H
agreements:
  - tariff_code: E-1R-VAR-22-11-01-H
    valid_from: 2023-04-01T00:00:00Z
    valid_to: 2024-11-15T00:00:00Z
  - tariff_code: E-1R-AGILE-24-10-01-H
    valid_from: 2024-11-15
manual_plan:
  rate_per_kwh: 24.5
  standing_charge_per_day: 60.99
sync:
  cooldown_minutes: 10
  required_from: "2023-04-01"
cache:
  high_water: 50
  low_water: 40
db_path: ~/energy/tariffcost.db
"""


@pytest.fixture(autouse=True)
def clean_env():
    """Hide real credentials and undo anything a .env file sets."""
    with patch.dict(os.environ):
        for name in ENV_VARS:
            os.environ.pop(name, None)
        yield


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "tariffcost.yaml"
    path.write_text(CONFIG)
    return path


def test_load_settings_from_yaml(config_file, tmp_path):
    settings = load_settings(config_file, env_file=tmp_path / ".env")

    assert settings.api_key == "sk_test_yaml"
    assert settings.mpan == "1200000000000"
    assert settings.tariff_code == "E-1R-AGILE-24-10-01-H"
    assert len(settings.agreements) == 2
    assert settings.agreements[0].valid_to == datetime(2024, 11, 15, tzinfo=timezone.utc)
    assert settings.agreements[1].valid_from == datetime(2024, 11, 15, tzinfo=timezone.utc)
    assert settings.agreements[1].valid_to is None
    assert settings.manual_plan.rate_per_kwh == 24.5
    assert settings.persist_manual is False
    assert settings.cooldown_minutes == 10
    assert settings.cache_high_water == 50
    assert settings.cache_tolerance_kwh == 0.0001
    assert settings.required_from == datetime(2023, 4, 1, tzinfo=timezone.utc)
    assert settings.db_path == Path.home() / "energy" / "tariffcost.db"


def test_environment_overrides_yaml(config_file, tmp_path, monkeypatch):
    monkeypatch.setenv("OCTOPUS_API_KEY", "sk_test_env")
    monkeypatch.setenv("TARIFFCOST_DB_PATH", str(tmp_path / "env.db"))

    settings = load_settings(config_file, env_file=tmp_path / ".env")

    assert settings.api_key == "sk_test_env"
    assert settings.db_path == tmp_path / "env.db"


def test_dotenv_file(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("OCTOPUS_TARIFF_CODE=E-1R-GO-VAR-22-10-14-H\n")
    empty = tmp_path / "empty.yaml"
    empty.write_text("")

    settings = load_settings(empty, env_file=env_file)

    assert settings.tariff_code == "E-1R-GO-VAR-22-10-14-H"
    assert settings.timezone == "Europe/London"


def test_missing_credentials_explain_themselves():
    settings = Settings()

    with pytest.raises(ValueError, match="OCTOPUS_API_KEY"):
        settings.require_api_key()
    with pytest.raises(ValueError, match="OCTOPUS_MPAN"):
        settings.require_meter()
    with pytest.raises(ValueError, match="--tariff"):
        settings.require_tariff_code()

    assert settings.require_tariff_code("E-1R-X-H") == "E-1R-X-H"


def test_agreement_needs_tariff_code(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("agreements:\n  - valid_from: 2024-01-01\n")

    with pytest.raises(ValueError, match="tariff_code"):
        load_settings(path, env_file=tmp_path / ".env")
