"""Settings loaded from YAML config and environment variables.

Environment variables (optionally from a .env file) override the YAML
values for credentials and the database path:

    OCTOPUS_API_KEY, OCTOPUS_MPAN, OCTOPUS_METER_SERIAL,
    OCTOPUS_TARIFF_CODE, TARIFFCOST_DB_PATH
"""

import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path

import yaml
from dotenv import load_dotenv

from .cache import DEFAULT_HIGH_WATER, DEFAULT_LOW_WATER, DEFAULT_TOLERANCE_KWH
from .collectors.octopus import API_BASE_URL
from .models import Agreement, ManualPlan, utc
from .periods import DEFAULT_TIMEZONE

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "tariffcost.yaml"


@dataclass
class Settings:
    api_key: str | None = None
    mpan: str | None = None
    meter_serial: str | None = None
    tariff_code: str | None = None
    agreements: list[Agreement] = field(default_factory=list)
    timezone: str = DEFAULT_TIMEZONE
    cooldown_minutes: float = 5
    cache_high_water: int = DEFAULT_HIGH_WATER
    cache_low_water: int = DEFAULT_LOW_WATER
    cache_tolerance_kwh: float = DEFAULT_TOLERANCE_KWH
    include_unmatched_kwh: bool = False
    manual_plan: ManualPlan | None = None
    persist_manual: bool = False
    base_url: str = API_BASE_URL
    db_path: Path | None = None
    required_from: datetime | None = None

    @property
    def has_meter(self) -> bool:
        return bool(self.mpan and self.meter_serial)

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ValueError(
                "OCTOPUS_API_KEY environment variable not set.\n"
                "Get your key from https://octopus.energy/dashboard/new/accounts/personal-details/api-access\n"
                "Then set it: export OCTOPUS_API_KEY='sk_live_...'"
            )
        return self.api_key

    def require_meter(self) -> tuple[str, str]:
        if not self.has_meter:
            raise ValueError(
                "OCTOPUS_MPAN and OCTOPUS_METER_SERIAL environment variables not set.\n"
                "Both are shown on the API access page of your Octopus dashboard.\n"
                "Then set them: export OCTOPUS_MPAN='...' OCTOPUS_METER_SERIAL='...'"
            )
        return self.mpan, self.meter_serial

    def require_tariff_code(self, tariff_code: str | None = None) -> str:
        code = tariff_code or self.tariff_code
        if not code:
            raise ValueError(
                "No tariff code given.\n"
                "Pass --tariff or set it: export OCTOPUS_TARIFF_CODE='E-1R-AGILE-24-10-01-H'"
            )
        return code


def parse_datetime(value) -> datetime | None:
    """Accept YAML timestamps, dates or ISO strings; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _agreement(item: dict) -> Agreement:
    if not item.get("tariff_code"):
        raise ValueError(f"Agreement without tariff_code: {item!r}")
    return Agreement(
        tariff_code=item["tariff_code"],
        valid_from=parse_datetime(item.get("valid_from")),
        valid_to=parse_datetime(item.get("valid_to")),
    )


def load_settings(config_path: Path | None = None, env_file: Path | None = None) -> Settings:
    """Load settings from YAML (if present), then apply environment overrides.

    An explicitly given config_path must exist; the default one is optional.
    """
    load_dotenv(env_file)

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    data: dict = {}
    if config_path or path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

    octopus = data.get("octopus") or {}
    sync = data.get("sync") or {}
    cache = data.get("cache") or {}
    manual = data.get("manual_plan")

    settings = Settings(
        api_key=octopus.get("api_key"),
        mpan=octopus.get("mpan"),
        meter_serial=octopus.get("meter_serial"),
        tariff_code=data.get("tariff_code"),
        agreements=[_agreement(a) for a in data.get("agreements") or []],
        timezone=data.get("timezone", DEFAULT_TIMEZONE),
        cooldown_minutes=sync.get("cooldown_minutes", 5),
        cache_high_water=cache.get("high_water", DEFAULT_HIGH_WATER),
        cache_low_water=cache.get("low_water", DEFAULT_LOW_WATER),
        cache_tolerance_kwh=cache.get("tolerance_kwh", DEFAULT_TOLERANCE_KWH),
        include_unmatched_kwh=bool(data.get("include_unmatched_kwh", False)),
        base_url=octopus.get("base_url", API_BASE_URL),
        db_path=Path(data["db_path"]).expanduser() if data.get("db_path") else None,
        required_from=parse_datetime(sync.get("required_from")),
    )

    if manual:
        settings.manual_plan = ManualPlan(
            rate_per_kwh=float(manual["rate_per_kwh"]),
            standing_charge_per_day=float(manual["standing_charge_per_day"]),
        )
        settings.persist_manual = bool(manual.get("persist", False))

    settings.api_key = os.environ.get("OCTOPUS_API_KEY") or settings.api_key
    settings.mpan = os.environ.get("OCTOPUS_MPAN") or settings.mpan
    settings.meter_serial = os.environ.get("OCTOPUS_METER_SERIAL") or settings.meter_serial
    settings.tariff_code = os.environ.get("OCTOPUS_TARIFF_CODE") or settings.tariff_code
    if os.environ.get("TARIFFCOST_DB_PATH"):
        settings.db_path = Path(os.environ["TARIFFCOST_DB_PATH"]).expanduser()

    return settings
