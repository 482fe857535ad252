"""Octopus Energy REST API collector.

Fetches paginated unit rates, standing charges and half-hourly meter
consumption. Pages come back newest-first:

    {"count": 250, "next": "...?page=2", "previous": null, "results": [...]}

Each source object exposes ``fetch_page(page)`` and is consumed by the
sync engine, which decides which pages to request.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from ..exceptions import (
    DecodingError,
    InvalidAPIKeyError,
    InvalidResponseError,
    InvalidURLError,
    NetworkError,
)
from ..models import (
    HALF_HOUR_SECONDS,
    ConsumptionInterval,
    RateInterval,
    SeriesKind,
    StandingChargeInterval,
)

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.octopus.energy/v1"
DEFAULT_TIMEOUT = 30.0


@dataclass
class Page:
    """One page of a paginated time series."""

    count: int
    next: str | None
    previous: str | None
    results: list


def parse_datetime(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not isinstance(value, str):
        raise DecodingError(f"{field_name} is not a timestamp: {value!r}")
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise DecodingError(f"Could not parse {field_name}: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _optional_datetime(value: Any, field_name: str) -> datetime | None:
    if value is None:
        return None
    return parse_datetime(value, field_name)


def _value(item: dict, *names: str) -> float:
    for name in names:
        if name in item and item[name] is not None:
            try:
                return float(item[name])
            except (TypeError, ValueError) as e:
                raise DecodingError(f"{name} is not numeric: {item[name]!r}") from e
    raise DecodingError(f"Record has none of {', '.join(names)}: {item!r}")


def parse_rate(item: dict, tariff_code: str) -> RateInterval:
    """Parse a unit-rate result."""
    return RateInterval(
        tariff_code=tariff_code,
        valid_from=parse_datetime(item.get("valid_from"), "valid_from"),
        valid_to=_optional_datetime(item.get("valid_to"), "valid_to"),
        value_excl_tax=_value(item, "value_exc_vat", "value_excl_tax"),
        value_incl_tax=_value(item, "value_inc_vat", "value_incl_tax"),
    )


def parse_standing_charge(item: dict, tariff_code: str) -> StandingChargeInterval:
    """Parse a standing-charge result (valid_to may be null)."""
    return StandingChargeInterval(
        tariff_code=tariff_code,
        valid_from=parse_datetime(item.get("valid_from"), "valid_from"),
        valid_to=_optional_datetime(item.get("valid_to"), "valid_to"),
        value_excl_tax=_value(item, "value_exc_vat", "value_excl_tax"),
        value_incl_tax=_value(item, "value_inc_vat", "value_incl_tax"),
    )


def parse_consumption(item: dict) -> ConsumptionInterval:
    """Parse a meter consumption result."""
    return ConsumptionInterval(
        interval_start=parse_datetime(item.get("interval_start"), "interval_start"),
        interval_end=parse_datetime(item.get("interval_end"), "interval_end"),
        consumption_kwh=_value(item, "consumption"),
    )


def parse_page(data: Any, parse_record: Callable[[dict], Any]) -> Page:
    """Decode a paginated response body, parsing each result."""
    if not isinstance(data, dict) or not isinstance(data.get("results"), list):
        raise DecodingError(f"Unexpected page body: {str(data)[:200]}")

    results = [parse_record(item) for item in data["results"]]
    count = data.get("count")
    if count is None:
        count = len(results)

    return Page(
        count=int(count),
        next=data.get("next"),
        previous=data.get("previous"),
        results=results,
    )


def product_code_from_tariff(tariff_code: str) -> str:
    """Extract the product code from a tariff code.

    E-1R-AGILE-24-10-01-H -> AGILE-24-10-01
    """
    parts = tariff_code.split("-")
    if len(parts) < 4:
        raise ValueError(f"Unrecognised tariff code: {tariff_code}")
    return "-".join(parts[2:-1])


def _fuel_path(tariff_code: str) -> str:
    return "gas-tariffs" if tariff_code.upper().startswith("G-") else "electricity-tariffs"


class OctopusClient:
    """Thin httpx wrapper that maps transport and status failures onto OctopusAPIError."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = API_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def __enter__(self) -> "OctopusClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def build_url(self, path: str) -> str:
        url = path if "://" in path else f"{self.base_url}/{path.lstrip('/')}"
        if not url.startswith(("http://", "https://")):
            raise InvalidURLError(f"Invalid URL: {url}")
        return url

    def get_json(self, path: str, params: dict | None = None, authenticated: bool = False) -> Any:
        """GET a JSON document.

        Raises:
            InvalidAPIKeyError: authenticated request without an API key
            InvalidURLError, NetworkError, InvalidResponseError, DecodingError
        """
        url = self.build_url(path)
        auth = None
        if authenticated:
            if not self.api_key:
                raise InvalidAPIKeyError("An Octopus API key is required for meter consumption")
            auth = (self.api_key, "")

        logger.debug("GET %s %s", url, params or "")
        try:
            response = self._client.get(url, params=params, auth=auth)
        except httpx.InvalidURL as e:
            raise InvalidURLError(f"Invalid URL {url}: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error fetching {url}: {e}") from e

        if response.status_code != 200:
            raise InvalidResponseError(response.status_code, url)

        try:
            return response.json()
        except ValueError as e:
            raise DecodingError(f"Invalid JSON from {url}") from e


class TariffRateSource:
    """Unit rates for one tariff."""

    kind = SeriesKind.RATES

    def __init__(
        self,
        client: OctopusClient,
        tariff_code: str,
        product_code: str | None = None,
        rate_type: str = "standard-unit-rates",
    ):
        self.client = client
        self.tariff_code = tariff_code
        self.product_code = product_code or product_code_from_tariff(tariff_code)
        self.path = f"products/{self.product_code}/{_fuel_path(tariff_code)}/{tariff_code}/{rate_type}/"
        # Agile publishes one price per half hour; other tariffs change rarely
        self.cadence_seconds = HALF_HOUR_SECONDS if "AGILE" in self.product_code.upper() else None

    @property
    def key(self) -> str:
        return self.tariff_code

    def fetch_page(self, page: int) -> Page:
        data = self.client.get_json(self.path, params={"page": page})
        return parse_page(data, lambda item: parse_rate(item, self.tariff_code))


class StandingChargeSource:
    """Daily standing charges for one tariff."""

    kind = SeriesKind.STANDING_CHARGES
    cadence_seconds = None

    def __init__(self, client: OctopusClient, tariff_code: str, product_code: str | None = None):
        self.client = client
        self.tariff_code = tariff_code
        self.product_code = product_code or product_code_from_tariff(tariff_code)
        self.path = f"products/{self.product_code}/{_fuel_path(tariff_code)}/{tariff_code}/standing-charges/"

    @property
    def key(self) -> str:
        return self.tariff_code

    def fetch_page(self, page: int) -> Page:
        data = self.client.get_json(self.path, params={"page": page})
        return parse_page(data, lambda item: parse_standing_charge(item, self.tariff_code))


class ConsumptionSource:
    """Half-hourly consumption for one electricity meter (authenticated)."""

    kind = SeriesKind.CONSUMPTION
    tariff_code = None
    cadence_seconds = HALF_HOUR_SECONDS

    def __init__(self, client: OctopusClient, mpan: str, serial_number: str, page_size: int | None = None):
        if not mpan or not serial_number:
            raise InvalidAPIKeyError("Both MPAN and meter serial number are required for consumption")
        self.client = client
        self.mpan = mpan
        self.serial_number = serial_number
        self.page_size = page_size
        self.path = f"electricity-meter-points/{mpan}/meters/{serial_number}/consumption/"

    @property
    def key(self) -> str:
        return f"{self.mpan}/{self.serial_number}"

    def fetch_page(self, page: int) -> Page:
        params: dict[str, Any] = {"page": page}
        if self.page_size:
            params["page_size"] = self.page_size
        data = self.client.get_json(self.path, params=params, authenticated=True)
        return parse_page(data, parse_consumption)
