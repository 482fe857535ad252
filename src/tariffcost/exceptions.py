"""Exceptions for tariffcost."""

from datetime import datetime


class TariffCostError(Exception):
    """Base exception for tariffcost errors."""
    pass


class OctopusAPIError(TariffCostError):
    """Base exception for remote time-series source errors."""
    pass


class InvalidURLError(OctopusAPIError):
    """Raised when a page URL cannot be built or parsed."""
    pass


class InvalidResponseError(OctopusAPIError):
    """Raised when the API answers with a non-success status."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} from {url}")


class NetworkError(OctopusAPIError):
    """Raised on transport failures (connection, timeout, cancellation)."""
    pass


class DecodingError(OctopusAPIError):
    """Raised when a response body or record cannot be decoded."""
    pass


class InvalidAPIKeyError(OctopusAPIError):
    """Raised when credentials needed for an authenticated endpoint are missing."""
    pass


class CalculationError(TariffCostError):
    """Base exception for cost calculation errors."""
    pass


class NoDataAvailableError(CalculationError):
    """Raised when no consumption intersects the requested period."""

    def __init__(self, start: datetime, end: datetime):
        self.start = start
        self.end = end
        super().__init__(f"No consumption data between {start.isoformat()} and {end.isoformat()}")


class InsufficientDataError(CalculationError):
    """Raised when available consumption does not cover the requested period."""

    def __init__(
        self,
        available: tuple[datetime, datetime],
        requested: tuple[datetime, datetime],
    ):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Consumption data covers {available[0].isoformat()} to {available[1].isoformat()}, "
            f"requested {requested[0].isoformat()} to {requested[1].isoformat()}"
        )


class InvalidDateRangeError(CalculationError):
    """Raised when a period ends at or before its start."""

    def __init__(self, start: datetime, end: datetime):
        self.start = start
        self.end = end
        super().__init__(f"Invalid date range: {start.isoformat()} to {end.isoformat()}")
