"""Exception taxonomy shared by the gateway, the background jobs and the API."""


class RainbowcastError(Exception):
    """Base class for every error raised on purpose by rainbowcast."""

    code = "internal_error"


class ConfigurationError(RainbowcastError):
    """Credentials or setup are missing. Permanent: never retried."""

    code = "configuration_error"


class ApiError(RainbowcastError):
    """An external API call failed or returned something unusable."""

    code = "external_api_error"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientApiError(ApiError):
    """Timeout, transport failure or 5xx. Safe to retry with backoff."""

    code = "external_api_unavailable"


class RateLimitError(TransientApiError):
    code = "rate_limited"


class ValidationError(RainbowcastError):
    """Bad caller input (e.g. a delivery time in the past)."""

    code = "validation_failed"


class NotFoundError(RainbowcastError):
    """A referenced sighting or user no longer exists."""

    code = "resource_not_found"
