"""Error taxonomy shared by the provider, the services and the HTTP layer.

Every error carries a stable machine-readable ``code`` and an HTTP-like
``status``. Upstream payloads and tracebacks are logged, never put in the
message.
"""

import httpx


class AppError(Exception):
    status = 500
    code = "internal_error"

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(AppError):
    status = 400
    code = "validation_error"


class ProviderError(AppError):
    """Any non-success upstream response not covered by a subclass."""

    status = 502
    code = "provider_error"


class ProviderKeyMissing(ProviderError):
    status = 503
    code = "provider_key_missing"


class ProviderRateLimited(ProviderError):
    status = 429
    code = "provider_rate_limited"


class ProviderUnavailable(ProviderError):
    status = 503
    code = "provider_unavailable"


class ProviderTimeout(ProviderError):
    status = 504
    code = "provider_timeout"


class NotFoundError(AppError):
    status = 404
    code = "not_found"


# Failures that abort a whole refresh run instead of a single keyword
SYSTEMIC_ERRORS = (ProviderKeyMissing, ProviderTimeout, ProviderUnavailable)

# Lower-cased fragments of untyped error messages
_RATE_LIMIT_MARKERS = ("exceeded_the_limit", "cuqps")
_KEY_MARKERS = ("api key is missing", "api key is not configured", "invalid_user_key")
_TIMEOUT_MARKERS = ("timed out", "timeout")
_UNAVAILABLE_MARKERS = (
    "fetch failed",
    "enotfound",
    "econnrefused",
    "connection refused",
    "network is unreachable",
)


def _matches(lowered: str, markers: tuple[str, ...]) -> bool:
    return any(marker in lowered for marker in markers)


def to_provider_error(exc: BaseException) -> ProviderError:
    """Translate an arbitrary failure from a provider call into the taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeout("Map provider request timed out, please retry later.")
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailable("Cannot reach the map provider, check the network and retry.")

    message = str(exc)
    lowered = message.lower()
    if _matches(lowered, _RATE_LIMIT_MARKERS):
        return ProviderRateLimited("Map provider quota exceeded, please retry later.")
    if _matches(lowered, _KEY_MARKERS):
        return ProviderKeyMissing("Map provider API key is not configured.")
    if _matches(lowered, _TIMEOUT_MARKERS):
        return ProviderTimeout("Map provider request timed out, please retry later.")
    if _matches(lowered, _UNAVAILABLE_MARKERS):
        return ProviderUnavailable("Cannot reach the map provider, check the network and retry.")
    return ProviderError(f"Map provider call failed: {message}")
