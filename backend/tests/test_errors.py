import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import (
    SYSTEMIC_ERRORS,
    ProviderError,
    ProviderKeyMissing,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
    ValidationError,
    to_provider_error,
)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ReadTimeout("read timed out"), ProviderTimeout),
        (httpx.ConnectError("refused"), ProviderUnavailable),
        (RuntimeError("CUQPS_HAS_EXCEEDED_THE_LIMIT"), ProviderRateLimited),
        (RuntimeError("Gaode API key is missing"), ProviderKeyMissing),
        (RuntimeError("request timeout"), ProviderTimeout),
        (OSError("getaddrinfo ENOTFOUND restapi.amap.com"), ProviderUnavailable),
        (ValueError("something else"), ProviderError),
    ],
)
def test_to_provider_error(exc, expected):
    error = to_provider_error(exc)
    assert type(error) is expected
    assert error.code == expected.code


@pytest.mark.parametrize(
    "message",
    [
        "unexpected delimiter in response",
        "unlimited retries are not allowed",
        "client disconnected while reading",
        "network payload could not be decoded",
        "keyword rejected by upstream",
    ],
)
def test_unrelated_messages_stay_generic(message):
    error = to_provider_error(RuntimeError(message))
    assert type(error) is ProviderError
    assert error.code == "provider_error"
    assert not isinstance(error, SYSTEMIC_ERRORS)


def test_provider_errors_pass_through():
    original = ProviderRateLimited("slow down")
    assert to_provider_error(original) is original


def test_status_and_payload():
    assert ValidationError("bad").status == 400
    assert ProviderKeyMissing("x").status == 503
    assert ProviderRateLimited("x").status == 429
    assert ProviderTimeout("x").status == 504
    assert ProviderError("x").to_dict() == {"error": "provider_error", "message": "x"}


def test_systemic_errors():
    assert issubclass(ProviderTimeout, SYSTEMIC_ERRORS)
    assert not issubclass(ProviderRateLimited, SYSTEMIC_ERRORS)
    assert not issubclass(ProviderError, SYSTEMIC_ERRORS)
