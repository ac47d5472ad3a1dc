from __future__ import annotations

import time
from typing import Any, Mapping

from .errors import LabelServiceError

_RETRYABLE_LABEL_CODES = frozenset({"throttled", "internal", "unavailable"})


def _extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "statusCode", "status", "http_status"):
        val = getattr(exc, attr, None)
        if val is None:
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue

    response = getattr(exc, "response", None)
    val = getattr(response, "status_code", None)
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def _response_headers(exc: BaseException) -> Mapping[str, Any]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return {}
    if isinstance(headers, Mapping):
        return headers
    try:
        return dict(headers)
    except (TypeError, ValueError):
        return {}


def _header(headers: Mapping[str, Any], name: str) -> Any:
    for key in (name, name.lower(), name.title()):
        val = headers.get(key)
        if val is not None:
            return val
    return None


def _parse_retry_after(headers: Mapping[str, Any]) -> float | None:
    val = _header(headers, "retry-after")
    if val is None:
        return None
    try:
        return float(str(val).strip())
    except ValueError:
        return None


def _parse_rate_limit_reset(headers: Mapping[str, Any], *, now: float | None = None) -> float | None:
    # Twitter reports the window reset as an epoch timestamp.
    val = _header(headers, "x-rate-limit-reset")
    if val is None:
        return None
    try:
        reset_at = float(str(val).strip())
    except ValueError:
        return None
    current = time.time() if now is None else now
    return max(0.0, reset_at - current)


def _looks_like_timeout_or_connection(exc: BaseException) -> bool:
    name = type(exc).__name__.casefold()
    mod = type(exc).__module__.casefold()

    if "timeout" in name or "timeout" in mod:
        return True
    if "connection" in name or "connect" in name:
        return True
    return False


def is_retryable_twitter_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Twitter API retry policy:
    - HTTP 429 (waits for the rate-limit window reset when reported)
    - HTTP 5xx
    - network errors; tweepy wraps those as a bare TweepyException
    """
    from tweepy.errors import HTTPException, TooManyRequests, TweepyException, TwitterServerError

    if isinstance(exc, TooManyRequests):
        headers = _response_headers(exc)
        wait = _parse_retry_after(headers)
        if wait is None:
            wait = _parse_rate_limit_reset(headers)
        return True, wait, "rate_limited"

    if isinstance(exc, TwitterServerError):
        code = _extract_status_code(exc)
        return True, None, f"http_{code}" if code is not None else "http_5xx"

    if isinstance(exc, HTTPException):
        code = _extract_status_code(exc)
        return False, None, f"http_{code}" if code is not None else "http_status"

    if isinstance(exc, TweepyException):
        if "failed to send request" in str(exc).casefold():
            return True, None, "network_error"
        return False, None, None

    if isinstance(exc, (ConnectionError, TimeoutError)) or _looks_like_timeout_or_connection(exc):
        return True, None, "network_error"

    return False, None, None


def is_retryable_http_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Plain HTTP (requests) retry policy:
    - connection errors and timeouts
    - HTTP 408, 429 and 5xx
    """
    import requests

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True, None, "network_error"

    if isinstance(exc, requests.HTTPError):
        code = _extract_status_code(exc)
        if code in (408, 429) or (isinstance(code, int) and code >= 500):
            return True, _parse_retry_after(_response_headers(exc)), f"http_{code}"
        return False, None, f"http_{code}" if code is not None else "http_status"

    if isinstance(exc, (ConnectionError, TimeoutError)) or _looks_like_timeout_or_connection(exc):
        return True, None, "network_error"

    return False, None, None


def is_retryable_label_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Label-detection retry policy, applied to errors already mapped by a detector:
    throttling, internal service errors and transport failures are retried.
    """
    if isinstance(exc, LabelServiceError):
        return exc.code in _RETRYABLE_LABEL_CODES, None, exc.code
    return False, None, None

