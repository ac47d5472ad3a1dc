from __future__ import annotations

from typing import Any, Protocol

import requests

from .errors import ImageDownloadError, PassCancelled
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries
from .retry_policies import is_retryable_http_exception
from .throttle import ServiceGate

_CHUNK_SIZE = 64 * 1024


class _HTTPSession(Protocol):
    def get(self, url: str, **kwargs: Any) -> Any: ...


class ImageFetcher:
    """
    Downloads attached images into memory for label detection.

    Images larger than `max_bytes` are rejected without reading the rest of the body.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        max_bytes: int = 5 * 1024 * 1024,
        session: _HTTPSession | None = None,
        gate: ServiceGate | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        if max_bytes < 1:
            raise ValueError("max_bytes must be >= 1")
        self._timeout = float(timeout_seconds)
        self._max_bytes = int(max_bytes)
        self._session: _HTTPSession = session or requests.Session()
        self._gate = gate or ServiceGate("image_host")
        self._retry = retry or RetryConfig()
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn

    def _download_once(self, url: str) -> bytes:
        with self._gate.slot():
            response = self._session.get(url, stream=True, timeout=self._timeout)
            try:
                response.raise_for_status()

                declared = response.headers.get("Content-Length") if response.headers else None
                if declared is not None and str(declared).isdigit() and int(declared) > self._max_bytes:
                    raise ImageDownloadError(
                        f"Image at {url} is {declared} bytes; limit is {self._max_bytes}"
                    )

                buf = bytearray()
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    if not chunk:
                        continue
                    buf.extend(chunk)
                    if len(buf) > self._max_bytes:
                        raise ImageDownloadError(
                            f"Image at {url} exceeds {self._max_bytes} bytes"
                        )
                return bytes(buf)
            finally:
                close = getattr(response, "close", None)
                if callable(close):
                    close()

    def fetch(self, url: str) -> bytes:
        u = (url or "").strip()
        if not u:
            raise ImageDownloadError("image url must be non-empty")

        try:
            data = call_with_retries(
                lambda: self._download_once(u),
                cfg=self._retry,
                is_retryable=is_retryable_http_exception,
                operation="image.download",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
                context_id=u,
            )
        except (ImageDownloadError, PassCancelled):
            raise
        except requests.RequestException as e:
            raise ImageDownloadError(f"Image download failed for {u}: {e}") from e
        except Exception as e:
            raise ImageDownloadError(f"Unexpected error downloading {u}: {e}") from e

        if not data:
            raise ImageDownloadError(f"Image at {u} is empty")
        return data
