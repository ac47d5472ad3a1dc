from __future__ import annotations

import unittest
from typing import Any, Iterator

import requests

from social_ingest.errors import ImageDownloadError
from social_ingest.image_fetch import ImageFetcher
from social_ingest.retry import RetryConfig

_NO_WAIT = RetryConfig(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_ratio=0.0)


class _FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        chunks: list[bytes] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self._chunks = chunks if chunks is not None else [b"abc", b"def"]
        self.closed = False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)  # type: ignore[arg-type]

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        yield from self._chunks

    def close(self) -> None:
        self.closed = True


class _FakeSession:
    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def get(self, url: str, **kwargs: Any) -> Any:
        self.calls.append((url, kwargs))
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class TestImageFetcher(unittest.TestCase):
    def test_downloads_streamed_body(self) -> None:
        resp = _FakeResponse()
        session = _FakeSession([resp])
        fetcher = ImageFetcher(session=session, timeout_seconds=7, retry=_NO_WAIT)

        self.assertEqual(fetcher.fetch("https://pbs/1.jpg"), b"abcdef")
        url, kwargs = session.calls[0]
        self.assertEqual(url, "https://pbs/1.jpg")
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["timeout"], 7.0)
        self.assertTrue(resp.closed)

    def test_retries_server_errors(self) -> None:
        session = _FakeSession([_FakeResponse(503), requests.ConnectionError("reset"), _FakeResponse()])
        fetcher = ImageFetcher(session=session, retry=_NO_WAIT)

        self.assertEqual(fetcher.fetch("https://pbs/1.jpg"), b"abcdef")
        self.assertEqual(len(session.calls), 3)

    def test_not_found_is_not_retried(self) -> None:
        session = _FakeSession([_FakeResponse(404), _FakeResponse()])
        fetcher = ImageFetcher(session=session, retry=_NO_WAIT)

        with self.assertRaises(ImageDownloadError):
            fetcher.fetch("https://pbs/1.jpg")
        self.assertEqual(len(session.calls), 1)

    def test_rejects_declared_oversize(self) -> None:
        session = _FakeSession([_FakeResponse(headers={"Content-Length": "100"})])
        fetcher = ImageFetcher(session=session, max_bytes=10, retry=_NO_WAIT)

        with self.assertRaises(ImageDownloadError):
            fetcher.fetch("https://pbs/1.jpg")

    def test_rejects_streamed_oversize(self) -> None:
        session = _FakeSession([_FakeResponse(chunks=[b"x" * 8, b"x" * 8])])
        fetcher = ImageFetcher(session=session, max_bytes=10, retry=_NO_WAIT)

        with self.assertRaises(ImageDownloadError):
            fetcher.fetch("https://pbs/1.jpg")
        self.assertEqual(len(session.calls), 1)

    def test_empty_body_and_empty_url(self) -> None:
        fetcher = ImageFetcher(session=_FakeSession([_FakeResponse(chunks=[])]), retry=_NO_WAIT)
        with self.assertRaises(ImageDownloadError):
            fetcher.fetch("https://pbs/1.jpg")
        with self.assertRaises(ImageDownloadError):
            fetcher.fetch("  ")


if __name__ == "__main__":
    unittest.main()
