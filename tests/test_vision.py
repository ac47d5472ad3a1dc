from __future__ import annotations

import json
import unittest
from types import SimpleNamespace
from typing import Any, Sequence

import httpx
import openai
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from social_ingest.config_schema import VisionConfig
from social_ingest.errors import ImageDownloadError, LabelServiceError
from social_ingest.retry import RetryConfig
from social_ingest.vision import (
    DetectedLabel,
    ImageLabelEnricher,
    LabelOutcome,
    OpenAILabelDetector,
    RekognitionLabelDetector,
    join_labels,
    openai_error_code,
    rekognition_error_code,
    sniff_image_mime,
)

_NO_WAIT = RetryConfig(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_ratio=0.0)
_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class _FakeRekognition:
    def __init__(self, response: dict[str, Any] | None = None, error: BaseException | None = None) -> None:
        self.response = response or {"Labels": []}
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def detect_labels(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


class _FakeResponses:
    def __init__(self, output_text: str = "", error: BaseException | None = None) -> None:
        self.output_text = output_text
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(output_text=self.output_text, output=[])


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "test"}}, "DetectLabels")


def _openai_status_error(cls: type[openai.APIStatusError], status: int, body: Any = None) -> openai.APIStatusError:
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    response = httpx.Response(status, request=request)
    return cls("test", response=response, body=body)


class TestHelpers(unittest.TestCase):
    def test_join_labels_dedupes_and_keeps_order(self) -> None:
        labels = [DetectedLabel("Computer", 99), DetectedLabel("Desk", 80), DetectedLabel("Computer", 70)]
        self.assertEqual(join_labels(labels), "Computer Desk")
        self.assertEqual(join_labels([]), "")

    def test_outcome_maps_to_stored_value(self) -> None:
        self.assertEqual(LabelOutcome(status="labelled", labels="A B").attachment_labels, "A B")
        self.assertEqual(LabelOutcome(status="no_labels").attachment_labels, "")
        self.assertIsNone(LabelOutcome(status="failed", reason="throttled").attachment_labels)

    def test_sniff_image_mime(self) -> None:
        self.assertEqual(sniff_image_mime(_PNG), "image/png")
        self.assertEqual(sniff_image_mime(b"GIF89a..."), "image/gif")
        self.assertEqual(sniff_image_mime(b"\xff\xd8\xff"), "image/jpeg")


class TestRekognitionLabelDetector(unittest.TestCase):
    def test_detect_filters_by_confidence(self) -> None:
        client = _FakeRekognition(
            {
                "Labels": [
                    {"Name": "Computer", "Confidence": 97.5},
                    {"Name": "Desk", "Confidence": 58.0},
                    {"Name": "", "Confidence": 99.0},
                ]
            }
        )
        detector = RekognitionLabelDetector(vision=VisionConfig(), client=client)

        labels = detector.detect(_PNG, 60.0)

        self.assertEqual([l.name for l in labels], ["Computer"])
        self.assertEqual(client.calls[0]["Image"], {"Bytes": _PNG})
        self.assertEqual(client.calls[0]["MinConfidence"], 60.0)

    def test_errors_are_mapped(self) -> None:
        detector = RekognitionLabelDetector(
            vision=VisionConfig(), client=_FakeRekognition(error=_client_error("ThrottlingException"))
        )
        with self.assertRaises(LabelServiceError) as ctx:
            detector.detect(_PNG, 60.0)
        self.assertEqual(ctx.exception.code, "throttled")

    def test_error_code_table(self) -> None:
        self.assertEqual(rekognition_error_code(_client_error("InvalidImageFormatException")), "invalid_image")
        self.assertEqual(rekognition_error_code(_client_error("ImageTooLargeException")), "image_too_large")
        self.assertEqual(rekognition_error_code(_client_error("LimitExceededException")), "quota_exceeded")
        self.assertEqual(rekognition_error_code(_client_error("SomethingNew")), "unknown")
        self.assertEqual(rekognition_error_code(NoCredentialsError()), "access_denied")
        self.assertEqual(
            rekognition_error_code(EndpointConnectionError(endpoint_url="https://rekognition")),
            "unavailable",
        )


class TestOpenAILabelDetector(unittest.TestCase):
    def _detector(self, responses: _FakeResponses) -> OpenAILabelDetector:
        client = SimpleNamespace(responses=responses)
        return OpenAILabelDetector("", vision=VisionConfig(provider="openai"), client=client)

    def test_detect_parses_structured_output(self) -> None:
        payload = {"labels": [{"name": "Laptop", "confidence": 91}, {"name": "Plant", "confidence": 40}]}
        responses = _FakeResponses(output_text=json.dumps(payload))

        labels = self._detector(responses).detect(_PNG, 60.0)

        self.assertEqual(labels, [DetectedLabel("Laptop", 91.0)])
        call = responses.calls[0]
        self.assertEqual(call["text"]["format"]["type"], "json_schema")
        content = call["input"][0]["content"]
        self.assertTrue(content[1]["image_url"].startswith("data:image/png;base64,"))

    def test_malformed_output_is_unknown_error(self) -> None:
        with self.assertRaises(LabelServiceError) as ctx:
            self._detector(_FakeResponses(output_text="not json")).detect(_PNG, 60.0)
        self.assertEqual(ctx.exception.code, "unknown")

    def test_api_errors_are_mapped(self) -> None:
        err = _openai_status_error(openai.RateLimitError, 429, {"code": "rate_limit_exceeded"})
        with self.assertRaises(LabelServiceError) as ctx:
            self._detector(_FakeResponses(error=err)).detect(_PNG, 60.0)
        self.assertEqual(ctx.exception.code, "throttled")

    def test_error_code_table(self) -> None:
        quota = _openai_status_error(openai.RateLimitError, 429, {"code": "insufficient_quota"})
        self.assertEqual(openai_error_code(quota), "quota_exceeded")
        self.assertEqual(
            openai_error_code(_openai_status_error(openai.AuthenticationError, 401)), "access_denied"
        )
        self.assertEqual(
            openai_error_code(_openai_status_error(openai.BadRequestError, 400)), "invalid_image"
        )
        self.assertEqual(
            openai_error_code(_openai_status_error(openai.InternalServerError, 500)), "internal"
        )
        self.assertEqual(openai_error_code(ValueError("x")), "unknown")

    def test_requires_key_without_client(self) -> None:
        with self.assertRaises(ValueError):
            OpenAILabelDetector(" ", vision=VisionConfig(provider="openai"))


class _FakeFetcher:
    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error
        self.urls: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return _PNG


class _ScriptedDetector:
    def __init__(self, script: list[Any]) -> None:
        self._script = list(script)
        self.calls = 0

    def detect(self, image: bytes, min_confidence: float) -> Sequence[DetectedLabel]:
        self.calls += 1
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class TestImageLabelEnricher(unittest.TestCase):
    def _enricher(self, detector: _ScriptedDetector, fetcher: _FakeFetcher | None = None) -> ImageLabelEnricher:
        return ImageLabelEnricher(fetcher or _FakeFetcher(), detector, retry=_NO_WAIT, sleep_fn=lambda s: None)

    def test_labelled(self) -> None:
        detector = _ScriptedDetector([[DetectedLabel("Computer", 97.5), DetectedLabel("Electronics", 93.1)]])
        outcome = self._enricher(detector).enrich("https://pbs/1.jpg")
        self.assertEqual(outcome.status, "labelled")
        self.assertEqual(outcome.attachment_labels, "Computer Electronics")

    def test_no_labels(self) -> None:
        outcome = self._enricher(_ScriptedDetector([[]])).enrich("https://pbs/1.jpg")
        self.assertEqual(outcome.status, "no_labels")
        self.assertEqual(outcome.attachment_labels, "")

    def test_download_failure_is_failed_outcome(self) -> None:
        detector = _ScriptedDetector([])
        fetcher = _FakeFetcher(error=ImageDownloadError("404"))
        outcome = self._enricher(detector, fetcher).enrich("https://pbs/missing.jpg")

        self.assertEqual(outcome.status, "failed")
        self.assertTrue((outcome.reason or "").startswith("image_download_failed"))
        self.assertEqual(detector.calls, 0)

    def test_throttling_is_retried(self) -> None:
        detector = _ScriptedDetector(
            [LabelServiceError("throttled", "slow down"), [DetectedLabel("Desk", 80.0)]]
        )
        outcome = self._enricher(detector).enrich("https://pbs/1.jpg")
        self.assertEqual(outcome.status, "labelled")
        self.assertEqual(detector.calls, 2)

    def test_permanent_error_is_not_retried(self) -> None:
        detector = _ScriptedDetector([LabelServiceError("invalid_image", "bad bytes")])
        outcome = self._enricher(detector).enrich("https://pbs/1.jpg")
        self.assertEqual((outcome.status, outcome.reason), ("failed", "invalid_image"))
        self.assertIsNone(outcome.attachment_labels)
        self.assertEqual(detector.calls, 1)

    def test_unexpected_detector_error_is_unknown(self) -> None:
        detector = _ScriptedDetector([RuntimeError("kaboom")])
        outcome = self._enricher(detector).enrich("https://pbs/1.jpg")
        self.assertEqual((outcome.status, outcome.reason), ("failed", "unknown"))

    def test_rejects_out_of_range_confidence(self) -> None:
        with self.assertRaises(ValueError):
            self._enricher(_ScriptedDetector([])).enrich("https://pbs/1.jpg", min_confidence=120.0)


if __name__ == "__main__":
    unittest.main()
