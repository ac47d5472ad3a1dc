from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Literal, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .config_schema import VisionConfig
from .errors import ImageDownloadError, LabelServiceError, PassCancelled
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries
from .retry_policies import is_retryable_label_exception
from .throttle import ServiceGate


@dataclass(frozen=True)
class DetectedLabel:
    name: str
    confidence: float


class LabelDetector(Protocol):
    def detect(self, image: bytes, min_confidence: float) -> Sequence[DetectedLabel]: ...


class ImageSource(Protocol):
    def fetch(self, url: str) -> bytes: ...


LabelStatus = Literal["labelled", "no_labels", "failed"]


@dataclass(frozen=True)
class LabelOutcome:
    """
    Result of one enrichment attempt.

    "no_labels" is a successful call that found nothing and persists as "";
    "failed" persists as NULL so it stays distinguishable.
    """

    status: LabelStatus
    labels: str | None = None
    reason: str | None = None

    @property
    def attachment_labels(self) -> str | None:
        if self.status == "labelled":
            return self.labels
        if self.status == "no_labels":
            return ""
        return None


def join_labels(labels: Sequence[DetectedLabel]) -> str:
    names: list[str] = []
    seen: set[str] = set()
    for label in labels:
        name = (label.name or "").strip()
        if name and name not in seen:
            seen.add(name)
            names.append(name)
    return " ".join(names)


# ---------------------------------------------------------------------------
# Rekognition
# ---------------------------------------------------------------------------

_REKOGNITION_CODES: dict[str, str] = {
    "InvalidImageFormatException": "invalid_image",
    "ImageTooLargeException": "image_too_large",
    "AccessDeniedException": "access_denied",
    "ThrottlingException": "throttled",
    "ProvisionedThroughputExceededException": "quota_exceeded",
    "LimitExceededException": "quota_exceeded",
    "InternalServerError": "internal",
    "InvalidParameterException": "invalid_parameter",
    "InvalidS3ObjectException": "invalid_parameter",
}


def rekognition_error_code(exc: BaseException) -> str:
    from botocore.exceptions import (
        BotoCoreError,
        ClientError,
        ConnectionError as BotoConnectionError,
        HTTPClientError,
        NoCredentialsError,
    )

    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code") or "")
        return _REKOGNITION_CODES.get(code, "unknown")
    if isinstance(exc, NoCredentialsError):
        return "access_denied"
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return "unavailable"
    if isinstance(exc, BotoCoreError):
        return "unknown"
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return "unavailable"
    return "unknown"


class RekognitionLabelDetector:
    """AWS Rekognition `detect_labels` over raw image bytes."""

    def __init__(self, *, vision: VisionConfig, client: Any | None = None) -> None:
        if client is None:
            import boto3
            from botocore.config import Config

            client = boto3.client(
                "rekognition",
                region_name=vision.aws_region,
                config=Config(
                    connect_timeout=vision.label_timeout_seconds,
                    read_timeout=vision.label_timeout_seconds,
                    retries={"total_max_attempts": 1},
                ),
            )
        self._client = client

    def detect(self, image: bytes, min_confidence: float) -> list[DetectedLabel]:
        try:
            response = self._client.detect_labels(
                Image={"Bytes": image},
                MinConfidence=float(min_confidence),
            )
        except Exception as e:
            code = rekognition_error_code(e)
            raise LabelServiceError(code, f"Rekognition detect_labels failed: {e}") from e

        out: list[DetectedLabel] = []
        for item in response.get("Labels") or []:
            name = (item.get("Name") or "").strip()
            try:
                confidence = float(item.get("Confidence") or 0.0)
            except (TypeError, ValueError):
                confidence = 0.0
            if name and confidence >= float(min_confidence):
                out.append(DetectedLabel(name=name, confidence=confidence))
        return out


# ---------------------------------------------------------------------------
# OpenAI vision
# ---------------------------------------------------------------------------


class _LabelItem(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    confidence: float = Field(ge=0.0, le=100.0)


class _LabelList(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    labels: list[_LabelItem]


_LABELS_SCHEMA_NAME = "image_labels"
_LABELS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "labels": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 100},
                },
                "required": ["name", "confidence"],
            },
        }
    },
    "required": ["labels"],
}

_VISION_INSTRUCTIONS = """\
You detect content labels in a single image.

Return a JSON object that matches the provided schema EXACTLY.
- Each label is a short English noun or noun phrase in Title Case (e.g. "Person", "Laptop", "Outdoors").
- confidence is 0-100.
- Return an empty list if nothing in the image can be identified.
"""


def sniff_image_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"GIF87a") or data.startswith(b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def openai_error_code(exc: BaseException) -> str:
    import openai

    if isinstance(exc, openai.RateLimitError):
        if (getattr(exc, "code", None) or "") == "insufficient_quota":
            return "quota_exceeded"
        return "throttled"
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return "access_denied"
    if isinstance(exc, openai.BadRequestError):
        return "invalid_image"
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return "unavailable"
    if isinstance(exc, openai.APIStatusError):
        status = getattr(exc, "status_code", None)
        if isinstance(status, int) and status >= 500:
            return "internal"
        if status == 413:
            return "image_too_large"
    return "unknown"


def _extract_output_text(response: Any) -> str:
    direct = (getattr(response, "output_text", None) or "").strip()
    if direct:
        return direct

    output = getattr(response, "output", None) or []
    for item in output:
        content = getattr(item, "content", None) or []
        for part in content:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text.strip():
                return text.strip()

    raise LabelServiceError("unknown", "OpenAI response did not include output text")


class OpenAILabelDetector:
    """
    Label detection through the OpenAI Responses API with a vision-capable model.

    Structured output keeps the reply machine-readable; the confidence threshold
    is applied locally.
    """

    def __init__(self, api_key: str, *, vision: VisionConfig, client: Any | None = None) -> None:
        key = (api_key or "").strip()
        if not key and client is None:
            raise ValueError("api_key must be a non-empty string")
        if client is None:
            from openai import OpenAI

            client = OpenAI(api_key=key, timeout=vision.label_timeout_seconds, max_retries=0)

        self._cfg = vision
        self._client = client

    def detect(self, image: bytes, min_confidence: float) -> list[DetectedLabel]:
        data_url = f"data:{sniff_image_mime(image)};base64," + base64.b64encode(image).decode("ascii")

        try:
            response = self._client.responses.create(
                model=self._cfg.openai_model,
                instructions=_VISION_INSTRUCTIONS,
                input=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "input_text",
                                "text": f"List labels with confidence >= {float(min_confidence):g}.",
                            },
                            {"type": "input_image", "image_url": data_url},
                        ],
                    }
                ],
                text={
                    "format": {
                        "type": "json_schema",
                        "name": _LABELS_SCHEMA_NAME,
                        "strict": True,
                        "schema": _LABELS_JSON_SCHEMA,
                    }
                },
                max_output_tokens=self._cfg.max_output_tokens,
            )
        except Exception as e:
            raise LabelServiceError(openai_error_code(e), f"OpenAI call failed: {e}") from e

        raw = _extract_output_text(response)
        try:
            parsed = _LabelList.model_validate_json(raw)
        except Exception as e:
            raise LabelServiceError("unknown", f"Failed to parse label output: {e}") from e

        return [
            DetectedLabel(name=item.name.strip(), confidence=float(item.confidence))
            for item in parsed.labels
            if item.name.strip() and item.confidence >= float(min_confidence)
        ]


def build_label_detector(
    vision: VisionConfig, *, openai_api_key: str | None = None
) -> LabelDetector:
    if vision.provider == "openai":
        return OpenAILabelDetector(openai_api_key or "", vision=vision)
    return RekognitionLabelDetector(vision=vision)


# ---------------------------------------------------------------------------
# Enricher
# ---------------------------------------------------------------------------


class ImageLabelEnricher:
    """
    Download an attached photo and request content labels for it.

    Failures never propagate: they come back as a "failed" outcome so the
    record is still persisted without labels. Only cancellation escapes.
    """

    def __init__(
        self,
        fetcher: ImageSource,
        detector: LabelDetector,
        *,
        gate: ServiceGate | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._detector = detector
        self._gate = gate or ServiceGate("label_service")
        self._retry = retry or RetryConfig()
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn

    def _detect(self, image: bytes, min_confidence: float) -> Sequence[DetectedLabel]:
        with self._gate.slot():
            try:
                return self._detector.detect(image, min_confidence)
            except (LabelServiceError, PassCancelled):
                raise
            except Exception as e:
                raise LabelServiceError("unknown", f"Label detector raised: {e}") from e

    def enrich(self, image_url: str, min_confidence: float = 60.0) -> LabelOutcome:
        if not (0.0 <= float(min_confidence) <= 100.0):
            raise ValueError("min_confidence must be between 0 and 100")

        try:
            image = self._fetcher.fetch(image_url)
        except PassCancelled:
            raise
        except ImageDownloadError as e:
            return LabelOutcome(status="failed", reason=f"image_download_failed: {e}")

        try:
            labels = call_with_retries(
                lambda: self._detect(image, float(min_confidence)),
                cfg=self._retry,
                is_retryable=is_retryable_label_exception,
                operation="vision.detect_labels",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
                context_id=image_url,
            )
        except LabelServiceError as e:
            return LabelOutcome(status="failed", reason=e.code)

        joined = join_labels(labels)
        if not joined:
            return LabelOutcome(status="no_labels")
        return LabelOutcome(status="labelled", labels=joined)
