from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Standard v1.1 search returns at most 100 statuses per request.
SEARCH_PAGE_SIZE_MAX = 100


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0)]
NonNegativeFloat = Annotated[float, Field(ge=0)]


class TwitterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    consumer_key_env: str = "TWITTER_CONSUMER_KEY"
    consumer_secret_env: str = "TWITTER_CONSUMER_SECRET"
    access_token_env: str = "TWITTER_ACCESS_TOKEN"
    access_secret_env: str = "TWITTER_ACCESS_SECRET"

    language: str = "en"
    timeline_count: PositiveInt = Field(10, le=200)
    timeout_seconds: PositiveInt = 30

    @field_validator(
        "consumer_key_env", "consumer_secret_env", "access_token_env", "access_secret_env"
    )
    @classmethod
    def _env_names_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("language")
    @classmethod
    def _language_must_be_set(cls, v: str) -> str:
        lang = (v or "").strip().lower()
        if not lang:
            raise ValueError("must be a non-empty language code")
        return lang


class SearchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    term: str = "technology"
    page_size: PositiveInt = Field(100, le=SEARCH_PAGE_SIZE_MAX)
    result_ordering: Literal["popular", "mixed"] = "mixed"
    min_age_days: NonNegativeInt | None = 2  # None or 0 disables the age cutoff

    @field_validator("term")
    @classmethod
    def _term_must_be_set(cls, v: str) -> str:
        term = (v or "").strip()
        if not term:
            raise ValueError("must be a non-empty search term")
        return term


class FiltersConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Candidates with favorites + retweets <= engagement_floor are dropped.
    engagement_floor: NonNegativeInt = 1


class NormalizerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    strip_tag_entities: bool = False
    keep_hyphens: bool = False
    punctuation_requires_space: bool = True


class VisionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    provider: Literal["rekognition", "openai"] = "rekognition"
    min_confidence: float = Field(60.0, ge=0.0, le=100.0)

    aws_region: str | None = None
    openai_model: str = "gpt-4.1-mini"
    openai_api_key_env: str = "OPENAI_API_KEY"
    max_output_tokens: PositiveInt = 400

    image_timeout_seconds: PositiveFloat = 15.0
    label_timeout_seconds: PositiveFloat = 30.0
    # Rekognition accepts at most 5 MB of raw image bytes.
    max_image_bytes: PositiveInt = 5 * 1024 * 1024

    @field_validator("openai_api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class ServiceLimits(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_concurrent: PositiveInt = 2
    min_interval_seconds: NonNegativeFloat = 0.0


class ConcurrencyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    workers: PositiveInt = 4
    search: ServiceLimits = Field(default_factory=lambda: ServiceLimits(max_concurrent=1))
    timeline: ServiceLimits = Field(
        default_factory=lambda: ServiceLimits(max_concurrent=2, min_interval_seconds=1.0)
    )
    image_host: ServiceLimits = Field(default_factory=lambda: ServiceLimits(max_concurrent=4))
    label_service: ServiceLimits = Field(default_factory=lambda: ServiceLimits(max_concurrent=2))


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: PositiveInt = 4
    base_delay_seconds: NonNegativeFloat = 0.5
    max_delay_seconds: NonNegativeFloat = 20.0

    @model_validator(mode="after")
    def _max_must_cover_base(self) -> "RetrySettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    twitter: TwitterConfig = Field(default_factory=TwitterConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    filters: FiltersConfig = Field(default_factory=FiltersConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
