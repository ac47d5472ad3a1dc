from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError
from .pipeline import IngestionPipeline, PipelineContext, PassResult, build_context
from .text_normalizer import TextNormalizer, normalize_text

__all__ = [
    "AppConfig",
    "ConfigError",
    "IngestionPipeline",
    "PassResult",
    "PipelineContext",
    "TextNormalizer",
    "build_context",
    "config_sha256",
    "load_config",
    "normalize_text",
    "resolve_runtime_secrets",
]
