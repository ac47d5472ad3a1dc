from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RuntimeSecrets:
    consumer_key: str
    consumer_secret: str
    access_token: str
    access_secret: str
    openai_api_key: str | None = None


def load_config(path: str | Path) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    Raises ConfigError with a readable validation message on failure.
    """
    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def resolve_runtime_secrets(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> RuntimeSecrets:
    """
    Validate that required environment variables are present and non-empty.

    Twitter OAuth keys are always required; the OpenAI key only when the OpenAI
    label detector is enabled. AWS credentials are left to the boto3 default chain.
    """
    env = os.environ if environ is None else environ

    tw = config.twitter
    required = [
        tw.consumer_key_env,
        tw.consumer_secret_env,
        tw.access_token_env,
        tw.access_secret_env,
    ]
    use_openai = config.vision.enabled and config.vision.provider == "openai"
    if use_openai:
        required.append(config.vision.openai_api_key_env)

    missing = [name for name in required if not (env.get(name) or "").strip()]
    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"Missing required environment variables: {joined}")

    return RuntimeSecrets(
        consumer_key=env[tw.consumer_key_env].strip(),
        consumer_secret=env[tw.consumer_secret_env].strip(),
        access_token=env[tw.access_token_env].strip(),
        access_secret=env[tw.access_secret_env].strip(),
        openai_api_key=env[config.vision.openai_api_key_env].strip() if use_openai else None,
    )


def config_sha256(config: AppConfig) -> str:
    """
    Compute a stable SHA-256 hash of the config values for pass records.
    """
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
