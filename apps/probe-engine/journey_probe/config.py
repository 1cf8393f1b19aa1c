"""Probe configuration models and file loading."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import PayloadLayout, Scenario

ENV_PLATFORM_URL = "PROBE_PLATFORM_URL"
ENV_PLATFORM_TOKEN = "PROBE_PLATFORM_TOKEN"


class PlatformConfig(BaseModel):
    """Where stimuli are posted."""

    base_url: str = "http://127.0.0.1:9200"
    messages_path: str = "/messages"
    token: Optional[str] = None
    request_timeout: float = Field(default=10.0, gt=0)

    @property
    def messages_url(self) -> str:
        path = self.messages_path if self.messages_path.startswith("/") else f"/{self.messages_path}"
        return f"{self.base_url.rstrip('/')}{path}"


class WebhookConfig(BaseModel):
    """Bind address of the inbound webhook listener."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=0, le=65535)
    path: str = "/webhook"
    ack: dict[str, Any] = Field(default_factory=lambda: {"status": "ok"})


class RetryConfig(BaseModel):
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)


class ThresholdConfig(BaseModel):
    """Alerting thresholds evaluated by the health reporter."""

    latency_threshold_ms: float = Field(default=5000.0, gt=0)
    consecutive_failures: int = Field(default=3, ge=1)
    failure_rate: float = Field(default=0.5, gt=0, le=1)
    parse_failures: int = Field(default=5, ge=1)
    min_samples: int = Field(default=5, ge=1)
    window_size: int = Field(default=100, ge=1)


class ProbeConfig(BaseModel):
    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    layout: PayloadLayout = Field(default_factory=PayloadLayout)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    timeout: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    concurrency_limit: int = Field(default=4, ge=1)
    schedule_interval: float = Field(default=60.0, gt=0)
    sweep_interval: float = Field(default=0.1, gt=0)
    alert_sink_url: Optional[str] = None
    scenarios: list[Path] = Field(default_factory=list)

    @property
    def latency_threshold_ms(self) -> float:
        return self.thresholds.latency_threshold_ms


def _read_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"File {path} does not exist")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"File {path} could not be parsed: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"File {path} must contain a mapping")
    return payload


def load_config(path: Optional[Path]) -> ProbeConfig:
    """Load a probe config file; environment variables override the platform section."""

    payload: dict[str, Any] = _read_mapping(path) if path is not None else {}

    # Latency threshold is accepted at the top level as well as under thresholds.
    if "latency_threshold_ms" in payload:
        payload.setdefault("thresholds", {})["latency_threshold_ms"] = payload.pop("latency_threshold_ms")

    platform = payload.setdefault("platform", {})
    if os.environ.get(ENV_PLATFORM_URL):
        platform["base_url"] = os.environ[ENV_PLATFORM_URL]
    if os.environ.get(ENV_PLATFORM_TOKEN):
        platform["token"] = os.environ[ENV_PLATFORM_TOKEN]

    try:
        config = ProbeConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid probe configuration: {exc}") from exc

    if path is not None:
        base_dir = path.resolve().parent
        config = config.model_copy(
            update={"scenarios": [p if p.is_absolute() else base_dir / p for p in config.scenarios]}
        )
    return config


def load_scenario(path: Path, config: Optional[ProbeConfig] = None) -> Scenario:
    """Load and validate a scenario YAML file, filling step defaults from ``config``."""

    data = _read_mapping(path)
    try:
        scenario = Scenario.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Scenario file {path} is invalid: {exc}") from exc
    config = config or ProbeConfig()
    return scenario.with_defaults(timeout=config.timeout, max_retries=config.max_retries)
