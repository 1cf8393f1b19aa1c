"""Simulator configuration loading."""

from __future__ import annotations

import json
from pathlib import Path

import yaml

from .models import SimulatorConfig


def load_config(path: Path) -> SimulatorConfig:
    """Load and validate a simulator YAML or JSON file."""

    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"Simulator config {path} must contain a mapping")
    return SimulatorConfig.model_validate(data)
