"""Configuration loading: YAML file + CLI overrides, validated with pydantic."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

API_KEY_ENV = "DEEPSEEK_API_KEY"

CHAT_MODEL = "deepseek-chat"
REASONER_MODEL = "deepseek-reasoner"


class ClientConfig(BaseModel):
    base_url: str = "https://api.deepseek.com"
    api_key: str = ""
    model: str = CHAT_MODEL
    chat_endpoint: str = Field(default="/chat/completions", pattern="^/")
    timeout: float = Field(default=180.0, ge=1.0)
    connect_timeout: float = Field(default=30.0, gt=0.0)
    http2: bool = True


def load_config(
    config_path: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ClientConfig:
    """Load config from YAML file, then apply CLI overrides and the environment."""
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

    if cli_overrides:
        _deep_merge(data, cli_overrides)

    if not data.get("api_key"):
        data["api_key"] = os.environ.get(API_KEY_ENV, "")

    return ClientConfig(**data)


def _deep_merge(base: dict, override: dict) -> None:
    """Merge override dict into base dict recursively (in-place)."""
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
