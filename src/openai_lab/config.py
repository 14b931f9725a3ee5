"""Configuration for OpenAI Lab.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./openai_lab.yaml``
  3. ``~/.config/openai-lab/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from openai_lab.types import ModelPrice

_logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"


class ConfigError(Exception):
    """Raised when a config file exists but cannot be parsed."""


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class GenerationParams:
    """Default generation parameters sent with every chat completion."""

    temperature: float | None = 0.7
    max_tokens: int | None = 2048
    top_p: float | None = 1
    frequency_penalty: float | None = 0
    presence_penalty: float | None = 0

    def to_payload(self) -> dict[str, Any]:
        """Wire-level parameters, skipping unset values."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass
class EndpointProfile:
    """A named OpenAI-compatible endpoint.

    The transport client keeps a read-only copy of this; swap it with
    ``AsyncAPIClient.update_profile`` between exchanges.
    """

    name: str = "default"
    url: str = DEFAULT_URL
    api_key: str = ""
    model: str = ""
    parameters: GenerationParams = field(default_factory=GenerationParams)
    timeout: float = 60

    @property
    def cache_key(self) -> str:
        """Endpoint plus a credential prefix, never the full key."""
        return f"{self.url}_{self.api_key[:10]}"


@dataclass
class LabConfig:
    """Top-level config for OpenAI Lab."""

    # Active profile name
    profile: str = "default"

    # Named profiles
    profiles: dict[str, EndpointProfile] = field(
        default_factory=lambda: {"default": EndpointProfile()}
    )

    # User price overrides, per 1K tokens
    prices: dict[str, ModelPrice] = field(default_factory=dict)

    model_cache_ttl: float = 300
    max_retries: int = 3
    retry_delay: float = 1.0

    # Bulk testing
    bulk_concurrency: int = 5
    bulk_timeout: float = 30

    @property
    def active_profile(self) -> EndpointProfile:
        return self.profiles.get(self.profile, EndpointProfile())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./openai_lab.yaml"),
    Path.home() / ".config" / "openai-lab" / "config.yaml",
]


def _parse_params(raw: dict[str, Any] | None) -> GenerationParams:
    if not raw:
        return GenerationParams()
    known = {f.name for f in fields(GenerationParams)}
    unknown = sorted(set(raw) - known)
    if unknown:
        _logger.warning("Ignoring unknown generation parameters: %s", ", ".join(unknown))
    return GenerationParams(**{k: v for k, v in raw.items() if k in known})


def _parse_profile(name: str, raw: dict[str, Any]) -> EndpointProfile:
    api_key = raw.get("api_key") or os.environ.get("OPENAI_API_KEY", "")
    return EndpointProfile(
        name=name,
        url=raw.get("url", DEFAULT_URL),
        api_key=api_key,
        model=raw.get("model", ""),
        parameters=_parse_params(raw.get("parameters")),
        timeout=raw.get("timeout", 60),
    )


def _parse_prices(raw: dict[str, Any] | None) -> dict[str, ModelPrice]:
    prices: dict[str, ModelPrice] = {}
    for model_id, praw in (raw or {}).items():
        prices[model_id] = ModelPrice(
            input=float(praw.get("input", 0)),
            output=float(praw.get("output", 0)),
            currency=praw.get("currency", "USD"),
        )
    return prices


def load_config(path: str | Path | None = None) -> LabConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    LabConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return _with_env_key(LabConfig())
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return _with_env_key(LabConfig())

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    profiles: dict[str, EndpointProfile] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(name, praw or {})

    if not profiles:
        profiles["default"] = _parse_profile("default", {})

    return LabConfig(
        profile=raw.get("profile", next(iter(profiles))),
        profiles=profiles,
        prices=_parse_prices(raw.get("prices")),
        model_cache_ttl=raw.get("model_cache_ttl", 300),
        max_retries=raw.get("max_retries", 3),
        retry_delay=raw.get("retry_delay", 1.0),
        bulk_concurrency=raw.get("bulk_concurrency", 5),
        bulk_timeout=raw.get("bulk_timeout", 30),
    )


def _with_env_key(config: LabConfig) -> LabConfig:
    env_key = os.environ.get("OPENAI_API_KEY", "")
    if env_key:
        for profile in config.profiles.values():
            if not profile.api_key:
                profile.api_key = env_key
    return config
