"""Model catalog: ``/models`` entry transformation and the TTL cache.

Providers report very little about their models, so type, context length
and capabilities are inferred from substrings of the model id.  Prices are
read from whichever of the known nested price fields a provider uses.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlparse

from openai_lab.types import ModelCapability, ModelRecord

_logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 5 * 60  # seconds

_MULTIMODAL_MARKERS = ("vision", "gpt-4", "claude-3")
_EMBEDDING_MARKERS = ("embedding", "ada")
_AUDIO_MARKERS = ("whisper", "audio")

# First match wins, so more specific ids come first
_CONTEXT_LENGTHS: list[tuple[tuple[str, ...], int]] = [
    (("gpt-4-turbo", "gpt-4-1106"), 128000),
    (("gpt-4",), 8192),
    (("gpt-3.5-turbo-16k",), 16384),
    (("claude-3",), 200000),
]
_DEFAULT_CONTEXT_LENGTH = 4096

_KNOWN_PROVIDERS: list[tuple[str, str]] = [
    ("openai.com", "OpenAI"),
    ("anthropic.com", "Anthropic"),
    ("cohere.com", "Cohere"),
    ("huggingface.co", "Hugging Face"),
    ("together.ai", "Together AI"),
    ("replicate.com", "Replicate"),
    ("localhost", "Local"),
    ("127.0.0.1", "Local"),
]

_MiB = 1024 * 1024

# (container, key) lookups, in priority order
_INPUT_PRICE_FIELDS = [
    ("pricing", "input"),
    ("price", "input"),
    (None, "input_price"),
    (None, "inputPrice"),
    ("pricing", "prompt"),
    ("pricing", "input_tokens"),
    ("pricing", "prompt_tokens"),
]
_OUTPUT_PRICE_FIELDS = [
    ("pricing", "output"),
    ("price", "output"),
    (None, "output_price"),
    (None, "outputPrice"),
    ("pricing", "completion"),
    ("pricing", "output_tokens"),
    ("pricing", "completion_tokens"),
]


def _has_any(model_id: str, markers: tuple[str, ...]) -> bool:
    return any(m in model_id for m in markers)


def infer_model_type(model_id: str) -> str:
    if _has_any(model_id, _MULTIMODAL_MARKERS):
        return "multimodal"
    if _has_any(model_id, _EMBEDDING_MARKERS):
        return "embedding"
    return "text"


def infer_context_length(model_id: str) -> int:
    for markers, length in _CONTEXT_LENGTHS:
        if _has_any(model_id, markers):
            return length
    return _DEFAULT_CONTEXT_LENGTH


def infer_capabilities(model_id: str) -> list[ModelCapability]:
    caps = [ModelCapability(type="text")]
    if _has_any(model_id, _MULTIMODAL_MARKERS):
        caps.append(ModelCapability("vision", "Can analyze and understand images"))
        caps.append(ModelCapability("image", "Supports image input"))
    if _has_any(model_id, ("gpt-4", "claude")):
        caps.append(ModelCapability(
            "function_calling", "Supports function calling and tool use",
        ))
    if _has_any(model_id, _AUDIO_MARKERS):
        caps.append(ModelCapability("audio", "Can process audio input"))
    return caps


def infer_max_file_size(model_id: str) -> int:
    if _has_any(model_id, ("gpt-4", "claude-3")):
        return 20 * _MiB
    return 10 * _MiB


def infer_supported_formats(model_id: str) -> list[str]:
    formats = ["txt", "md", "json"]
    if _has_any(model_id, _MULTIMODAL_MARKERS):
        formats += ["png", "jpg", "jpeg", "gif", "webp", "pdf", "docx"]
    if _has_any(model_id, _AUDIO_MARKERS):
        formats += ["mp3", "wav", "m4a", "flac"]
    return formats


def _lookup_price(raw: dict[str, Any], paths: list[tuple[str | None, str]]) -> float | None:
    for container, key in paths:
        source = raw if container is None else raw.get(container)
        if not isinstance(source, dict):
            continue
        value = source.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def extract_input_price(raw: dict[str, Any]) -> float | None:
    return _lookup_price(raw, _INPUT_PRICE_FIELDS)


def extract_output_price(raw: dict[str, Any]) -> float | None:
    return _lookup_price(raw, _OUTPUT_PRICE_FIELDS)


def extract_provider(endpoint: str) -> str:
    """Human provider name guessed from the endpoint URL."""
    for marker, name in _KNOWN_PROVIDERS:
        if marker in endpoint:
            return name
    hostname = (urlparse(endpoint).hostname or "").lower()
    if not hostname:
        return "Unknown"
    parts = hostname.split(".")
    if len(parts) >= 2:
        return parts[-2].capitalize()
    return hostname


def to_model_record(raw: dict[str, Any], endpoint: str) -> ModelRecord:
    """Transform one provider ``/models`` entry into a :class:`ModelRecord`."""
    model_id = str(raw.get("id", ""))
    return ModelRecord(
        id=model_id,
        name=model_id,
        type=infer_model_type(model_id),
        context_length=infer_context_length(model_id),
        capabilities=infer_capabilities(model_id),
        description=raw.get("description") or "",
        provider=extract_provider(endpoint),
        input_price=extract_input_price(raw),
        output_price=extract_output_price(raw),
        max_file_size=infer_max_file_size(model_id),
        supported_formats=infer_supported_formats(model_id),
    )


def parse_model_list(data: Any, endpoint: str) -> list[ModelRecord]:
    """Parse a ``GET /models`` body (``{"data": [...]}``)."""
    entries = data.get("data") if isinstance(data, dict) else None
    if not entries:
        return []
    return [to_model_record(e, endpoint) for e in entries if isinstance(e, dict)]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class _CacheEntry:
    models: list[ModelRecord]
    timestamp: float


class ModelCache:
    """Per-profile model listing cache with a freshness TTL.

    Stale entries are never served.  ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> list[ModelRecord] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self.ttl:
            return None
        return list(entry.models)

    def put(self, key: str, models: list[ModelRecord]) -> None:
        self._entries[key] = _CacheEntry(list(models), self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def clean_expired(self) -> int:
        """Drop stale entries and return how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.timestamp >= self.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            _logger.debug("Removed %d expired model cache entries", len(expired))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "entries": [
                {"key": key, "timestamp": e.timestamp, "model_count": len(e.models)}
                for key, e in self._entries.items()
            ],
        }
