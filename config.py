"""Configuration for code-memory-mcp.

All settings come from environment variables with sensible defaults. Values
are read when a ``Config`` is constructed, so tests can build their own
instance with explicit overrides.
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MEMORY_TYPES = frozenset(
    {
        "preference",
        "learned-pattern",
        "project-config",
        "architecture",
        "error-solution",
        "conversation",
    }
)
PROVIDERS = frozenset({"openai-chat", "gemini", "session"})


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _env_path(name: str) -> Path | None:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def resolve_secret(value: str | None) -> str | None:
    """Resolve ``file://`` and ``env://`` secret references.

    Plain values are returned unchanged. A missing file or environment
    variable raises ``ValueError``.
    """
    if not value:
        return None

    if value.startswith("file://"):
        path = Path(value.removeprefix("file://")).expanduser()
        if not path.exists():
            raise ValueError(f"Secret file not found: {path}")
        if sys.platform != "win32":
            mode = stat.S_IMODE(path.stat().st_mode)
            if mode > 0o600:
                logger.warning(
                    "Secret file %s has permissive permissions (%o). Recommend chmod 600.", path, mode
                )
        return path.read_text().strip()

    if value.startswith("env://"):
        name = value.removeprefix("env://")
        resolved = os.environ.get(name)
        if not resolved:
            raise ValueError(f"Environment variable not found: {name}")
        return resolved

    return value


def get_google_api_key() -> str | None:
    """Get the Gemini API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return resolve_secret(key)
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    return None


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    storage_path: Path = field(
        default_factory=lambda: Path(
            _env("MEMORY_STORAGE_PATH", str(Path.home() / ".code-memory" / "lancedb"))
        ).expanduser()
    )
    table_name: str = "memories"
    log_path: Path | None = field(default_factory=lambda: _env_path("MEMORY_LOG_PATH"))

    # Embeddings
    embedding_model: str = field(
        default_factory=lambda: _env("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
    )
    embedding_dim: int = field(default_factory=lambda: _env_int("EMBEDDING_DIM", 384))
    embedding_api_url: str | None = field(default_factory=lambda: _env("EMBEDDING_API_URL") or None)
    embedding_api_key: str | None = field(
        default_factory=lambda: resolve_secret(_env("EMBEDDING_API_KEY") or None)
    )
    embedding_timeout: float = field(default_factory=lambda: _env_float("EMBEDDING_TIMEOUT", 30.0))
    embedding_cache_size: int = 100

    # Retrieval
    similarity_threshold: float = field(
        default_factory=lambda: _env_float("SIMILARITY_THRESHOLD", 0.6)
    )
    max_memories: int = field(default_factory=lambda: _env_int("MAX_MEMORIES", 10))
    max_profile_items: int = field(default_factory=lambda: _env_int("MAX_PROFILE_ITEMS", 5))
    dedup_threshold: float = 0.90

    # Auto-capture
    auto_capture_enabled: bool = field(
        default_factory=lambda: _env_bool("AUTO_CAPTURE_ENABLED", True)
    )
    auto_capture_threshold: int = field(
        default_factory=lambda: _env_int("AUTO_CAPTURE_THRESHOLD", 10)
    )
    auto_capture_time_threshold: float = field(
        default_factory=lambda: _env_float("AUTO_CAPTURE_TIME_THRESHOLD", 0)
    )  # minutes, 0 disables
    auto_capture_max_memories: int = field(
        default_factory=lambda: _env_int("AUTO_CAPTURE_MAX_MEMORIES", 10)
    )

    # Extraction provider
    memory_provider: str = field(default_factory=lambda: _env("MEMORY_PROVIDER", "session"))
    memory_model: str | None = field(default_factory=lambda: _env("MEMORY_MODEL") or None)
    memory_api_url: str | None = field(default_factory=lambda: _env("MEMORY_API_URL") or None)
    memory_api_key: str | None = field(
        default_factory=lambda: resolve_secret(_env("MEMORY_API_KEY") or None)
    )
    memory_temperature: float = 0.3
    max_iterations: int = field(default_factory=lambda: _env_int("MEMORY_MAX_ITERATIONS", 5))
    iteration_timeout: float = field(
        default_factory=lambda: _env_float("MEMORY_ITERATION_TIMEOUT", 30.0)
    )
    gemini_model: str = field(default_factory=lambda: _env("GEMINI_MODEL", "gemini-3-flash-preview"))

    def __post_init__(self) -> None:
        if self.memory_provider not in PROVIDERS:
            raise ValueError(
                f"Invalid memory provider '{self.memory_provider}'. Valid: {sorted(PROVIDERS)}"
            )
        if self.embedding_dim <= 0:
            raise ValueError(f"embedding_dim must be positive, got {self.embedding_dim}")

    @property
    def use_remote_embeddings(self) -> bool:
        return bool(self.embedding_api_url and self.embedding_api_key)

    @property
    def use_tool_calling(self) -> bool:
        return (
            self.memory_provider == "openai-chat"
            and bool(self.memory_model and self.memory_api_url and self.memory_api_key)
        )

    @property
    def time_threshold_seconds(self) -> float:
        return self.auto_capture_time_threshold * 60
