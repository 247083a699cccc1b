"""Embedding generation with a bounded in-process cache.

Two backends are supported and exactly one is chosen when the service first
warms up:

- ``LocalEmbeddingBackend``: a sentence-transformers feature-extraction model
  loaded into this process (mean pooled, normalized).
- ``RemoteEmbeddingBackend``: an OpenAI-compatible ``/embeddings`` endpoint,
  used when both an endpoint URL and an API key are configured.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import requests

if TYPE_CHECKING:
    from config import Config

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """The embedding backend failed to produce a vector."""


class EmbeddingTimeoutError(EmbeddingError):
    """The embedding backend did not answer within the timeout."""


class EmbeddingBackend(Protocol):
    name: str
    model_name: str

    def load(self) -> None: ...

    def embed(self, text: str) -> list[float]: ...


# =============================================================================
# Backends
# =============================================================================


class LocalEmbeddingBackend:
    """sentence-transformers model running in-process."""

    name = "local"

    def __init__(self, model_name: str, cache_dir: str | None = None) -> None:
        self.model_name = model_name
        self.cache_dir = cache_dir
        self._model: Any = None

    def load(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ImportError(
                "The 'sentence-transformers' package is required for local embeddings. "
                "Install it with: pip install sentence-transformers"
            ) from exc

        logger.info("Loading embedding model %s", self.model_name)
        self._model = SentenceTransformer(self.model_name, cache_folder=self.cache_dir)
        logger.info("Embedding model ready")

    def embed(self, text: str) -> list[float]:
        if self._model is None:
            raise EmbeddingError("Embedding model not loaded")
        vector = self._model.encode(text, normalize_embeddings=True)
        return vector.tolist()


class RemoteEmbeddingBackend:
    """OpenAI-compatible embedding endpoint."""

    name = "remote"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model_name: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model_name = model_name
        self.timeout = timeout
        self._session = session or requests.Session()

    def load(self) -> None:
        logger.info("Using OpenAI-compatible API for embeddings (%s)", self.api_url)

    def embed(self, text: str) -> list[float]:
        try:
            response = self._session.post(
                f"{self.api_url}/embeddings",
                json={"input": text, "model": self.model_name},
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise EmbeddingTimeoutError(f"Timeout after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise EmbeddingError(f"API embedding failed: {exc}") from exc

        if not response.ok:
            raise EmbeddingError(
                f"API embedding failed: {response.status_code} {response.reason}"
            )
        try:
            return response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EmbeddingError("API embedding failed: malformed response") from exc


def select_backend(config: Config) -> EmbeddingBackend:
    """Remote when endpoint and key are configured, local model otherwise."""
    if config.use_remote_embeddings:
        return RemoteEmbeddingBackend(
            config.embedding_api_url,  # type: ignore[arg-type]
            config.embedding_api_key,  # type: ignore[arg-type]
            config.embedding_model,
            timeout=config.embedding_timeout,
        )
    return LocalEmbeddingBackend(
        config.embedding_model, cache_dir=str(config.storage_path.parent / ".cache")
    )


# =============================================================================
# Service
# =============================================================================


class EmbeddingService:
    """Embeds text through one backend, with memoized warm-up and a FIFO cache.

    Concurrent callers of ``warmup`` (and of ``embed`` before warm-up has
    finished) all await the same initialization task. The cache is keyed by
    exact text and scoped to the current model name; when it is full the
    oldest inserted entry is evicted.
    """

    def __init__(self, config: Config, backend: EmbeddingBackend | None = None) -> None:
        self.dim = config.embedding_dim
        self.timeout = config.embedding_timeout
        self.max_cache_size = config.embedding_cache_size
        self.model_name = config.embedding_model
        self.is_warmed_up = False
        self._config = config
        self._backend = backend
        self._init_task: asyncio.Future[None] | None = None
        self._cache: dict[str, tuple[float, ...]] = {}
        self._cached_model = self.model_name

    @property
    def backend_name(self) -> str | None:
        return self._backend.name if self._backend is not None else None

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def warmup(self) -> None:
        """Initialize the backend once; safe to call redundantly."""
        if self.is_warmed_up:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        try:
            if self._backend is None:
                self._backend = select_backend(self._config)
            while True:
                model_name = self.model_name
                self._backend.model_name = model_name
                await asyncio.to_thread(self._backend.load)
                if model_name == self.model_name:
                    break
                logger.info("Embedding model changed during warm-up, loading %s", self.model_name)
            self.is_warmed_up = True
        except Exception as e:
            self._init_task = None
            logger.error("Failed to initialize embedding model: %s", e)
            raise

    def change_model(self, model_name: str) -> None:
        """Switch model; invalidates the cache and re-arms warm-up."""
        if model_name == self.model_name:
            return
        self.model_name = model_name
        self.is_warmed_up = False
        # A running warm-up notices the new name and loads it itself.
        if self._init_task is not None and self._init_task.done():
            self._init_task = None
        self.clear_cache()

    def clear_cache(self) -> None:
        self._cache.clear()

    async def embed(self, text: str) -> list[float]:
        if self._cached_model != self.model_name:
            self.clear_cache()
            self._cached_model = self.model_name

        cached = self._cache.get(text)
        if cached is not None:
            return list(cached)

        if not self.is_warmed_up:
            await self.warmup()
        model_name = self.model_name

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._backend.embed, text),  # type: ignore[union-attr]
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeoutError(f"Timeout after {self.timeout}s") from exc

        vector = self._prepare(raw)
        if model_name != self.model_name:
            return list(vector)
        if len(self._cache) >= self.max_cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[text] = vector
        return list(vector)

    async def embed_with_timeout(self, text: str) -> list[float]:
        """``embed`` bounded as a whole, including any wait on warm-up."""
        try:
            return await asyncio.wait_for(self.embed(text), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeoutError(f"Timeout after {self.timeout}s") from exc

    def _prepare(self, raw: Any) -> tuple[float, ...]:
        embedding = np.asarray(raw, dtype=np.float64)
        if embedding.ndim != 1 or len(embedding) != self.dim:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self.dim}, got {embedding.shape}"
            )
        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm
        return tuple(embedding.tolist())
