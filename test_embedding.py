"""
Tests for the embedding service: warm-up, FIFO cache, timeouts, backends.

Run with: pytest test_embedding.py -v
"""

import asyncio
import time

import numpy as np
import pytest
import requests

from conftest import DIM, FakeBackend, FakeHttp, FakeResponse, make_config
from embedding import (
    EmbeddingError,
    EmbeddingService,
    EmbeddingTimeoutError,
    LocalEmbeddingBackend,
    RemoteEmbeddingBackend,
    select_backend,
)


class FlakyBackend(FakeBackend):
    """Fails to load the first time."""

    def load(self):
        self.loads += 1
        if self.loads == 1:
            raise RuntimeError("model download failed")


class SlowBackend(FakeBackend):
    def embed(self, text):
        time.sleep(0.3)
        return super().embed(text)


class SlowLoadBackend(FakeBackend):
    """Records which model each load actually brought up."""

    def __init__(self):
        super().__init__()
        self.loaded = []

    def load(self):
        time.sleep(0.2)
        super().load()
        self.loaded.append(self.model_name)


class WrongDimBackend(FakeBackend):
    def embed(self, text):
        return [0.1] * (self.dim - 1)


class TestWarmup:
    """Warm-up runs once no matter how many callers wait on it."""

    async def test_concurrent_warmup_loads_once(self, embedder, backend):
        await asyncio.gather(*(embedder.warmup() for _ in range(5)))
        assert backend.loads == 1
        assert embedder.is_warmed_up

    async def test_redundant_warmup_is_noop(self, embedder, backend):
        await embedder.warmup()
        await embedder.warmup()
        assert backend.loads == 1

    async def test_failed_warmup_can_be_retried(self, config):
        backend = FlakyBackend()
        service = EmbeddingService(config, backend)

        with pytest.raises(RuntimeError):
            await service.warmup()
        assert not service.is_warmed_up

        await service.warmup()
        assert service.is_warmed_up
        assert backend.loads == 2

    async def test_embed_triggers_warmup(self, embedder, backend):
        await embedder.embed("hello")
        assert embedder.is_warmed_up
        assert backend.loads == 1


class TestCache:
    """Exact-text cache, bounded, evicting the oldest insertion."""

    async def test_cache_hit_skips_backend(self, embedder, backend):
        first = await embedder.embed("use ruff for linting")
        second = await embedder.embed("use ruff for linting")
        assert first == second
        assert backend.calls == ["use ruff for linting"]

    async def test_cached_vector_is_a_copy(self, embedder):
        first = await embedder.embed("text")
        first[0] = 42.0
        second = await embedder.embed("text")
        assert second[0] != 42.0

    async def test_fifo_eviction_ignores_recent_use(self, tmp_path, backend):
        service = EmbeddingService(make_config(tmp_path, embedding_cache_size=2), backend)

        await service.embed("a")
        await service.embed("b")
        await service.embed("a")  # hit; does not refresh "a"
        await service.embed("c")  # evicts "a", the oldest insertion
        await service.embed("b")  # still cached
        await service.embed("a")  # miss

        assert backend.calls == ["a", "b", "c", "a"]
        assert service.cache_size == 2

    async def test_change_model_clears_cache_and_rearms(self, embedder, backend):
        await embedder.embed("text")
        assert embedder.cache_size == 1

        embedder.change_model("other-model")
        assert embedder.cache_size == 0
        assert not embedder.is_warmed_up

        await embedder.embed("text")
        assert backend.calls == ["text", "text"]
        assert backend.model_name == "other-model"
        assert backend.loads == 2

    async def test_change_model_during_warmup_loads_new_model(self, config):
        backend = SlowLoadBackend()
        service = EmbeddingService(config, backend)

        warming = asyncio.ensure_future(service.warmup())
        await asyncio.sleep(0.05)
        service.change_model("new-model")
        await service.embed("x")
        await warming

        assert backend.loaded == ["fake-model", "new-model"]
        assert backend.model_name == "new-model"
        assert service.is_warmed_up
        assert service.cache_size == 1

    async def test_change_to_same_model_keeps_cache(self, embedder):
        await embedder.embed("text")
        embedder.change_model(embedder.model_name)
        assert embedder.cache_size == 1


class TestVectors:
    async def test_vectors_are_normalized(self, embedder):
        vector = await embedder.embed("normalize me")
        assert len(vector) == DIM
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    async def test_dimension_mismatch_rejected(self, config):
        service = EmbeddingService(config, WrongDimBackend())
        with pytest.raises(EmbeddingError, match="dimension"):
            await service.embed("text")
        assert service.cache_size == 0


class TestTimeouts:
    async def test_slow_backend_times_out(self, tmp_path):
        service = EmbeddingService(make_config(tmp_path, embedding_timeout=0.05), SlowBackend())
        await service.warmup()
        with pytest.raises(EmbeddingTimeoutError):
            await service.embed("slow")

    async def test_embed_with_timeout_wraps_whole_call(self, tmp_path):
        service = EmbeddingService(make_config(tmp_path, embedding_timeout=0.05), SlowBackend())
        with pytest.raises(EmbeddingTimeoutError):
            await service.embed_with_timeout("slow")

    def test_timeout_is_an_embedding_error(self):
        assert issubclass(EmbeddingTimeoutError, EmbeddingError)


class TestRemoteBackend:
    """OpenAI-compatible /embeddings endpoint."""

    def make(self, responses):
        http = FakeHttp(responses)
        return RemoteEmbeddingBackend("http://embed.test/v1/", "secret", "text-embed", 2.0, http), http

    def test_posts_openai_payload(self):
        backend, http = self.make([FakeResponse({"data": [{"embedding": [0.5, 0.5]}]})])

        assert backend.embed("hello") == [0.5, 0.5]
        request = http.requests[0]
        assert request["url"] == "http://embed.test/v1/embeddings"
        assert request["json"] == {"input": "hello", "model": "text-embed"}
        assert request["headers"]["Authorization"] == "Bearer secret"
        assert request["timeout"] == 2.0

    def test_http_error_raises(self):
        backend, _ = self.make([FakeResponse(status_code=503, reason="Service Unavailable")])
        with pytest.raises(EmbeddingError, match="503"):
            backend.embed("hello")

    def test_timeout_raises_timeout_error(self):
        backend, _ = self.make([requests.Timeout("slow")])
        with pytest.raises(EmbeddingTimeoutError):
            backend.embed("hello")

    def test_connection_error_raises(self):
        backend, _ = self.make([requests.ConnectionError("refused")])
        with pytest.raises(EmbeddingError) as exc_info:
            backend.embed("hello")
        assert not isinstance(exc_info.value, EmbeddingTimeoutError)

    def test_malformed_body_raises(self):
        backend, _ = self.make([FakeResponse({"unexpected": True})])
        with pytest.raises(EmbeddingError, match="malformed"):
            backend.embed("hello")


class TestBackendSelection:
    def test_remote_when_url_and_key_set(self, tmp_path):
        config = make_config(
            tmp_path, embedding_api_url="http://embed.test/v1", embedding_api_key="k"
        )
        assert isinstance(select_backend(config), RemoteEmbeddingBackend)

    def test_local_when_key_missing(self, tmp_path):
        config = make_config(tmp_path, embedding_api_url="http://embed.test/v1")
        assert isinstance(select_backend(config), LocalEmbeddingBackend)
