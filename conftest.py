"""Shared fixtures: isolated LanceDB, deterministic embeddings, scripted HTTP."""

import copy
import hashlib
import json

import numpy as np
import pytest

from config import Config
from embedding import EmbeddingService
from engine import MemoryEngine
from extraction import MemoryExtractor
from store import VectorStore
from utils import ProjectInfo

DIM = 384


def fake_vector(text: str, dim: int = DIM) -> list[float]:
    """Stable pseudo-random vector per text; distinct texts are near-orthogonal."""
    seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
    return np.random.default_rng(seed).standard_normal(dim).tolist()


class FakeBackend:
    name = "fake"

    def __init__(self, dim: int = DIM):
        self.model_name = "fake-model"
        self.dim = dim
        self.loads = 0
        self.calls: list[str] = []

    def load(self):
        self.loads += 1

    def embed(self, text):
        self.calls.append(text)
        return fake_vector(text, self.dim)


async def fetch_memory(store, memory_id):
    """Read one memory back through the listing API."""
    listing = await store.list_memories(None, limit=1000)
    return next((m for m in listing.memories if m.id == memory_id), None)


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text="", reason="OK"):
        self.payload = payload
        self.status_code = status_code
        self.text = text
        self.reason = reason

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON body")
        return self.payload


class FakeHttp:
    """Returns (or raises) scripted responses in order and records each request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": copy.deepcopy(json), "headers": headers, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def tool_call_response(name, arguments, call_id="call_1"):
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return FakeResponse(
        {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": call_id,
                                "type": "function",
                                "function": {"name": name, "arguments": arguments},
                            }
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ]
        }
    )


def text_response(content):
    return FakeResponse(
        {"choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}]}
    )


class ScriptedSummarizer:
    """Free-form model double: returns canned text and records prompts."""

    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    async def __call__(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def make_config(tmp_path, **overrides):
    values = dict(
        storage_path=tmp_path / "lancedb",
        log_path=None,
        embedding_model="fake-model",
        embedding_dim=DIM,
        embedding_api_url=None,
        embedding_api_key=None,
        similarity_threshold=0.6,
        max_memories=10,
        max_profile_items=5,
        auto_capture_enabled=True,
        auto_capture_threshold=5,
        auto_capture_time_threshold=0,
        auto_capture_max_memories=10,
        memory_provider="session",
        memory_model=None,
        memory_api_url=None,
        memory_api_key=None,
        max_iterations=5,
        iteration_timeout=5.0,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def embedder(config, backend):
    return EmbeddingService(config, backend)


@pytest.fixture
async def store(config, embedder):
    store = VectorStore(config, embedder)
    await store.initialize()
    yield store
    store.close()


@pytest.fixture
def project():
    return ProjectInfo(
        project_path="/work/demo",
        project_name="demo",
        git_repo_url="github.com/acme/demo",
        user_name="Dev",
        user_email="dev@example.com",
    )


@pytest.fixture
def engine_factory(config, embedder, store, project):
    """Build an engine over the shared store with a chosen extractor."""

    def build(extractor=None, **kwargs):
        return MemoryEngine(
            config,
            embedder=embedder,
            store=store,
            extractor=extractor or MemoryExtractor(),
            project=project,
            **kwargs,
        )

    return build
