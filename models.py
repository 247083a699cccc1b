"""Shared data models for code-memory-mcp."""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector


@lru_cache(maxsize=None)
def memory_model(dim: int) -> type[LanceModel]:
    """LanceDB table schema for memories with ``dim``-wide vectors.

    IMPORTANT: Any changes to this schema require migration of existing data.
    """

    class MemoryRecord(LanceModel):
        id: str
        content: str
        vector: Vector(dim)  # type: ignore[valid-type]
        container_tag: str
        type: str | None = None
        created_at: int  # epoch ms
        updated_at: int  # epoch ms
        metadata: str | None = None  # JSON object as string
        display_name: str | None = None
        user_name: str | None = None
        user_email: str | None = None
        project_path: str | None = None
        project_name: str | None = None
        git_repo_url: str | None = None

    return MemoryRecord


ATTRIBUTION_FIELDS = (
    "display_name",
    "user_name",
    "user_email",
    "project_path",
    "project_name",
    "git_repo_url",
)


# =============================================================================
# Read models
# =============================================================================


@dataclass(slots=True)
class MemoryItem:
    """A stored memory as returned to callers (no vector)."""

    id: str
    content: str
    container_tag: str
    type: str | None
    created_at: int
    updated_at: int
    metadata: dict[str, Any] | None = None
    attribution: dict[str, str | None] = field(default_factory=dict)


@dataclass(slots=True)
class SearchHit:
    id: str
    memory: str
    similarity: float
    type: str | None = None
    metadata: dict[str, Any] | None = None
    attribution: dict[str, str | None] = field(default_factory=dict)


@dataclass(slots=True)
class Profile:
    static: list[str] = field(default_factory=list)
    dynamic: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Pagination:
    current_page: int = 1
    page_size: int = 0
    total_items: int = 0
    total_pages: int = 0


@dataclass(slots=True)
class TagInfo:
    tag: str
    attribution: dict[str, str | None] = field(default_factory=dict)


# =============================================================================
# Results (success flag + message; payload empty on failure)
# =============================================================================


@dataclass(slots=True)
class AddResult:
    success: bool
    id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SearchResult:
    success: bool
    results: list[SearchHit] = field(default_factory=list)
    total: int = 0
    error: str | None = None


@dataclass(slots=True)
class ListResult:
    success: bool
    memories: list[MemoryItem] = field(default_factory=list)
    pagination: Pagination = field(default_factory=Pagination)
    error: str | None = None


@dataclass(slots=True)
class DeleteResult:
    success: bool
    deleted: int = 0
    not_found: bool = False
    error: str | None = None


@dataclass(slots=True)
class UpdateResult:
    success: bool
    id: str | None = None
    reembedded: bool = False
    error: str | None = None


@dataclass(slots=True)
class ProfileResult:
    success: bool
    profile: Profile | None = None
    error: str | None = None


@dataclass(slots=True)
class StatsResult:
    success: bool
    total: int = 0
    by_scope: dict[str, int] = field(default_factory=lambda: {"user": 0, "project": 0})
    by_type: dict[str, int] = field(default_factory=dict)
    error: str | None = None


@dataclass(slots=True)
class TagsResult:
    success: bool
    user: list[TagInfo] = field(default_factory=list)
    project: list[TagInfo] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class BulkDeleteResult:
    success: bool
    deleted: int = 0
    not_found: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: str | None = None
