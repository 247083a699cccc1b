"""Memory Engine: the single entry point used by the MCP server.

The engine owns one embedding service, one vector store and one capture
service for the whole process. It is built once in the entry point and handed
to whatever needs it; every collaborator can be injected for tests.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from auto_capture import AutoCaptureService, CaptureReport, CaptureStats, Notifier, perform_auto_capture
from config import MEMORY_TYPES, Config
from embedding import EmbeddingService
from extraction import GeminiSummarizer, MemoryExtractor, OpenAIChatProvider, Summarizer
from models import (
    AddResult,
    BulkDeleteResult,
    DeleteResult,
    ListResult,
    ProfileResult,
    SearchResult,
    StatsResult,
    TagsResult,
    UpdateResult,
)
from store import VectorStore
from user_profile import ProfileAnalysis, UserProfileAnalyzer
from utils import ContainerTags, ProjectInfo, get_container_tags, get_project_info
from validators import SCOPES

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CaptureStatus:
    enabled: bool
    session: CaptureStats | None = None


class MemoryEngine:
    def __init__(
        self,
        config: Config | None = None,
        *,
        embedder: EmbeddingService | None = None,
        store: VectorStore | None = None,
        capture: AutoCaptureService | None = None,
        extractor: MemoryExtractor | None = None,
        analyzer: UserProfileAnalyzer | None = None,
        project: ProjectInfo | None = None,
        http: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or Config()
        self.embedder = embedder or EmbeddingService(self.config)
        self.store = store or VectorStore(self.config, self.embedder)
        self.capture = capture or AutoCaptureService(self.config, clock)

        provider = (
            OpenAIChatProvider(self.config, http=http) if self.config.use_tool_calling else None
        )
        summarizer = GeminiSummarizer(self.config) if self.config.memory_provider == "gemini" else None
        self.extractor = extractor or MemoryExtractor(provider, summarizer)
        self.analyzer = analyzer or UserProfileAnalyzer(self.config, self.store, provider)

        self.project = project or get_project_info()
        self.tags: ContainerTags = get_container_tags(self.project)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def warmup(self) -> None:
        await self.store.warmup()

    def status(self) -> dict[str, bool]:
        return self.store.status()

    def close(self) -> None:
        self.store.close()

    def resolve_tag(self, scope: str = "project", container_tag: str | None = None) -> str:
        """Partition key for a scope; an explicit ``container_tag`` wins."""
        if container_tag:
            return container_tag
        if scope not in SCOPES:
            raise ValueError(f"Invalid scope '{scope}'. Valid: {sorted(SCOPES)}")
        return self.tags.for_scope(scope)

    # -------------------------------------------------------------------------
    # Memories
    # -------------------------------------------------------------------------

    async def add(
        self,
        content: str,
        scope: str = "project",
        type: str | None = None,
        metadata: dict[str, Any] | None = None,
        container_tag: str | None = None,
    ) -> AddResult:
        if type is not None and type not in MEMORY_TYPES:
            return AddResult(success=False, error=f"Invalid type '{type}'. Valid: {sorted(MEMORY_TYPES)}")
        try:
            tag = self.resolve_tag(scope, container_tag)
        except ValueError as e:
            return AddResult(success=False, error=str(e))

        merged: dict[str, Any] = {"source": "manual", **(metadata or {})}
        if type is not None:
            merged["type"] = type
        for key, value in self.project.attribution().items():
            merged.setdefault(key, value)
        return await self.store.add_memory(content, tag, merged)

    async def search(
        self, query: str, scope: str = "project", container_tag: str | None = None
    ) -> SearchResult:
        try:
            tag = self.resolve_tag(scope, container_tag)
        except ValueError as e:
            return SearchResult(success=False, error=str(e))
        return await self.store.search_memories(query, tag)

    async def list_memories(
        self,
        scope: str | None = None,
        limit: int = 20,
        page: int = 1,
        container_tag: str | None = None,
    ) -> ListResult:
        """List one partition, or every partition when neither scope nor tag is given."""
        tag = container_tag
        if tag is None and scope is not None:
            try:
                tag = self.resolve_tag(scope)
            except ValueError as e:
                return ListResult(success=False, error=str(e))
        return await self.store.list_memories(tag, limit=limit, page=page)

    async def delete(self, memory_id: str) -> DeleteResult:
        return await self.store.delete_memory(memory_id)

    async def bulk_delete(self, memory_ids: list[str]) -> BulkDeleteResult:
        if not memory_ids:
            return BulkDeleteResult(success=False, error="ids array is required")

        result = BulkDeleteResult(success=True)
        for memory_id in dict.fromkeys(memory_ids):
            deleted = await self.store.delete_memory(memory_id)
            if deleted.success:
                result.deleted += deleted.deleted
            elif deleted.not_found:
                result.not_found.append(memory_id)
            else:
                result.failed[memory_id] = deleted.error or "Delete failed"
        if result.failed:
            result.success = False
            result.error = f"Failed to delete {len(result.failed)} memories: " + "; ".join(
                f"{k}: {v}" for k, v in result.failed.items()
            )
        logger.info("bulk_delete: deleted %d of %d", result.deleted, len(memory_ids))
        return result

    async def update(
        self, memory_id: str, content: str | None = None, type: str | None = None
    ) -> UpdateResult:
        if content is None and type is None:
            return UpdateResult(success=False, error="Nothing to update")
        if type is not None and type not in MEMORY_TYPES:
            return UpdateResult(success=False, error=f"Invalid type '{type}'. Valid: {sorted(MEMORY_TYPES)}")
        return await self.store.update_memory(memory_id, content=content, type=type)

    async def profile(self, scope: str = "user", container_tag: str | None = None) -> ProfileResult:
        try:
            tag = self.resolve_tag(scope, container_tag)
        except ValueError as e:
            return ProfileResult(success=False, error=str(e))
        return await self.store.get_profile(tag)

    async def stats(self) -> StatsResult:
        return await self.store.stats()

    async def list_tags(self) -> TagsResult:
        return await self.store.list_tags()

    # -------------------------------------------------------------------------
    # Session events
    # -------------------------------------------------------------------------

    def record_message(self, session_id: str, role: str, content: str) -> None:
        self.capture.add_message(session_id, role, content)

    def record_tool(self, session_id: str, name: str, args: Any, result: str) -> None:
        self.capture.add_tool(session_id, name, args, result)

    def record_file_edit(self, session_id: str) -> None:
        self.capture.on_file_edit(session_id)

    async def session_idle(
        self,
        session_id: str,
        summarizer: Summarizer | None = None,
        notify: Notifier | None = None,
    ) -> CaptureReport | None:
        """Count an idle turn and run the capture cycle when a threshold is met."""
        if not self.capture.on_session_idle(session_id):
            return None
        return await self.force_capture(session_id, summarizer, notify)

    async def session_end(
        self,
        session_id: str,
        summarizer: Summarizer | None = None,
        notify: Notifier | None = None,
    ) -> CaptureReport | None:
        """Capture whatever is still buffered, then forget the session."""
        report = None
        stats = self.capture.get_stats(session_id)
        if self.capture.is_enabled and stats is not None and (stats.messages or stats.tools):
            report = await self.force_capture(session_id, summarizer, notify)
        self.capture.cleanup(session_id)
        self.extractor.forget(session_id)
        return report

    # -------------------------------------------------------------------------
    # Auto-capture control
    # -------------------------------------------------------------------------

    def toggle_auto_capture(self) -> bool:
        return self.capture.toggle()

    def capture_stats(self, session_id: str) -> CaptureStatus:
        return CaptureStatus(enabled=self.capture.is_enabled, session=self.capture.get_stats(session_id))

    async def force_capture(
        self,
        session_id: str,
        summarizer: Summarizer | None = None,
        notify: Notifier | None = None,
    ) -> CaptureReport:
        return await perform_auto_capture(
            self.capture,
            self.extractor,
            self.store,
            self.config,
            session_id,
            self.project,
            summarizer=summarizer,
            notify=notify,
        )

    async def analyze_profile(
        self, session_id: str, prompts: list[str] | None = None
    ) -> ProfileAnalysis:
        """Learn preferences from ``prompts`` (default: the session's buffered user messages)."""
        if prompts is None:
            prompts = self.capture.user_prompts(session_id)
        return await self.analyzer.analyze(session_id, prompts, self.project)
