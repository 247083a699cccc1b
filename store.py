"""LanceDB-backed vector store for memories.

Every public coroutine returns a result object instead of raising: storage,
embedding and timeout failures are logged and reported as ``success=False``
with a message and an empty payload.

Reads re-open the table handle first, because another writer may have
committed a new table version since the handle was opened.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import TYPE_CHECKING, Any

import lancedb
import pyarrow.compute as pc

from models import (
    ATTRIBUTION_FIELDS,
    AddResult,
    DeleteResult,
    ListResult,
    MemoryItem,
    Pagination,
    Profile,
    ProfileResult,
    SearchHit,
    SearchResult,
    StatsResult,
    TagInfo,
    TagsResult,
    UpdateResult,
    memory_model,
)
from utils import escape_filter_value, generate_memory_id, now_ms, safe_json_loads, scope_of

if TYPE_CHECKING:
    from config import Config
    from embedding import EmbeddingService

logger = logging.getLogger(__name__)


def _tag_filter(container_tag: str) -> str:
    return f"container_tag = '{escape_filter_value(container_tag)}'"


def _id_filter(memory_id: str) -> str:
    return f"id = '{escape_filter_value(memory_id)}'"


class VectorStore:
    """Partitioned memory table with cosine nearest-neighbour retrieval."""

    def __init__(self, config: Config, embedder: EmbeddingService) -> None:
        self.config = config
        self.embedder = embedder
        self.is_connected = False
        self._schema = memory_model(config.embedding_dim)
        self._db: lancedb.DBConnection | None = None
        self._table: Any = None
        self._init_task: asyncio.Future[None] | None = None

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect and open (or create) the table once; safe to call redundantly."""
        if self.is_connected:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._connect())
        await asyncio.shield(self._init_task)

    async def _connect(self) -> None:
        try:
            await asyncio.to_thread(self._open)
            self.is_connected = True
            logger.info("LanceDB connected: %s", self.config.storage_path)
        except Exception as e:
            self._init_task = None
            logger.error("LanceDB connection failed: %s", e)
            raise

    def _open(self) -> None:
        self.config.storage_path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.config.storage_path))
        try:
            self._table = self._db.open_table(self.config.table_name)
        except Exception:
            self._table = self._db.create_table(
                self.config.table_name, schema=self._schema, exist_ok=True
            )

    async def warmup(self) -> None:
        await self.initialize()
        await self.embedder.warmup()

    async def refresh_table(self) -> None:
        if self._db is None:
            raise RuntimeError("Database not initialized")
        self._table = await asyncio.to_thread(self._db.open_table, self.config.table_name)

    def status(self) -> dict[str, bool]:
        return {
            "db_connected": self.is_connected,
            "model_loaded": self.embedder.is_warmed_up,
            "ready": self.is_connected and self.embedder.is_warmed_up,
        }

    def close(self) -> None:
        self._table = None
        self._db = None
        self._init_task = None
        self.is_connected = False
        logger.info("LanceDB connection closed")

    # -------------------------------------------------------------------------
    # Sync helpers (run in worker threads)
    # -------------------------------------------------------------------------

    def _scan(self, where: str | None = None) -> list[dict[str, Any]]:
        total = self._table.count_rows(where) if where else self._table.count_rows()
        if total == 0:
            return []
        query = self._table.search()
        if where:
            query = query.where(where)
        return query.limit(total).to_list()

    def _nearest(self, vector: list[float], where: str, limit: int) -> list[dict[str, Any]]:
        if self._table.count_rows(where) == 0:
            return []
        return (
            self._table.search(vector)
            .distance_type("cosine")
            .where(where, prefilter=True)
            .limit(limit)
            .to_list()
        )

    def _get_row(self, memory_id: str) -> dict[str, Any] | None:
        rows = self._table.search().where(_id_filter(memory_id)).limit(1).to_list()
        return rows[0] if rows else None

    def _delete(self, memory_id: str) -> int:
        where = _id_filter(memory_id)
        count = self._table.count_rows(where)
        if count:
            self._table.delete(where)
        return count

    def _upsert(self, rows: list[dict[str, Any]]) -> None:
        (
            self._table.merge_insert("id")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(rows)
        )

    @staticmethod
    def _to_item(row: dict[str, Any]) -> MemoryItem:
        return MemoryItem(
            id=row["id"],
            content=row["content"],
            container_tag=row["container_tag"],
            type=row.get("type"),
            created_at=int(row.get("created_at") or 0),
            updated_at=int(row.get("updated_at") or 0),
            metadata=safe_json_loads(row.get("metadata")),
            attribution={k: row.get(k) for k in ATTRIBUTION_FIELDS},
        )

    @staticmethod
    def _sorted_newest_first(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return sorted(rows, key=lambda r: int(r.get("created_at") or 0), reverse=True)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def add_memory(
        self, content: str, container_tag: str, metadata: dict[str, Any] | None = None
    ) -> AddResult:
        """Embed ``content`` and append it to the ``container_tag`` partition."""
        logger.debug("add_memory: start tag=%s length=%d", container_tag, len(content or ""))
        if not content or not content.strip():
            return AddResult(success=False, error="content is required")
        if not container_tag:
            return AddResult(success=False, error="container_tag is required")
        try:
            await self.warmup()
            vector = await self.embedder.embed_with_timeout(content)

            memory_id = generate_memory_id()
            timestamp = now_ms()
            metadata = metadata or {}
            record = self._schema(
                id=memory_id,
                content=content,
                vector=vector,
                container_tag=container_tag,
                type=metadata.get("type"),
                created_at=timestamp,
                updated_at=timestamp,
                metadata=json.dumps(metadata, default=str) if metadata else None,
                **{k: metadata.get(k) for k in ATTRIBUTION_FIELDS},
            )
            await asyncio.to_thread(self._table.add, [record.model_dump()])

            logger.info("add_memory: saved %s in %s", memory_id, container_tag)
            return AddResult(success=True, id=memory_id)
        except Exception as e:
            logger.error("add_memory: error %s", e)
            return AddResult(success=False, error=str(e))

    async def search_memories(self, query: str, container_tag: str) -> SearchResult:
        """Nearest neighbours of ``query`` inside one partition, above the threshold."""
        logger.debug("search_memories: start tag=%s", container_tag)
        if not query or not query.strip():
            return SearchResult(success=False, error="query is required")
        try:
            await self.warmup()
            await self.refresh_table()
            vector = await self.embedder.embed_with_timeout(query)
            rows = await asyncio.to_thread(
                self._nearest, vector, _tag_filter(container_tag), self.config.max_memories
            )

            hits = []
            for row in rows:
                similarity = 1 - float(row.get("_distance") or 0.0)
                if similarity < self.config.similarity_threshold:
                    continue
                hits.append(
                    SearchHit(
                        id=row["id"],
                        memory=row["content"],
                        similarity=similarity,
                        type=row.get("type"),
                        metadata=safe_json_loads(row.get("metadata")),
                        attribution={k: row.get(k) for k in ATTRIBUTION_FIELDS},
                    )
                )

            logger.debug("search_memories: %d results", len(hits))
            return SearchResult(success=True, results=hits, total=len(hits))
        except Exception as e:
            logger.error("search_memories: error %s", e)
            return SearchResult(success=False, error=str(e))

    async def list_memories(
        self, container_tag: str | None, limit: int = 20, page: int = 1
    ) -> ListResult:
        """Newest-first listing of a partition (all partitions when tag is None)."""
        logger.debug("list_memories: start tag=%s limit=%d page=%d", container_tag, limit, page)
        if limit <= 0:
            return ListResult(success=False, error=f"limit must be positive, got {limit}")
        page = max(page, 1)
        try:
            await self.warmup()
            await self.refresh_table()
            where = _tag_filter(container_tag) if container_tag else None
            rows = self._sorted_newest_first(await asyncio.to_thread(self._scan, where))

            total = len(rows)
            offset = (page - 1) * limit
            memories = [self._to_item(r) for r in rows[offset : offset + limit]]
            return ListResult(
                success=True,
                memories=memories,
                pagination=Pagination(
                    current_page=page,
                    page_size=limit,
                    total_items=total,
                    total_pages=math.ceil(total / limit),
                ),
            )
        except Exception as e:
            logger.error("list_memories: error %s", e)
            return ListResult(success=False, error=str(e))

    async def delete_memory(self, memory_id: str) -> DeleteResult:
        """Delete by exact id anywhere in the table."""
        logger.debug("delete_memory: start id=%s", memory_id)
        if not memory_id:
            return DeleteResult(success=False, error="id is required")
        try:
            await self.warmup()
            await self.refresh_table()
            deleted = await asyncio.to_thread(self._delete, memory_id)
            if not deleted:
                return DeleteResult(success=False, not_found=True, error=f"Memory {memory_id} not found")
            logger.info("delete_memory: deleted %s", memory_id)
            return DeleteResult(success=True, deleted=deleted)
        except Exception as e:
            logger.error("delete_memory: error id=%s %s", memory_id, e)
            return DeleteResult(success=False, error=str(e))

    async def update_memory(
        self, memory_id: str, content: str | None = None, type: str | None = None
    ) -> UpdateResult:
        """Replace content and/or type of a memory in one upsert.

        The vector is recomputed only when the content actually changes, so
        it always embeds the stored content.
        """
        if content is not None and not content.strip():
            return UpdateResult(success=False, error="content cannot be empty")
        try:
            await self.warmup()
            await self.refresh_table()
            row = await asyncio.to_thread(self._get_row, memory_id)
            if row is None:
                return UpdateResult(success=False, error=f"Memory {memory_id} not found")

            new_content = content if content is not None else row["content"]
            reembed = new_content != row["content"]
            vector = (
                await self.embedder.embed_with_timeout(new_content)
                if reembed
                else list(row["vector"])
            )

            metadata = safe_json_loads(row.get("metadata"))
            if type is not None and isinstance(metadata, dict):
                metadata["type"] = type

            fields = {k: row.get(k) for k in self._schema.model_fields}
            fields.update(
                content=new_content,
                vector=vector,
                type=type if type is not None else row.get("type"),
                updated_at=max(now_ms(), int(row.get("updated_at") or 0) + 1),
                metadata=json.dumps(metadata, default=str)
                if isinstance(metadata, dict)
                else row.get("metadata"),
            )
            record = self._schema(**fields)
            await asyncio.to_thread(self._upsert, [record.model_dump()])

            logger.info("update_memory: updated %s (reembedded=%s)", memory_id, reembed)
            return UpdateResult(success=True, id=memory_id, reembedded=reembed)
        except Exception as e:
            logger.error("update_memory: error id=%s %s", memory_id, e)
            return UpdateResult(success=False, error=str(e))

    async def get_profile(self, container_tag: str) -> ProfileResult:
        """Split a partition into static (preference) and dynamic facts."""
        logger.debug("get_profile: start tag=%s", container_tag)
        try:
            await self.warmup()
            await self.refresh_table()
            rows = self._sorted_newest_first(
                await asyncio.to_thread(self._scan, _tag_filter(container_tag))
            )

            profile = Profile()
            for row in rows:
                if row.get("type") == "preference":
                    profile.static.append(row["content"])
                else:
                    profile.dynamic.append(row["content"])

            limit = self.config.max_profile_items
            profile.static = profile.static[:limit]
            profile.dynamic = profile.dynamic[:limit]
            return ProfileResult(success=True, profile=profile)
        except Exception as e:
            logger.error("get_profile: error %s", e)
            return ProfileResult(success=False, error=str(e))

    async def stats(self) -> StatsResult:
        try:
            await self.warmup()
            await self.refresh_table()
            arrow = await asyncio.to_thread(
                lambda: self._table.to_arrow().select(["container_tag", "type"])
            )

            result = StatsResult(success=True, total=arrow.num_rows)
            for tag in arrow.column("container_tag").to_pylist():
                result.by_scope[scope_of(tag)] += 1
            for item in pc.value_counts(arrow.column("type").drop_null()).to_pylist():
                result.by_type[item["values"]] = item["counts"]
            return result
        except Exception as e:
            logger.error("stats: error %s", e)
            return StatsResult(success=False, error=str(e))

    async def list_tags(self) -> TagsResult:
        """Distinct container tags with the provenance of their first row."""
        try:
            await self.warmup()
            await self.refresh_table()
            rows = await asyncio.to_thread(
                lambda: self._table.to_arrow()
                .select(["container_tag", *ATTRIBUTION_FIELDS])
                .to_pylist()
            )

            seen: dict[str, TagInfo] = {}
            for row in rows:
                tag = row.get("container_tag")
                if tag and tag not in seen:
                    seen[tag] = TagInfo(tag=tag, attribution={k: row.get(k) for k in ATTRIBUTION_FIELDS})

            result = TagsResult(success=True)
            for info in seen.values():
                getattr(result, scope_of(info.tag)).append(info)
            return result
        except Exception as e:
            logger.error("list_tags: error %s", e)
            return TagsResult(success=False, error=str(e))
