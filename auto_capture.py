"""Per-session activity buffers and the automatic capture cycle.

Each session owns one ``CaptureBuffer``. A session moves idle -> eligible
(``on_session_idle`` returned True) -> capturing (``mark_capturing``) -> idle
(``clear_buffer``). While a session is capturing it can neither re-trigger nor
be marked again, so at most one extraction per session is ever in flight.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from utils import ProjectInfo, get_container_tags, now_ms
from validators import is_valid_memory_entry

if TYPE_CHECKING:
    from config import Config
    from extraction import ErrorKind, MemoryExtractor, Summarizer
    from store import VectorStore

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, str], Awaitable[None]]

TOOL_ARGS_PREVIEW = 200


class CaptureInProgressError(RuntimeError):
    pass


class CaptureState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"


@dataclass(slots=True)
class MessageEntry:
    role: str
    content: str
    timestamp: float


@dataclass(slots=True)
class ToolEntry:
    name: str
    args: Any
    result: str
    timestamp: float


@dataclass(slots=True)
class CaptureBuffer:
    session_id: str
    last_capture_time: float
    iteration_count: int = 0
    messages: list[MessageEntry] = field(default_factory=list)
    tools: list[ToolEntry] = field(default_factory=list)
    file_edits: int = 0
    state: CaptureState = CaptureState.IDLE

    def reset(self, now: float) -> None:
        self.iteration_count = 0
        self.messages = []
        self.tools = []
        self.file_edits = 0
        self.last_capture_time = now
        self.state = CaptureState.IDLE

    @property
    def is_empty(self) -> bool:
        return not self.messages and not self.tools


@dataclass(frozen=True, slots=True)
class CaptureStats:
    iterations: int
    messages: int
    tools: int
    file_edits: int
    time_since_capture_ms: int
    capturing: bool


class AutoCaptureService:
    """Owns every session's capture buffer and its capturing state."""

    def __init__(self, config: Config, clock: Callable[[], float] = time.time) -> None:
        self.threshold = config.auto_capture_threshold
        self.time_threshold = config.time_threshold_seconds
        self.max_memories = config.auto_capture_max_memories
        self.enabled = config.auto_capture_enabled
        self._clock = clock
        self._buffers: dict[str, CaptureBuffer] = {}

    @property
    def is_enabled(self) -> bool:
        return self.enabled

    def toggle(self) -> bool:
        self.enabled = not self.enabled
        logger.info("Auto-capture %s", "enabled" if self.enabled else "disabled")
        return self.enabled

    def _get_or_create(self, session_id: str) -> CaptureBuffer:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            buffer = CaptureBuffer(session_id=session_id, last_capture_time=self._clock())
            self._buffers[session_id] = buffer
        return buffer

    # -------------------------------------------------------------------------
    # Activity
    # -------------------------------------------------------------------------

    def add_message(self, session_id: str, role: str, content: str) -> None:
        if not self.enabled:
            return
        self._get_or_create(session_id).messages.append(
            MessageEntry(role=role, content=content, timestamp=self._clock())
        )

    def add_tool(self, session_id: str, name: str, args: Any, result: str) -> None:
        if not self.enabled:
            return
        self._get_or_create(session_id).tools.append(
            ToolEntry(name=name, args=args, result=result, timestamp=self._clock())
        )

    def on_file_edit(self, session_id: str) -> None:
        if not self.enabled:
            return
        self._get_or_create(session_id).file_edits += 1

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def on_session_idle(self, session_id: str) -> bool:
        """Count one iteration; True when the session should be captured now."""
        if not self.enabled:
            return False
        if self.is_capturing(session_id):
            return False

        buffer = self._get_or_create(session_id)
        buffer.iteration_count += 1

        iteration_met = buffer.iteration_count >= self.threshold
        time_met = (
            self.time_threshold > 0
            and self._clock() - buffer.last_capture_time >= self.time_threshold
        )
        return iteration_met or time_met

    def is_capturing(self, session_id: str) -> bool:
        buffer = self._buffers.get(session_id)
        return buffer is not None and buffer.state is CaptureState.CAPTURING

    def mark_capturing(self, session_id: str) -> bool:
        """Enter the capturing state; False if a capture is already running."""
        buffer = self._get_or_create(session_id)
        if buffer.state is CaptureState.CAPTURING:
            return False
        buffer.state = CaptureState.CAPTURING
        return True

    def clear_buffer(self, session_id: str) -> None:
        """Empty the buffer and return the session to idle."""
        buffer = self._buffers.get(session_id)
        if buffer is not None:
            buffer.reset(self._clock())

    @asynccontextmanager
    async def capturing(self, session_id: str) -> AsyncIterator[CaptureBuffer]:
        """Hold the capturing state for the block; the buffer is cleared on exit."""
        if not self.mark_capturing(session_id):
            raise CaptureInProgressError(f"Capture already in progress for {session_id}")
        try:
            yield self._buffers[session_id]
        finally:
            self.clear_buffer(session_id)

    def cleanup(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)

    def user_prompts(self, session_id: str) -> list[str]:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return []
        return [m.content for m in buffer.messages if m.role == "user"]

    def get_stats(self, session_id: str) -> CaptureStats | None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return None
        return CaptureStats(
            iterations=buffer.iteration_count,
            messages=len(buffer.messages),
            tools=len(buffer.tools),
            file_edits=buffer.file_edits,
            time_since_capture_ms=int((self._clock() - buffer.last_capture_time) * 1000),
            capturing=buffer.state is CaptureState.CAPTURING,
        )

    # -------------------------------------------------------------------------
    # Prompt
    # -------------------------------------------------------------------------

    def build_summary_prompt(self, session_id: str) -> str:
        """Extraction instruction for the buffered activity; empty if nothing to read."""
        buffer = self._buffers.get(session_id)
        if buffer is None or buffer.is_empty:
            return ""

        conversation = "\n\n".join(f"{m.role.upper()}: {m.content}" for m in buffer.messages)
        tools = ""
        if buffer.tools:
            lines = []
            for t in buffer.tools:
                args = t.args if isinstance(t.args, str) else json.dumps(t.args, default=str)
                lines.append(f"- {t.name}: {args[:TOOL_ARGS_PREVIEW]}")
            tools = "\n\nTools executed:\n" + "\n".join(lines)
        edits = f"\n\nFiles edited: {buffer.file_edits}" if buffer.file_edits else ""

        return f"""Analyze the last {buffer.iteration_count} iterations of conversation.

Extract distinct, actionable memories and categorize each by scope:

**Scope definitions:**
- "user": Cross-project user behaviors, preferences, patterns
  Examples: "prefers TypeScript", "likes concise responses", "uses vim keybindings"
- "project": Project-specific knowledge, decisions, architecture
  Examples: "uses Bun runtime", "API at /api/v1", "database is PostgreSQL"

**Memory types:**
- preference: User preferences
- learned-pattern: User behavior patterns
- project-config: Project configuration/setup
- architecture: Project architecture decisions
- error-solution: Solutions to specific errors
- conversation: General conversation summary

Return JSON (the list can be empty if nothing is worth remembering):
{{
  "memories": [
    {{
      "summary": "Clear, concise summary (max 200 chars)",
      "scope": "user" | "project",
      "type": "preference" | "learned-pattern" | "project-config" | "architecture" | "error-solution" | "conversation",
      "reasoning": "Why this is worth remembering"
    }}
  ]
}}

Conversation:
{conversation}{tools}{edits}

IMPORTANT:
- Only extract memories worth long-term retention
- Be selective: quality over quantity
- Each memory should be atomic and independent
- Return an empty list if nothing significant happened
- Maximum {self.max_memories} memories per capture"""


# =============================================================================
# Capture cycle
# =============================================================================


@dataclass(slots=True)
class CapturedMemory:
    id: str
    scope: str
    type: str


@dataclass(slots=True)
class CaptureReport:
    session_id: str
    success: bool = False
    saved: list[CapturedMemory] = field(default_factory=list)
    duplicates: int = 0
    invalid: int = 0
    fallback: bool = False
    iterations: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None

    def count(self, scope: str) -> int:
        return sum(1 for m in self.saved if m.scope == scope)


async def _notify(notify: Notifier | None, title: str, message: str, variant: str) -> None:
    if notify is None:
        return
    try:
        await notify(title, message, variant)
    except Exception as e:  # notifications are best-effort
        logger.debug("Notification failed: %s", e)


async def is_duplicate(store: VectorStore, summary: str, container_tag: str, threshold: float) -> bool:
    found = await store.search_memories(summary, container_tag)
    return bool(found.success and found.results and found.results[0].similarity >= threshold)


async def perform_auto_capture(
    service: AutoCaptureService,
    extractor: MemoryExtractor,
    store: VectorStore,
    config: Config,
    session_id: str,
    project: ProjectInfo,
    summarizer: Summarizer | None = None,
    notify: Notifier | None = None,
) -> CaptureReport:
    """Extract memories from a session's buffer and save each accepted one once.

    The session is back to idle with an empty buffer when this returns,
    whatever happened during extraction.
    """
    report = CaptureReport(session_id=session_id)
    try:
        async with service.capturing(session_id):
            try:
                await _capture(report, service, extractor, store, config, project, summarizer, notify)
            except Exception as e:
                logger.error("Auto-capture: error session=%s %s", session_id, e)
                report.success = False
                report.error = str(e)
                report.error_kind = getattr(e, "kind", None)
                await _notify(notify, "Auto-Capture Failed", str(e), "error")
    except CaptureInProgressError:
        report.error = "Capture already in progress"
    return report


async def _capture(
    report: CaptureReport,
    service: AutoCaptureService,
    extractor: MemoryExtractor,
    store: VectorStore,
    config: Config,
    project: ProjectInfo,
    summarizer: Summarizer | None,
    notify: Notifier | None,
) -> None:
    session_id = report.session_id
    await _notify(notify, "Auto-Capture", "Analyzing conversation...", "info")

    prompt = service.build_summary_prompt(session_id)
    if not prompt:
        logger.info("Auto-capture: no content to summarize (session %s)", session_id)
        report.success = True
        return

    extraction = await extractor.extract(session_id, prompt, summarizer)
    report.fallback = extraction.fallback
    report.iterations = extraction.iterations

    tags = get_container_tags(project)
    for memory in extraction.memories[: service.max_memories]:
        if not is_valid_memory_entry(memory):
            logger.warning("Auto-capture: invalid memory entry %r", memory)
            report.invalid += 1
            continue

        container_tag = tags.for_scope(memory["scope"])
        if await is_duplicate(store, memory["summary"], container_tag, config.dedup_threshold):
            logger.info("Auto-capture: skipping duplicate %.80s", memory["summary"])
            report.duplicates += 1
            continue

        result = await store.add_memory(
            memory["summary"],
            container_tag,
            {
                "type": memory["type"],
                "source": "auto-capture",
                "session_id": session_id,
                "reasoning": memory.get("reasoning"),
                "capture_timestamp": now_ms(),
                **project.attribution(),
            },
        )
        if result.success and result.id:
            report.saved.append(CapturedMemory(id=result.id, scope=memory["scope"], type=memory["type"]))
            logger.info(
                "Auto-capture: memory saved scope=%s type=%s id=%s",
                memory["scope"],
                memory["type"],
                result.id,
            )

    report.success = True
    if not report.saved:
        logger.info("Auto-capture: no memories captured (session %s)", session_id)
        return

    user_count, project_count = report.count("user"), report.count("project")
    await _notify(
        notify,
        "Memory Captured",
        f"Saved {user_count} user + {project_count} project memories",
        "success",
    )
    logger.info(
        "Auto-capture: success session=%s user=%d project=%d",
        session_id,
        user_count,
        project_count,
    )
