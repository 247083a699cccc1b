#!/usr/bin/env python3
"""
Code Memory MCP Server - long-term memory for AI coding agents

Provides persistent, partitioned memory with automatic capture using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB for cosine vector search scoped to user / project partitions
- sentence-transformers (or any OpenAI-compatible endpoint) for embeddings
- The session's own model (MCP sampling), Gemini, or an OpenAI-compatible
  tool-calling model for memory extraction
"""

import asyncio
import logging
from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from mcp.types import SamplingMessage, TextContent

from auto_capture import CaptureReport, Notifier
from config import Config
from engine import CaptureStatus, MemoryEngine
from extraction import Summarizer
from models import ListResult, ProfileResult, SearchResult, StatsResult, TagsResult
from user_profile import ProfileAnalysis
from utils import configure_logging, ms_to_iso

logger = logging.getLogger(__name__)

CONFIG = Config()
SAMPLING_MAX_TOKENS = 2000
PREVIEW_CHARS = 200

_engine: MemoryEngine | None = None


def get_engine() -> MemoryEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = MemoryEngine(CONFIG)
    return _engine


# =============================================================================
# Session model & notifications
# =============================================================================


def session_summarizer(ctx: Context | None) -> Summarizer | None:
    """Free-form generation through the client's model (MCP sampling)."""
    if ctx is None or CONFIG.memory_provider != "session":
        return None

    async def summarize(prompt: str) -> str:
        result = await asyncio.wait_for(
            ctx.session.create_message(
                messages=[
                    SamplingMessage(role="user", content=TextContent(type="text", text=prompt))
                ],
                max_tokens=SAMPLING_MAX_TOKENS,
            ),
            timeout=CONFIG.iteration_timeout,
        )
        content = result.content
        return content.text if isinstance(content, TextContent) else ""

    return summarize


def session_notifier(ctx: Context | None) -> Notifier | None:
    if ctx is None:
        return None

    async def notify(title: str, message: str, variant: str) -> None:
        text = f"{title}: {message}"
        if variant == "error":
            await ctx.error(text)
        else:
            await ctx.info(text)

    return notify


# =============================================================================
# Formatting
# =============================================================================


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_search(result: SearchResult) -> str:
    if not result.success:
        return f"Error: {result.error}"
    if not result.results:
        return "No relevant memories found."

    lines = [f"=== {result.total} memories ===\n"]
    for i, hit in enumerate(result.results, 1):
        lines.append(f"[{i}] {hit.type or 'memory'} (ID: {hit.id})")
        lines.append(f"    {hit.memory}")
        lines.append(f"    Similarity: {hit.similarity:.0%}")
        lines.append("")
    return "\n".join(lines)


def format_list(result: ListResult) -> str:
    if not result.success:
        return f"Error: {result.error}"
    page = result.pagination
    if not result.memories:
        return "No memories stored yet." if page.total_items == 0 else f"Page {page.current_page} is empty."

    lines = [
        f"=== Page {page.current_page}/{page.total_pages} ({page.total_items} memories) ===\n"
    ]
    for memory in result.memories:
        lines.append(f"- {memory.id} [{memory.type or 'memory'}] {ms_to_iso(memory.created_at)}")
        lines.append(f"    {_preview(memory.content)}")
    return "\n".join(lines)


def format_profile(result: ProfileResult) -> str:
    if not result.success or result.profile is None:
        return f"Error: {result.error}"
    profile = result.profile
    if not profile.static and not profile.dynamic:
        return "No profile facts yet."

    lines = ["=== Profile ===", "", "Preferences:"]
    lines.extend(f"  - {fact}" for fact in profile.static or ["(none)"])
    lines.extend(["", "Recent context:"])
    lines.extend(f"  - {fact}" for fact in profile.dynamic or ["(none)"])
    return "\n".join(lines)


def format_stats(result: StatsResult) -> str:
    if not result.success:
        return f"Error: {result.error}"
    if result.total == 0:
        return "No memories stored yet."

    lines = [
        "=== Memory Statistics (LanceDB) ===",
        f"Total: {result.total} memories",
        f"User: {result.by_scope.get('user', 0)}",
        f"Project: {result.by_scope.get('project', 0)}",
        "",
        "By Type:",
    ]
    for memory_type, count in sorted(result.by_type.items()):
        lines.append(f"  {memory_type}: {count}")
    return "\n".join(lines)


def format_tags(result: TagsResult) -> str:
    if not result.success:
        return f"Error: {result.error}"

    lines = ["=== Container Tags ==="]
    for label, tags in (("User", result.user), ("Project", result.project)):
        lines.append(f"\n{label}:")
        if not tags:
            lines.append("  (none)")
        for info in tags:
            owner = info.attribution.get("project_name") or info.attribution.get("display_name")
            lines.append(f"  {info.tag}" + (f" ({owner})" if owner else ""))
    return "\n".join(lines)


def format_capture_report(report: CaptureReport) -> str:
    if not report.success:
        return f"Error: {report.error}"
    if not report.saved:
        parts = ["No memories captured."]
    else:
        parts = [
            f"Captured {report.count('user')} user + {report.count('project')} project memories"
        ]
        parts.extend(f"  {m.id} [{m.scope}/{m.type}]" for m in report.saved)
    if report.duplicates:
        parts.append(f"Skipped {report.duplicates} duplicate(s)")
    if report.invalid:
        parts.append(f"Skipped {report.invalid} invalid entr{'y' if report.invalid == 1 else 'ies'}")
    if report.fallback:
        parts.append("Model output was not JSON; saved raw summary as fallback")
    return "\n".join(parts)


def format_capture_status(status: CaptureStatus) -> str:
    lines = [f"Auto-capture: {'enabled' if status.enabled else 'disabled'}"]
    stats = status.session
    if stats is None:
        lines.append("No activity recorded for this session.")
        return "\n".join(lines)
    lines.extend(
        [
            f"Iterations: {stats.iterations}/{CONFIG.auto_capture_threshold}",
            f"Messages: {stats.messages}",
            f"Tools: {stats.tools}",
            f"File edits: {stats.file_edits}",
            f"Since last capture: {stats.time_since_capture_ms // 1000}s",
            f"Capturing: {'yes' if stats.capturing else 'no'}",
        ]
    )
    return "\n".join(lines)


def format_profile_analysis(analysis: ProfileAnalysis) -> str:
    if not analysis.success:
        return f"Error: {analysis.error}"
    lines = [
        f"Profile updated after {analysis.iterations} iteration(s)",
        f"Preferences: {analysis.preferences}",
        f"Patterns: {analysis.patterns}",
        f"Workflows: {analysis.workflows}",
    ]
    if analysis.duplicates:
        lines.append(f"Already known: {analysis.duplicates}")
    return "\n".join(lines)


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "code-memory",
    instructions=(
        "Long-term memory for coding sessions: user preferences and project knowledge, "
        "searchable by meaning and captured automatically from conversation activity"
    ),
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_add(content: str, scope: str = "project", type: str | None = None) -> str:
    """Save a memory. Use after learning something worth keeping across sessions.

    Args:
        content: The fact to remember, one self-contained sentence
        scope: 'user' (cross-project preference) or 'project' (this repository)
        type: One of preference, learned-pattern, project-config, architecture, error-solution, conversation
    """
    result = await get_engine().add(content, scope=scope, type=type)
    if not result.success:
        return f"Error: {result.error}"
    return f"Saved (ID: {result.id}, {scope}{', ' + type if type else ''})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_search(query: str, scope: str = "project") -> str:
    """Semantic search inside one partition.

    Args:
        query: What to look for, in natural language
        scope: 'user' or 'project'
    """
    return format_search(await get_engine().search(query, scope=scope))


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_list(scope: str | None = None, limit: int = 20, page: int = 1) -> str:
    """List memories, newest first.

    Args:
        scope: 'user', 'project', or omit for every partition
        limit: Page size (default 20)
        page: 1-based page number
    """
    return format_list(await get_engine().list_memories(scope, limit=limit, page=page))


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_delete(memory_id: str) -> str:
    """Delete a memory by its exact ID.

    Args:
        memory_id: The full memory ID (mem_...)
    """
    result = await get_engine().delete(memory_id)
    if not result.success:
        return f"Error: {result.error}"
    return f"Deleted memory {memory_id}"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_bulk_delete(memory_ids: list[str]) -> str:
    """Delete several memories by exact ID.

    Args:
        memory_ids: Full memory IDs
    """
    result = await get_engine().bulk_delete(memory_ids)
    if not result.success and not result.failed:
        return f"Error: {result.error}"
    lines = [f"Deleted {result.deleted} memories"]
    if result.not_found:
        lines.append(f"Not found: {', '.join(result.not_found)}")
    if result.failed:
        lines.append(f"Error: {result.error}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_update(memory_id: str, content: str | None = None, type: str | None = None) -> str:
    """Update an existing memory.

    Args:
        memory_id: The full memory ID
        content: New content (re-embeds if changed)
        type: New memory type
    """
    result = await get_engine().update(memory_id, content=content, type=type)
    if not result.success:
        return f"Error: {result.error}"
    return f"Updated memory {memory_id}" + (" (re-embedded)" if result.reembedded else "")


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_profile(scope: str = "user") -> str:
    """Preferences (static) and recent facts (dynamic) for a partition.

    Args:
        scope: 'user' or 'project'
    """
    return format_profile(await get_engine().profile(scope))


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get memory system statistics - total, by scope, by type, known partitions."""
    engine = get_engine()
    stats = format_stats(await engine.stats())
    if stats.startswith("Error") or stats.startswith("No memories"):
        return stats
    return stats + "\n\n" + format_tags(await engine.list_tags())


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_health() -> str:
    """Get memory system health status - database, embedding model, configuration."""
    engine = get_engine()
    status = engine.status()
    embedder = engine.embedder
    return "\n".join(
        [
            "=== Memory Health Status ===",
            f"Database: {'✓ connected' if status['db_connected'] else '✗ not connected'}",
            f"Embedding model: {embedder.model_name} "
            f"({'✓ loaded' if status['model_loaded'] else '✗ not loaded'})",
            f"Embedding backend: {embedder.backend_name or 'not selected'}",
            f"Embedding cache: FIFO ({embedder.cache_size}/{embedder.max_cache_size})",
            f"Auto-capture: {'enabled' if engine.capture.is_enabled else 'disabled'}",
            f"Extraction provider: {engine.config.memory_provider}",
            f"Ready: {'yes' if status['ready'] else 'no'}",
        ]
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def capture_message(session_id: str, role: str, content: str) -> str:
    """Record a conversation message for automatic capture.

    Args:
        session_id: Host session identifier
        role: 'user' or 'assistant'
        content: Message text
    """
    get_engine().record_message(session_id, role, content)
    return "ok"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def capture_tool(session_id: str, name: str, args: Any = None, result: str = "") -> str:
    """Record a tool execution for automatic capture.

    Args:
        session_id: Host session identifier
        name: Tool name
        args: Tool arguments
        result: Tool output
    """
    get_engine().record_tool(session_id, name, args, result)
    return "ok"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def capture_file_edit(session_id: str) -> str:
    """Record that a file was edited in the session.

    Args:
        session_id: Host session identifier
    """
    get_engine().record_file_edit(session_id)
    return "ok"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def session_idle(session_id: str, ctx: Context) -> str:
    """Signal the end of an assistant turn; captures memories when a threshold is met.

    Args:
        session_id: Host session identifier
    """
    report = await get_engine().session_idle(
        session_id, session_summarizer(ctx), session_notifier(ctx)
    )
    return "No capture needed" if report is None else format_capture_report(report)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def session_end(session_id: str, ctx: Context) -> str:
    """Signal the end of a session; captures what is left and forgets the session.

    Args:
        session_id: Host session identifier
    """
    report = await get_engine().session_end(
        session_id, session_summarizer(ctx), session_notifier(ctx)
    )
    return "Session closed" if report is None else format_capture_report(report)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def auto_capture_toggle() -> str:
    """Turn automatic capture on or off."""
    enabled = get_engine().toggle_auto_capture()
    return f"Auto-capture {'enabled' if enabled else 'disabled'}"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def auto_capture_stats(session_id: str) -> str:
    """Show buffered activity and capture state for a session.

    Args:
        session_id: Host session identifier
    """
    return format_capture_status(get_engine().capture_stats(session_id))


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def auto_capture_force(session_id: str, ctx: Context) -> str:
    """Capture memories from the session now, ignoring thresholds.

    Args:
        session_id: Host session identifier
    """
    report = await get_engine().force_capture(
        session_id, session_summarizer(ctx), session_notifier(ctx)
    )
    return format_capture_report(report)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def profile_analyze(session_id: str, prompts: list[str] | None = None) -> str:
    """Learn user preferences, patterns and workflows from prompts.

    Args:
        session_id: Host session identifier
        prompts: Prompts to analyze (default: the session's recorded user messages)
    """
    return format_profile_analysis(await get_engine().analyze_profile(session_id, prompts))


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server with the engine warmed up."""
    engine = get_engine()
    try:
        await engine.warmup()
    except Exception as e:
        logger.error("Warm-up failed, will retry on first use: %s", e)
    try:
        await mcp.run_stdio_async()
    finally:
        engine.close()


def main():
    """Entry point."""
    configure_logging(CONFIG.log_path)
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
