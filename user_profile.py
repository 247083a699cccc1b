"""Learn the user's preferences and habits from their recent prompts.

The analyzer asks the tool-calling model for an ``update_user_profile`` call
and turns the validated document into memories in the user partition:
preferences become ``preference`` memories (the static half of ``profile()``),
patterns and workflows become ``learned-pattern`` memories.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from auto_capture import is_duplicate
from extraction import ErrorKind
from tool_schemas import UPDATE_USER_PROFILE_TOOL
from utils import ProjectInfo, get_container_tags, now_ms
from validators import validate_user_profile

if TYPE_CHECKING:
    from config import Config
    from extraction import OpenAIChatProvider
    from store import VectorStore

logger = logging.getLogger(__name__)

PROFILE_SYSTEM_PROMPT = (
    "You analyze a developer's prompts to an AI coding assistant and record what "
    "they consistently prefer and how they work. Always answer by calling the "
    "provided tool."
)

MAX_PROMPT_CHARS = 1000


def build_profile_prompt(prompts: list[str]) -> str:
    numbered = "\n".join(
        f"{i}. {p.strip()[:MAX_PROMPT_CHARS]}" for i, p in enumerate(prompts, 1) if p.strip()
    )
    return f"""Analyze these {len(prompts)} prompts written by the same user.

Identify:
- preferences: stable choices (languages, libraries, style, response format).
  Give a confidence between 0 and 1 and quote the prompts that show it as evidence.
- patterns: recurring behaviours (e.g. "asks for tests after every change").
- workflows: repeated multi-step procedures, as ordered steps.

Only report what the prompts actually show. Use empty lists when nothing qualifies.

Prompts:
{numbered}"""


@dataclass(slots=True)
class ProfileAnalysis:
    success: bool
    saved: list[str] = field(default_factory=list)
    preferences: int = 0
    patterns: int = 0
    workflows: int = 0
    duplicates: int = 0
    iterations: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None


def _profile_entries(data: dict[str, Any]) -> list[tuple[str, str, dict[str, Any]]]:
    """(kind, content, extra metadata) for every item in a validated profile."""
    entries = []
    for pref in data.get("preferences") or []:
        entries.append(
            (
                "preference",
                pref["description"].strip(),
                {
                    "category": pref["category"],
                    "confidence": float(pref["confidence"]),
                    "evidence": list(pref["evidence"]),
                },
            )
        )
    for pattern in data.get("patterns") or []:
        entries.append(
            ("pattern", pattern["description"].strip(), {"category": pattern["category"]})
        )
    for workflow in data.get("workflows") or []:
        steps = [str(s) for s in workflow["steps"]]
        entries.append(
            (
                "workflow",
                f"{workflow['description'].strip()}: {' -> '.join(steps)}",
                {"steps": steps},
            )
        )
    return entries


class UserProfileAnalyzer:
    def __init__(
        self, config: Config, store: VectorStore, provider: OpenAIChatProvider | None
    ) -> None:
        self.config = config
        self.store = store
        self.provider = provider

    async def analyze(
        self, session_id: str, prompts: list[str], project: ProjectInfo
    ) -> ProfileAnalysis:
        if self.provider is None:
            return ProfileAnalysis(
                success=False,
                error="Profile analysis requires the openai-chat provider",
                error_kind=ErrorKind.UNAVAILABLE,
            )
        prompts = [p for p in prompts if p and p.strip()]
        if not prompts:
            return ProfileAnalysis(success=False, error="No prompts to analyze")

        result = await self.provider.execute_tool_call(
            PROFILE_SYSTEM_PROMPT,
            build_profile_prompt(prompts),
            UPDATE_USER_PROFILE_TOOL,
            session_id,
            validate_user_profile,
        )
        if not result.success:
            logger.warning("Profile analysis failed: %s", result.error)
            return ProfileAnalysis(
                success=False,
                iterations=result.iterations,
                error=result.error,
                error_kind=result.error_kind,
            )

        analysis = ProfileAnalysis(success=True, iterations=result.iterations)
        user_tag = get_container_tags(project).user
        for kind, content, extra in _profile_entries(result.data or {}):
            if not content:
                continue
            if await is_duplicate(self.store, content, user_tag, self.config.dedup_threshold):
                analysis.duplicates += 1
                continue

            added = await self.store.add_memory(
                content,
                user_tag,
                {
                    "type": "preference" if kind == "preference" else "learned-pattern",
                    "source": "user-profile",
                    "profile_kind": kind,
                    "session_id": session_id,
                    "analyzed_at": now_ms(),
                    **extra,
                    **project.attribution(),
                },
            )
            if not added.success or not added.id:
                logger.warning("Profile memory not saved: %s", added.error)
                continue
            analysis.saved.append(added.id)
            if kind == "preference":
                analysis.preferences += 1
            elif kind == "pattern":
                analysis.patterns += 1
            else:
                analysis.workflows += 1

        logger.info(
            "Profile analysis: %d preferences, %d patterns, %d workflows saved",
            analysis.preferences,
            analysis.patterns,
            analysis.workflows,
        )
        return analysis
