"""Shared utility functions for code-memory-mcp."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_PREFIX = "[code-memory]"
MAX_LOG_BYTES = 5 * 1024 * 1024


def configure_logging(log_path: Path | None = None, level: int = logging.INFO) -> None:
    """Send log records to stderr, and to a rotating file when ``log_path`` is set.

    stdout is reserved for the MCP stdio transport.
    """
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(f"{LOG_PREFIX} %(levelname)s %(name)s: %(message)s")

    if not any(getattr(h, "_code_memory", False) for h in root.handlers):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        stream._code_memory = True  # type: ignore[attr-defined]
        root.addHandler(stream)

        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(log_path, maxBytes=MAX_LOG_BYTES, backupCount=1)
            file_handler.setFormatter(
                logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
            )
            file_handler._code_memory = True  # type: ignore[attr-defined]
            root.addHandler(file_handler)


def normalize_git_url(url: str) -> str:
    """Normalize git URLs to canonical format: provider.com/owner/repo

    Examples:
        git@github.com:wb200/memory-mcp.git -> github.com/wb200/memory-mcp
        https://github.com/wb200/memory-mcp.git -> github.com/wb200/memory-mcp
        git@gitlab.com:owner/project -> gitlab.com/owner/project
    """
    url = url.removesuffix(".git")

    # SSH format: git@github.com:owner/repo -> github.com/owner/repo
    ssh_match = re.match(r"git@([^:]+):(.+)", url)
    if ssh_match:
        return f"{ssh_match.group(1)}/{ssh_match.group(2)}"

    # HTTPS format: https://github.com/owner/repo -> github.com/owner/repo
    https_match = re.match(r"https?://(.+)", url)
    if https_match:
        return https_match.group(1)

    return url


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso(timestamp: Any) -> str:
    """Render an epoch-millisecond value as ISO-8601, falling back to now."""
    try:
        value = int(timestamp)
        if value < 0:
            raise ValueError(value)
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(tz=timezone.utc).isoformat()


def generate_memory_id() -> str:
    """Time-based id with a random suffix: ``mem_<epoch ms>_<9 hex chars>``."""
    return f"mem_{now_ms()}_{uuid.uuid4().hex[:9]}"


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def safe_json_loads(value: Any) -> Any:
    """Parse a JSON string, returning ``None`` instead of raising."""
    if not value or not isinstance(value, str):
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return None


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```)."""
    text = text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1].removeprefix("json").strip()
    return text


# =============================================================================
# Project / user identity
# =============================================================================


def _git(args: list[str], cwd: str | None = None) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=2,
            cwd=cwd,
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (OSError, subprocess.SubprocessError):  # git may not be available
        pass
    return None


@dataclass(frozen=True, slots=True)
class ProjectInfo:
    """Provenance attached to every memory written for a directory."""

    project_path: str
    project_name: str
    git_repo_url: str | None = None
    user_name: str | None = None
    user_email: str | None = None

    @property
    def display_name(self) -> str:
        return self.user_name or self.user_email or "anonymous"

    def attribution(self) -> dict[str, str | None]:
        return {
            "display_name": self.display_name,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "project_path": self.project_path,
            "project_name": self.project_name,
            "git_repo_url": self.git_repo_url,
        }


@dataclass(frozen=True, slots=True)
class ContainerTags:
    user: str
    project: str

    def for_scope(self, scope: str) -> str:
        return self.user if scope == "user" else self.project


def get_project_info(directory: str | None = None) -> ProjectInfo:
    """Collect project and user identity from git, falling back to the path."""
    path = str(Path(directory or Path.cwd()).resolve())
    remote = _git(["config", "--get", "remote.origin.url"], cwd=path)
    return ProjectInfo(
        project_path=path,
        project_name=Path(path).name,
        git_repo_url=normalize_git_url(remote) if remote else None,
        user_name=_git(["config", "user.name"], cwd=path),
        user_email=_git(["config", "user.email"], cwd=path),
    )


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def get_container_tags(info: ProjectInfo) -> ContainerTags:
    """Partition keys for the user scope and the project scope.

    The user tag follows the git identity so it is shared across projects;
    the project tag follows the repository (or the path when not a repo).
    """
    user_key = info.user_email or info.user_name or "anonymous"
    project_key = info.git_repo_url or info.project_path
    return ContainerTags(
        user=f"codemem_user_{_short_hash(user_key)}",
        project=f"codemem_project_{_short_hash(project_key)}",
    )


def scope_of(container_tag: str | None) -> str:
    return "user" if container_tag and "_user_" in container_tag else "project"
