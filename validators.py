"""Schema checks for structured output returned by the extraction model.

Validation never stops at the first problem: every violation is collected so
the retry prompt (or the caller) can report the complete list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Callable

from config import MEMORY_TYPES

SCOPES = frozenset({"user", "project"})


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] | None = None


Validator = Callable[[Any], ValidationResult]


def _check_object(data: Any) -> list[str]:
    """Top-level rules shared by every structured result."""
    if data is None or isinstance(data, (str, bytes, Real, bool)):
        return ["Response is not an object"]
    if isinstance(data, list):
        return ["Response cannot be an array"]
    if not isinstance(data, dict):
        return ["Response is not an object"]
    if not data:
        return ["Response object is empty"]
    return [f"Field '{key}' is null or undefined" for key, value in data.items() if value is None]


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _check_items(
    name: str, items: Any, check: Callable[[str, dict[str, Any]], list[str]]
) -> list[str]:
    if not isinstance(items, list):
        return [f"{name} must be an array"]
    errors: list[str] = []
    for i, item in enumerate(items):
        label = f"{name}[{i}]"
        if not isinstance(item, dict):
            errors.append(f"{label} is not an object")
            continue
        errors.extend(check(label, item))
    return errors


def _check_non_empty_list(label: str, value: Any) -> list[str]:
    if not isinstance(value, list):
        return [f"{label} must be an array"]
    if not value:
        return [f"{label} cannot be empty"]
    return []


# =============================================================================
# User profile
# =============================================================================


def _check_preference(label: str, pref: dict[str, Any]) -> list[str]:
    errors = []
    if not _is_text(pref.get("category")):
        errors.append(f"{label}.category is missing or invalid")
    if not _is_text(pref.get("description")):
        errors.append(f"{label}.description is missing or invalid")
    if not _is_number(pref.get("confidence")):
        errors.append(f"{label}.confidence is missing or invalid")
    errors.extend(_check_non_empty_list(f"{label}.evidence", pref.get("evidence")))
    return errors


def _check_pattern(label: str, pattern: dict[str, Any]) -> list[str]:
    errors = []
    if not _is_text(pattern.get("category")):
        errors.append(f"{label}.category is missing or invalid")
    if not _is_text(pattern.get("description")):
        errors.append(f"{label}.description is missing or invalid")
    return errors


def _check_workflow(label: str, workflow: dict[str, Any]) -> list[str]:
    errors = []
    if not _is_text(workflow.get("description")):
        errors.append(f"{label}.description is missing or invalid")
    errors.extend(_check_non_empty_list(f"{label}.steps", workflow.get("steps")))
    return errors


def validate_user_profile(data: Any) -> ValidationResult:
    """Validate a user-profile document (preferences, patterns, workflows)."""
    errors = _check_object(data)
    if errors:
        return ValidationResult(valid=False, errors=errors)

    if "preferences" in data:
        errors.extend(_check_items("preferences", data["preferences"], _check_preference))
    if "patterns" in data:
        errors.extend(_check_items("patterns", data["patterns"], _check_pattern))
    if "workflows" in data:
        errors.extend(_check_items("workflows", data["workflows"], _check_workflow))

    if errors:
        return ValidationResult(valid=False, errors=errors)
    return ValidationResult(valid=True, data=data)


# =============================================================================
# Auto-capture memory batch
# =============================================================================


def _check_memory_entry(label: str, entry: dict[str, Any]) -> list[str]:
    errors = []
    if not _is_text(entry.get("summary")):
        errors.append(f"{label}.summary is missing or invalid")
    if entry.get("scope") not in SCOPES:
        errors.append(f"{label}.scope must be one of {sorted(SCOPES)}")
    if entry.get("type") not in MEMORY_TYPES:
        errors.append(f"{label}.type must be one of {sorted(MEMORY_TYPES)}")
    return errors


def validate_memory_batch(data: Any) -> ValidationResult:
    """Validate a ``{"memories": [...]}`` capture result. An empty list is valid."""
    errors = _check_object(data)
    if errors:
        return ValidationResult(valid=False, errors=errors)

    if "memories" not in data:
        return ValidationResult(valid=False, errors=["memories is missing"])
    errors.extend(_check_items("memories", data["memories"], _check_memory_entry))

    if errors:
        return ValidationResult(valid=False, errors=errors)
    return ValidationResult(valid=True, data=data)


def is_valid_memory_entry(entry: Any) -> bool:
    """Minimal check used before persisting a single entry."""
    return isinstance(entry, dict) and not _check_memory_entry("memory", entry)
