"""Function schemas (chat-completion ``tools`` format) offered to the extraction model."""

from __future__ import annotations

from typing import Any

from config import MEMORY_TYPES

SAVE_MEMORIES_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "save_memories",
        "description": "Save the distinct, long-term-worthy memories extracted from the conversation.",
        "parameters": {
            "type": "object",
            "properties": {
                "memories": {
                    "type": "array",
                    "description": "Extracted memories; empty when nothing is worth remembering.",
                    "items": {
                        "type": "object",
                        "properties": {
                            "summary": {
                                "type": "string",
                                "description": "Clear, concise summary (max 200 chars)",
                            },
                            "scope": {"type": "string", "enum": ["user", "project"]},
                            "type": {"type": "string", "enum": sorted(MEMORY_TYPES)},
                            "reasoning": {
                                "type": "string",
                                "description": "Why this is worth remembering",
                            },
                        },
                        "required": ["summary", "scope", "type"],
                    },
                }
            },
            "required": ["memories"],
        },
    },
}

UPDATE_USER_PROFILE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "update_user_profile",
        "description": "Record the user's preferences, recurring patterns and workflows.",
        "parameters": {
            "type": "object",
            "properties": {
                "preferences": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "category": {"type": "string"},
                            "description": {"type": "string"},
                            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                            "evidence": {
                                "type": "array",
                                "items": {"type": "string"},
                                "minItems": 1,
                            },
                        },
                        "required": ["category", "description", "confidence", "evidence"],
                    },
                },
                "patterns": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "category": {"type": "string"},
                            "description": {"type": "string"},
                        },
                        "required": ["category", "description"],
                    },
                },
                "workflows": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "description": {"type": "string"},
                            "steps": {
                                "type": "array",
                                "items": {"type": "string"},
                                "minItems": 1,
                            },
                        },
                        "required": ["description", "steps"],
                    },
                },
            },
            "required": ["preferences", "patterns", "workflows"],
        },
    },
}


def tool_name(tool: dict[str, Any]) -> str:
    return tool["function"]["name"]
