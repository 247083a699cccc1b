"""Structured extraction of memories and profiles from a language model.

Two paths are supported:

- Tool calling against an OpenAI-compatible chat-completion API: one function
  schema is declared and forced, the reply is validated, and corrective
  instructions are sent back until the model complies or the iteration budget
  runs out. Timeouts and transport errors abort immediately.
- Free-form JSON from a plain text model (the session's own model through MCP
  sampling, or Gemini). Unparseable text is kept as one fallback memory.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import requests
from pydantic import BaseModel, Field, ValidationError

from config import get_google_api_key
from tool_schemas import SAVE_MEMORIES_TOOL, tool_name
from utils import strip_code_fence
from validators import Validator, validate_memory_batch

if TYPE_CHECKING:
    from config import Config

logger = logging.getLogger(__name__)

RETRY_PROMPT = "Please call the {tool} tool as instructed to return the result."
FALLBACK_CHARS = 500

CAPTURE_SYSTEM_PROMPT = (
    "You are a memory extraction assistant for an AI coding agent. You read recent "
    "conversation activity and save only knowledge worth keeping long term. Always "
    "answer by calling the provided tool."
)

Summarizer = Callable[[str], Awaitable[str]]


# =============================================================================
# Chat-completion response (parsed once at the transport boundary)
# =============================================================================


class ToolFunction(BaseModel):
    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    id: str | None = None
    type: str = "function"
    function: ToolFunction


class ChatMessage(BaseModel):
    role: str = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None

    def to_history(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Choice(BaseModel):
    message: ChatMessage
    finish_reason: str | None = None


class ChatCompletion(BaseModel):
    choices: list[Choice] = Field(min_length=1)


@dataclass(frozen=True, slots=True)
class MalformedResponse:
    reason: str


def parse_chat_completion(payload: Any) -> ChatCompletion | MalformedResponse:
    try:
        return ChatCompletion.model_validate(payload)
    except ValidationError as e:
        return MalformedResponse(reason=f"{e.error_count()} schema error(s)")


# =============================================================================
# Results
# =============================================================================


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    INVALID_RESPONSE = "invalid_response"
    EXHAUSTED = "exhausted"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class ToolCallResult:
    success: bool
    iterations: int = 0
    data: dict[str, Any] | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


class ExtractionError(RuntimeError):
    def __init__(self, message: str, kind: ErrorKind, iterations: int = 0) -> None:
        super().__init__(message)
        self.kind = kind
        self.iterations = iterations


@dataclass(slots=True)
class Extraction:
    memories: list[dict[str, Any]] = field(default_factory=list)
    fallback: bool = False
    iterations: int = 0


# =============================================================================
# Conversation history
# =============================================================================


class ConversationHistory:
    """Chat history kept across extraction calls, one thread per session and tool.

    Each tool has its own system prompt, so capture and profile analysis on
    the same session never share turns.
    """

    def __init__(self) -> None:
        self._threads: dict[tuple[str, str], list[dict[str, Any]]] = {}

    def messages(self, session_id: str, tool: str) -> list[dict[str, Any]]:
        return self._threads.setdefault((session_id, tool), [])

    def clear(self, session_id: str) -> None:
        for key in [k for k in self._threads if k[0] == session_id]:
            del self._threads[key]


# =============================================================================
# Tool-calling provider
# =============================================================================


class OpenAIChatProvider:
    """Drives the bounded tool-call loop against ``{api_url}/chat/completions``."""

    def __init__(
        self,
        config: Config,
        history: ConversationHistory | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self.api_url = (config.memory_api_url or "").rstrip("/")
        self.api_key = config.memory_api_key
        self.model = config.memory_model
        self.temperature = config.memory_temperature
        self.max_iterations = config.max_iterations
        self.iteration_timeout = config.iteration_timeout
        self.history = history or ConversationHistory()
        self._http = http or requests.Session()

    def _post(self, body: dict[str, Any]) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return self._http.post(
            f"{self.api_url}/chat/completions",
            json=body,
            headers=headers,
            timeout=self.iteration_timeout,
        )

    @staticmethod
    def _answer_tool_calls(
        messages: list[dict[str, Any]], calls: list[ToolCall], content: str
    ) -> None:
        # Every assistant tool call must be followed by a tool message.
        for call in calls:
            messages.append({"role": "tool", "tool_call_id": call.id or "", "content": content})

    async def execute_tool_call(
        self,
        system_prompt: str,
        user_prompt: str,
        tool_schema: dict[str, Any],
        session_id: str,
        validator: Validator,
    ) -> ToolCallResult:
        name = tool_name(tool_schema)
        messages = self.history.messages(session_id, name)
        if not messages:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        iterations = 0
        while iterations < self.max_iterations:
            iterations += 1
            body = {
                "model": self.model,
                "messages": list(messages),
                "tools": [tool_schema],
                "tool_choice": {"type": "function", "function": {"name": name}},
                "temperature": self.temperature,
            }

            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(self._post, body), timeout=self.iteration_timeout
                )
            except (asyncio.TimeoutError, requests.Timeout):
                logger.warning("Chat completion timeout (iteration %d)", iterations)
                return ToolCallResult(
                    success=False,
                    iterations=iterations,
                    error=f"API request timeout ({self.iteration_timeout}s)",
                    error_kind=ErrorKind.TIMEOUT,
                )
            except requests.RequestException as e:
                logger.warning("Chat completion transport error: %s", e)
                return ToolCallResult(
                    success=False,
                    iterations=iterations,
                    error=str(e),
                    error_kind=ErrorKind.TRANSPORT,
                )

            if not response.ok:
                detail = response.text or response.reason
                logger.warning(
                    "Chat completion API error status=%s iteration=%d: %s",
                    response.status_code,
                    iterations,
                    detail,
                )
                return ToolCallResult(
                    success=False,
                    iterations=iterations,
                    error=f"API error: {response.status_code} - {detail}",
                    error_kind=ErrorKind.TRANSPORT,
                )

            try:
                payload = response.json()
            except ValueError:
                payload = None
            parsed = parse_chat_completion(payload)
            if isinstance(parsed, MalformedResponse):
                return ToolCallResult(
                    success=False,
                    iterations=iterations,
                    error=f"Invalid API response format: {parsed.reason}",
                    error_kind=ErrorKind.INVALID_RESPONSE,
                )

            message = parsed.choices[0].message
            messages.append(message.to_history())
            calls = message.tool_calls or []
            call = next((c for c in calls if c.function.name == name), None)

            if call is None:
                self._answer_tool_calls(messages, calls, f"Unknown tool. Use {name}.")
                retry = RETRY_PROMPT.format(tool=name)
            else:
                try:
                    arguments = json.loads(call.function.arguments)
                except json.JSONDecodeError as e:
                    violations = [f"arguments are not valid JSON: {e.msg}"]
                else:
                    result = validator(arguments)
                    if result.valid:
                        self._answer_tool_calls(messages, calls, "Saved.")
                        return ToolCallResult(success=True, iterations=iterations, data=result.data)
                    violations = result.errors

                logger.warning(
                    "Tool response validation failed (iteration %d): %s",
                    iterations,
                    "; ".join(violations),
                )
                self._answer_tool_calls(messages, calls, "Validation failed: " + "; ".join(violations))
                retry = RETRY_PROMPT.format(tool=name) + " Fix these problems: " + "; ".join(violations)

            messages.append({"role": "user", "content": retry})

        return ToolCallResult(
            success=False,
            iterations=iterations,
            error=f"Max iterations ({self.max_iterations}) reached without a valid tool call",
            error_kind=ErrorKind.EXHAUSTED,
        )


# =============================================================================
# Free-form JSON path
# =============================================================================


def fallback_memory(raw: str) -> dict[str, Any]:
    return {
        "summary": raw[:FALLBACK_CHARS],
        "scope": "project",
        "type": "conversation",
        "reasoning": "Fallback capture due to parse error",
    }


def parse_capture_response(raw: str) -> Extraction:
    """Parse ``{"memories": [...]}`` text; keep the raw text when it is not JSON."""
    try:
        parsed = json.loads(strip_code_fence(raw))
        if not isinstance(parsed, dict) or not isinstance(parsed.get("memories"), list):
            raise ValueError("Invalid response format")
        return Extraction(memories=parsed["memories"])
    except ValueError as e:
        logger.warning("Auto-capture: JSON parse failed, using fallback: %s", e)
        return Extraction(memories=[fallback_memory(raw)], fallback=True)


class GeminiSummarizer:
    """Free-form text generation with Gemini."""

    def __init__(self, config: Config, client: Any = None) -> None:
        self.model = config.gemini_model
        self.timeout = config.iteration_timeout
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            api_key = get_google_api_key()
            if not api_key:
                raise ValueError(
                    "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
                )
            from google import genai

            self._client = genai.Client(api_key=api_key)
        return self._client

    def _generate(self, prompt: str) -> str:
        response = self._get_client().models.generate_content(model=self.model, contents=prompt)
        return (response.text or "").strip()

    async def __call__(self, prompt: str) -> str:
        return await asyncio.wait_for(asyncio.to_thread(self._generate, prompt), timeout=self.timeout)


# =============================================================================
# Memory extraction
# =============================================================================


class MemoryExtractor:
    """Chooses the tool-calling path when configured, the free-form path otherwise."""

    def __init__(
        self,
        provider: OpenAIChatProvider | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.provider = provider
        self.summarizer = summarizer

    async def extract(
        self, session_id: str, prompt: str, summarizer: Summarizer | None = None
    ) -> Extraction:
        if self.provider is not None:
            result = await self.provider.execute_tool_call(
                CAPTURE_SYSTEM_PROMPT, prompt, SAVE_MEMORIES_TOOL, session_id, validate_memory_batch
            )
            if not result.success:
                raise ExtractionError(
                    result.error or "Extraction failed",
                    result.error_kind or ErrorKind.TRANSPORT,
                    result.iterations,
                )
            return Extraction(
                memories=list((result.data or {}).get("memories", [])),
                iterations=result.iterations,
            )

        summarizer = summarizer or self.summarizer
        if summarizer is None:
            raise ExtractionError("No extraction model available", ErrorKind.UNAVAILABLE)
        try:
            raw = await summarizer(prompt)
        except asyncio.TimeoutError as e:
            raise ExtractionError("Summary request timed out", ErrorKind.TIMEOUT) from e
        if not raw:
            raise ExtractionError("Failed to generate summary", ErrorKind.TRANSPORT)
        return parse_capture_response(raw)

    def forget(self, session_id: str) -> None:
        if self.provider is not None:
            self.provider.history.clear(session_id)
