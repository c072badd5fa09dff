import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from ..models import Message, ToolCallRequest
from ..settings import Settings

logger = logging.getLogger(__name__)


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FinishReason":
        try:
            return cls(value)
        except ValueError:
            return cls.STOP


@dataclass
class Completion:
    """One chat-completion result, reduced to what the orchestrator needs."""

    finish_reason: FinishReason
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    @property
    def text(self) -> str:
        return (self.content or "").strip()


class CompletionService(Protocol):
    async def complete(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        tool_choice: str,
        max_tokens: Optional[int] = None,
    ) -> Completion: ...


def _tool_call_request(call: Any) -> ToolCallRequest:
    call_type = getattr(call, "type", "function") or "function"
    function = getattr(call, "function", None)
    return ToolCallRequest(
        id=getattr(call, "id", "") or "",
        name=getattr(function, "name", "") or "",
        arguments=getattr(function, "arguments", "") or "",
        type=call_type,
    )


class OpenAICompletionService:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """Return the AsyncOpenAI client, creating it on first use."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                timeout=self._settings.request_timeout_seconds,
            )
        return self._client

    async def complete(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        tool_choice: str,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """Request one completion.

        Args:
            messages: Full message list in chat-completions format.
            tools: Function-tool schemas.
            tool_choice: "auto" or "none".
            max_tokens: Completion budget; defaults to settings.max_completion_tokens.

        Returns:
            Completion: finish reason, text content and requested tool calls.
        """
        response = await self.client.chat.completions.create(
            model=self._settings.model,
            messages=messages,
            tools=tools or None,
            tool_choice=tool_choice if tools else None,
            max_completion_tokens=max_tokens or self._settings.max_completion_tokens,
        )
        if not response.choices:
            raise ValueError("Completion response contained no choices")

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        logger.debug(
            "Completion finish_reason=%s tool_calls=%d usage=%s",
            choice.finish_reason,
            len(choice.message.tool_calls or []),
            usage,
        )
        return Completion(
            finish_reason=FinishReason.parse(choice.finish_reason),
            content=choice.message.content,
            tool_calls=[_tool_call_request(c) for c in choice.message.tool_calls or []],
        )
