import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ErrorKind

# Chat-completions wire shape: {"role", "content"} plus "tool_calls" on
# assistant tool requests and "tool_call_id" on tool results.
Message = Dict[str, Any]
Row = Dict[str, Any]


def system_message(content: str) -> Message:
    return {"role": "system", "content": content}


def user_message(content: str) -> Message:
    return {"role": "user", "content": content}


def assistant_message(content: str) -> Message:
    return {"role": "assistant", "content": content}


def tool_message(tool_call_id: str, content: str) -> Message:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the completion service."""

    id: str
    name: str
    arguments: str
    type: str = "function"

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


def assistant_tool_call_message(
    content: Optional[str], tool_calls: List[ToolCallRequest]
) -> Message:
    return {
        "role": "assistant",
        "content": content or None,
        "tool_calls": [tc.to_wire() for tc in tool_calls],
    }


class ChartType(str, Enum):
    LINE = "LineChart"
    BAR = "BarChart"
    PIE = "PieChart"

    @classmethod
    def parse(cls, value: Any) -> Optional["ChartType"]:
        """Accept the wire value ('BarChart') or its short form ('Bar')."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text.lower() in (member.value.lower(), member.value[:-5].lower()):
                return member
        return None


@dataclass
class ChartSpec:
    """Renderable chart description handed back to the UI."""

    chart_type: ChartType
    data: List[Row]
    x_key: str
    y_keys: List[str]
    title: Optional[str] = None
    colors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "chartType": self.chart_type.value,
            "data": self.data,
            "xKey": self.x_key,
            "yKeys": list(self.y_keys),
            "colors": list(self.colors),
        }
        if self.title:
            spec["title"] = self.title
        return spec


@dataclass(frozen=True)
class ToolSuccess:
    data: Any = None
    stats: Optional[Dict[str, Any]] = None
    chart_spec: Optional[ChartSpec] = None

    def to_envelope(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {"status": "success"}
        if self.data is not None:
            envelope["data"] = self.data
        if self.stats is not None:
            envelope["stats"] = self.stats
        if self.chart_spec is not None:
            envelope["chartSpec"] = self.chart_spec.to_dict()
        return envelope


@dataclass(frozen=True)
class ToolError:
    error_kind: ErrorKind
    message: str

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "errorKind": self.error_kind.value,
            "message": self.message,
        }


ToolResult = Union[ToolSuccess, ToolError]


def envelope_json(result: ToolResult) -> str:
    """Serialize a tool result for the content of a tool message."""
    return json.dumps(result.to_envelope(), default=str)


@dataclass
class SessionRecord:
    """Durable per-session state: model-facing history plus UI display state."""

    session_id: str
    history: List[Message] = field(default_factory=list)
    ui_messages: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "history": self.history,
            "ui_messages": self.ui_messages,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=str(data.get("session_id", "")),
            history=list(data.get("history") or []),
            ui_messages=list(data.get("ui_messages") or []),
        )


@dataclass
class TurnResult:
    """Outcome of one user-message-to-answer cycle."""

    text: str
    session_id: str
    chart_spec: Optional[ChartSpec] = None
    tool_calls_count: int = 0
    attempts: int = 0

    def to_response(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "chartSpec": self.chart_spec.to_dict() if self.chart_spec else None,
            "sessionId": self.session_id,
        }
