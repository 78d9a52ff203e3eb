"""Conversation, tool and stream-event types shared by providers and the agent."""

from dataclasses import dataclass, field
from typing import Any

ROLES = ("system", "user", "assistant")


@dataclass
class Message:
    role: str  # system | user | assistant (tool results travel as user turns)
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Tool:
    """A capability the model may request, described by a JSON-schema document."""

    name: str
    description: str
    input_schema: dict


@dataclass(frozen=True)
class ToolCall:
    """A completed tool request assembled from the stream.

    raw_arguments keeps the accumulated argument text exactly as streamed;
    arguments_valid is False when that text never parsed as a JSON object,
    in which case input holds whatever the declaration carried (usually {}).
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""
    arguments_valid: bool = True


# -- Stream events -----------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    index: int
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgumentChunk:
    index: int
    fragment: str


@dataclass(frozen=True)
class ToolCallCompleted:
    call: ToolCall


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamError:
    kind: str
    message: str = ""


StreamEvent = (
    TextDelta
    | ToolCallStarted
    | ToolCallArgumentChunk
    | ToolCallCompleted
    | Done
    | StreamError
)


def message_role(msg) -> str:
    """Role of a Message or a plain {"role": ..., "content": ...} dict."""
    if isinstance(msg, dict):
        return msg.get("role", "")
    return getattr(msg, "role", "")


def message_content(msg) -> str:
    if isinstance(msg, dict):
        return msg.get("content", "") or ""
    return getattr(msg, "content", "") or ""
