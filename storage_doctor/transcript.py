"""Textual encodings of tool traffic inside the conversation.

Tool calls are recorded in assistant turns as <function_call> markers and
tool results travel back as <tool_result> user turns, so the history stays
plain text for both vendors.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from .models import ToolCall

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

_FUNCTION_CALL_RE = re.compile(r"<function_call>(.*?)</function_call>", re.DOTALL)
_COMMAND_RE = re.compile(r"\[COMMAND:\s*(.+?)\]")
_READ_FILE_RE = re.compile(r"\[READ_FILE:\s*(.+?)\]")
_WRITE_FILE_RE = re.compile(r"\[WRITE_FILE:\s*(.+?)\]\s*```[^\n]*\n(.*?)```", re.DOTALL)
_SEARCH_RE = re.compile(r"\[SEARCH:\s*(.+?)\]")


@dataclass
class ParsedAction:
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    type: str = "function_call"


def format_tool_result(name: str, result: str, success: bool) -> str:
    status = STATUS_SUCCESS if success else STATUS_FAILURE
    return f'<tool_result name="{name}" status="{status}">{result}</tool_result>'


def format_function_call(call: ToolCall) -> str:
    """Marker appended to an assistant turn for each tool call it made."""
    payload = json.dumps(
        {"name": call.name, "input": call.input},
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )
    return f"\n<function_call>{payload}</function_call>"


def parse_response(text: str) -> tuple[list[ParsedAction], str]:
    """Extract tool requests written inline by a model without native tool use.

    Recognizes <function_call>{json}</function_call> blocks plus the
    [COMMAND: ...], [READ_FILE: ...], [WRITE_FILE: path] ```...``` and
    [SEARCH: ...] shorthands. Returns the actions and the remaining text,
    stripped. Function-call blocks with malformed JSON are left in the text.
    """
    actions: list[ParsedAction] = []

    def function_call(m: re.Match) -> str:
        try:
            data = json.loads(m.group(1))
        except json.JSONDecodeError:
            return m.group(0)
        if not isinstance(data, dict):
            return m.group(0)
        params = data.get("input")
        actions.append(
            ParsedAction(
                tool_name=data.get("name") or "",
                parameters=params if isinstance(params, dict) else {},
                description=data.get("description") or "",
            )
        )
        return ""

    text = _FUNCTION_CALL_RE.sub(function_call, text)

    def command(m: re.Match) -> str:
        actions.append(
            ParsedAction(
                "execute_command",
                {"command": m.group(1).strip(), "description": "command suggested by the model"},
            )
        )
        return ""

    def read_file(m: re.Match) -> str:
        actions.append(ParsedAction("read_file", {"path": m.group(1).strip()}))
        return ""

    def write_file(m: re.Match) -> str:
        actions.append(
            ParsedAction(
                "write_file", {"path": m.group(1).strip(), "content": m.group(2).strip()}
            )
        )
        return ""

    def search(m: re.Match) -> str:
        actions.append(ParsedAction("search_web", {"query": m.group(1).strip()}))
        return ""

    text = _COMMAND_RE.sub(command, text)
    text = _READ_FILE_RE.sub(read_file, text)
    text = _WRITE_FILE_RE.sub(write_file, text)
    text = _SEARCH_RE.sub(search, text)

    return actions, text.strip()
