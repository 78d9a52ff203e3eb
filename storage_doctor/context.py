"""Conversation state: the ordered message list and its summarization."""

import logging
import threading
from typing import Callable, Sequence

from .models import Message, Tool, ToolCall
from .provider import ChatProvider, ChunkCallback, ToolCallCallback
from .ratelimit import RateLimitObserver
from .report import AgentError, CancelledError, ReportCollector
from .transcript import format_function_call

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Previous conversation summary: "

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a helpful assistant that summarizes conversations "
    "while preserving important technical details."
)

SUMMARY_INSTRUCTION = (
    "Summarize the following conversation concisely. Always keep the important "
    "information (error messages, commands, file paths, etc.):\n\n"
)

DEFAULT_SUMMARIZE_THRESHOLD = 30
DEFAULT_MIN_SUMMARIZE_MESSAGES = 10
DEFAULT_KEEP_RECENT = 5


class ContextManager:
    """Owns one conversation. Not thread-safe; give each task its own instance."""

    def __init__(
        self,
        provider: ChatProvider,
        *,
        summarize_threshold: int = DEFAULT_SUMMARIZE_THRESHOLD,
        min_summarize_messages: int = DEFAULT_MIN_SUMMARIZE_MESSAGES,
        keep_recent: int = DEFAULT_KEEP_RECENT,
        on_warning: Callable[[str], None] | None = None,
        report: ReportCollector | None = None,
    ):
        self.provider = provider
        self.summarize_threshold = summarize_threshold
        self.min_summarize_messages = min_summarize_messages
        self.keep_recent = keep_recent
        self.on_warning = on_warning or logger.warning
        self.report = report
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def add_message(self, role: str, content: str) -> None:
        self._messages.append(Message(role, content))

    def get_messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def clear(self) -> None:
        self._messages = []

    def set_system_prompt(self, text: str) -> None:
        """Replace every system message with a single one at position 0."""
        rest = [m for m in self._messages if m.role != "system"]
        self._messages = [Message("system", text), *rest]

    def stream_chat_with_tools(
        self,
        user_input: str,
        tools: Sequence[Tool],
        on_chunk: ChunkCallback,
        on_tool_call: ToolCallCallback | None = None,
        *,
        cancel: threading.Event | None = None,
        on_rate_limit: RateLimitObserver | None = None,
    ) -> list[ToolCall]:
        """Send user_input, stream the reply, and record it as one assistant turn.

        Tool calls made by the model are appended to the assistant turn as
        <function_call> markers and returned. Provider errors propagate and
        leave no assistant turn behind.
        """
        self.add_message("user", user_input)

        if len(self._messages) > self.summarize_threshold:
            self.summarize(cancel=cancel)

        text: list[str] = []
        calls: list[ToolCall] = []

        def chunk(piece: str) -> None:
            text.append(piece)
            on_chunk(piece)

        def tool_call(call: ToolCall) -> None:
            calls.append(call)
            if on_tool_call is not None:
                on_tool_call(call)

        self.provider.stream_chat(
            list(self._messages),
            tools,
            chunk,
            tool_call,
            cancel=cancel,
            on_rate_limit=on_rate_limit,
        )

        response = "".join(text) + "".join(format_function_call(c) for c in calls)
        self.add_message("assistant", response)
        return calls

    def chat(self, user_input: str, *, cancel: threading.Event | None = None) -> str:
        parts: list[str] = []
        self.stream_chat_with_tools(user_input, [], parts.append, cancel=cancel)
        return "".join(parts)

    def summarize(self, *, cancel: threading.Event | None = None) -> bool:
        """Compress all but the most recent turns into one summary message.

        Returns True when the history was replaced. A failed summary request
        keeps the history untouched and reports through on_warning; only
        cancellation propagates.
        """
        before = len(self._messages)
        if before < self.min_summarize_messages:
            return False

        split = max(before - self.keep_recent, 0)
        older = self._messages[:split]
        recent = self._messages[split:]

        prompt = SUMMARY_INSTRUCTION + "".join(
            f"{m.role}: {m.content}\n" for m in older
        )
        request = [
            Message("system", SUMMARIZER_SYSTEM_PROMPT),
            Message("user", prompt),
        ]

        try:
            summary = self.provider.chat(request, cancel=cancel)
        except CancelledError:
            raise
        except AgentError as e:
            self.on_warning(f"failed to summarize context: {e}")
            if self.report is not None:
                self.report.record_summarization(before, before, error=str(e))
            return False

        self._messages = [Message("system", SUMMARY_PREFIX + summary), *recent]
        logger.debug("summarized %d messages into %d", before, len(self._messages))
        if self.report is not None:
            self.report.record_summarization(before, len(self._messages))
        return True
