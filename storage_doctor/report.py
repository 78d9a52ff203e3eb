"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, bad value types, etc.)."""


class AuthenticationError(AgentError):
    """Raised when a provider has no credential configured."""


class ValidationError(AgentError):
    """Raised when an outgoing request would be empty or malformed."""


class ProviderError(AgentError):
    """Non-success HTTP status (or transport failure) from an LLM vendor."""

    def __init__(self, message: str, status_code: int = 0, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StreamDecodeError(AgentError):
    """The vendor stream carried an error event or an oversized record."""


class CancelledError(AgentError):
    """The caller's cancel event fired during a rate-limit wait or a stream read."""


class EmptyResponseError(AgentError):
    """The model answered with no text and no tool calls."""


class ToolExecutionError(AgentError):
    """Raised by a tool executor when a single tool call fails."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.summarizations = 0
        self.failed_summarizations = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_round_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        round_no: int,
        duration: float,
        token_est: int,
        outcome: str,
        *,
        tool_calls: int = 0,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if round_no > self.max_round_seen:
            self.max_round_seen = round_no
        self.events.append(
            {
                "round": round_no,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "outcome": outcome,
                "tool_calls": tool_calls,
            }
        )

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "round": round_no,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_summarization(
        self, messages_before: int, messages_after: int, error: str | None = None
    ):
        if error is None:
            self.summarizations += 1
        else:
            self.failed_summarizations += 1
        event: dict = {
            "type": "summarization",
            "messages_before": messages_before,
            "messages_after": messages_after,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        rounds: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "rounds": rounds,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "summarizations": self.summarizations,
                "failed_summarizations": self.failed_summarizations,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        rounds: int,
        error_message: str | None = None,
    ) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(
            task=task,
            model=model,
            provider=provider,
            settings=settings,
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=rounds,
            error_message=error_message,
        )
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
