import argparse
import enum
import json
import sys
import threading
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path
from typing import Callable, Sequence

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    provider_settings,
)
from .context import ContextManager
from .models import Tool, ToolCall
from .provider import ChatProvider, new_provider
from .report import AgentError, EmptyResponseError, ReportCollector
from .skills import SkillInfo, activate_skill, discover_skills, format_skill_catalog
from .tokens import estimate_tokens
from .tools import TOOLS, ToolExecutor
from .transcript import format_function_call, format_tool_result

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MAX_ITERATIONS = 10
MAX_ARG_LOG = 1000
PROGRESS_NOTE = "\n\n[tool execution finished, continuing with the next step...]\n\n"

ToolExecutorFunc = Callable[[ToolCall], str]


class LoopState(enum.Enum):
    ITERATING = "iterating"
    TOOL_DISPATCH = "tool_dispatch"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class TaskResult:
    answer: str
    rounds: int
    exhausted: bool
    state: LoopState


def build_system_prompt(
    tools: Sequence[Tool],
    skills: dict[str, SkillInfo] | None = None,
    active_skills: Sequence[str] = (),
) -> str:
    """Operating rules, then the skill catalog, active skill instructions and tool list."""
    parts = [DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()]
    catalog = format_skill_catalog(skills or {})
    if catalog:
        parts.append(catalog)
    parts.extend(active_skills)
    lines = ["Available tools:"]
    lines.extend(f"- {t.name}: {t.description}" for t in tools)
    parts.append("\n".join(lines))
    return "\n\n".join(parts) + "\n"


class Agent:
    """Bounded request/response loop with tool dispatch.

    Each round streams one completion over the whole conversation. A round
    without tool calls ends the task; otherwise every call goes through the
    injected executor and the results come back as a single user turn.
    Provider errors, cancellation included, propagate unchanged.
    """

    def __init__(
        self,
        provider: ChatProvider,
        context: ContextManager,
        tools: Sequence[Tool] = TOOLS,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        skills: dict[str, SkillInfo] | None = None,
        report: ReportCollector | None = None,
        verbose: bool = False,
    ):
        self.provider = provider
        self.context = context
        self.tools = list(tools)
        self.max_iterations = max_iterations
        self.skills = skills or {}
        self.report = report
        self.verbose = verbose
        self.state = LoopState.ITERATING
        self.rounds = 0
        self._active_skills: list[str] = []

    def activate_skill(self, name: str) -> None:
        """Add a skill's instructions to the system prompt. Unknown names raise AgentError."""
        body = activate_skill(name, self.skills)
        self._active_skills.append(body)
        if self.verbose:
            fmt.skill_activated(name)

        messages = self.context.get_messages()
        if messages and messages[0].role == "system":
            self.context.set_system_prompt(messages[0].content + "\n\n" + body)
        else:
            self.context.add_message("system", body)

    def stream_task(
        self,
        task: str,
        on_chunk: Callable[[str], None],
        execute_tool: ToolExecutorFunc,
        *,
        cancel: threading.Event | None = None,
    ) -> TaskResult:
        """Run the task, streaming every round's text to on_chunk as it arrives."""
        return self._run(task, on_chunk, execute_tool, cancel, buffered=False)

    def execute_task(
        self,
        task: str,
        execute_tool: ToolExecutorFunc,
        *,
        cancel: threading.Event | None = None,
    ) -> str:
        """Run the task without streaming; returns all rounds' text joined by blank lines."""
        return self._run(task, lambda _: None, execute_tool, cancel, buffered=True).answer

    # -- loop -----------------------------------------------------------------

    def _run(self, task, on_chunk, execute_tool, cancel, *, buffered: bool) -> TaskResult:
        self.context.set_system_prompt(
            build_system_prompt(self.tools, self.skills, self._active_skills)
        )
        self.context.add_message("user", task)
        self.rounds = 0
        self.state = LoopState.ITERATING
        transcript: list[str] = []
        text = ""

        try:
            while self.rounds < self.max_iterations:
                self.rounds += 1
                self.state = LoopState.ITERATING
                text, calls = self._call_llm(on_chunk, cancel)
                transcript.append(text)

                if not calls:
                    if not text:
                        raise EmptyResponseError(
                            "the model returned an empty response (no text and no tool calls)"
                        )
                    # Earlier rounds are already in history with their tool calls.
                    self.context.add_message("assistant", text)
                    answer = "\n\n".join(transcript) if buffered else text
                    self.state = LoopState.DONE
                    return TaskResult(answer, self.rounds, False, self.state)

                self.state = LoopState.TOOL_DISPATCH
                self._dispatch(text, calls, execute_tool)
                if not buffered:
                    on_chunk(PROGRESS_NOTE)
        except BaseException:
            self.state = LoopState.ABORTED
            raise

        self.state = LoopState.ABORTED
        answer = "\n\n".join(transcript) if buffered else text
        return TaskResult(answer, self.rounds, True, self.state)

    def _maybe_summarize(self, cancel) -> None:
        before = len(self.context)
        if before <= self.context.summarize_threshold:
            return
        if not self.context.summarize(cancel=cancel):
            return
        # The summary replaced the system prompt; fold it back in.
        summary = self.context.get_messages()[0].content
        self.context.set_system_prompt(
            build_system_prompt(self.tools, self.skills, self._active_skills)
            + "\n"
            + summary
        )
        if self.verbose:
            fmt.summarized(before, len(self.context))

    def _call_llm(self, on_chunk, cancel) -> tuple[str, list[ToolCall]]:
        self._maybe_summarize(cancel)
        messages = self.context.get_messages()
        token_est = estimate_tokens(messages)
        if self.verbose:
            fmt.turn_header(self.rounds, self.max_iterations, token_est)

        parts: list[str] = []
        calls: list[ToolCall] = []

        def chunk(piece: str) -> None:
            parts.append(piece)
            on_chunk(piece)

        t0 = time.monotonic()
        try:
            self.provider.stream_chat(
                messages,
                self.tools,
                chunk,
                calls.append,
                cancel=cancel,
                on_rate_limit=self._on_rate_limit,
            )
        except AgentError as e:
            if self.report:
                self.report.record_llm_call(
                    self.rounds, time.monotonic() - t0, token_est, type(e).__name__
                )
            raise
        elapsed = time.monotonic() - t0

        if self.verbose:
            fmt.llm_timing(elapsed, len(calls))
        if self.report:
            outcome = "tool_calls" if calls else "answer"
            self.report.record_llm_call(
                self.rounds, elapsed, token_est, outcome, tool_calls=len(calls)
            )
        return "".join(parts), calls

    def _on_rate_limit(self, wait: float, waiting: bool) -> None:
        if waiting and self.verbose:
            fmt.rate_limit_wait(wait)

    def _dispatch(self, text: str, calls: list[ToolCall], execute_tool: ToolExecutorFunc) -> None:
        results = [self._run_tool(call, execute_tool) for call in calls]
        self.context.add_message(
            "assistant", text + "".join(format_function_call(c) for c in calls)
        )
        self.context.add_message("user", "\n\n".join(results))

    def _run_tool(self, call: ToolCall, execute_tool: ToolExecutorFunc) -> str:
        """Execute one call and return its <tool_result> block. Never raises for tool failures."""
        if not call.arguments_valid:
            error = f"invalid JSON in tool arguments: {call.raw_arguments}"
            if self.verbose:
                fmt.tool_error(call.name, error)
            if self.report:
                self.report.record_tool_call(
                    self.rounds, call.name, None, False, 0.0, len(error), error=error
                )
            return format_tool_result(call.name, f"error: {error}", False)

        if self.verbose:
            pretty = json.dumps(call.input, indent=2, ensure_ascii=False, default=str)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(call.name, pretty)

        t0 = time.monotonic()
        try:
            result = execute_tool(call)
            succeeded = True
            error = None
        except Exception as e:
            result = f"error: {e}"
            succeeded = False
            error = str(e)
        elapsed = time.monotonic() - t0

        if self.verbose:
            if succeeded:
                fmt.tool_result(call.name, elapsed, result[:500])
            else:
                fmt.tool_error(call.name, result)
        if self.report:
            self.report.record_tool_call(
                self.rounds,
                call.name,
                call.input,
                succeeded,
                elapsed,
                len(result),
                error=error,
            )
        return format_tool_result(call.name, result, succeeded)


# -- CLI ----------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storage-doctor",
        usage="%(prog)s [options] <problem>",
        description="An LLM agent that diagnoses and fixes storage problems with local tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "problem", nargs="?", default=None, help="Description of the problem to solve."
    )
    parser.add_argument(
        "--provider",
        choices=["anthropic", "openai"],
        default=_UNSET,
        help="LLM provider (default: anthropic).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: provider-specific).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key (default: ANTHROPIC_API_KEY or OPENAI_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider endpoint URL.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 4096).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum agent loop rounds (default: 10).",
    )
    parser.add_argument(
        "--summarize-threshold",
        type=int,
        default=_UNSET,
        help="Summarize the conversation past this many messages (default: 30).",
    )
    parser.add_argument(
        "--keep-recent",
        type=int,
        default=_UNSET,
        help="Messages kept verbatim when summarizing (default: 5).",
    )
    parser.add_argument(
        "--rate-limit-window",
        type=float,
        default=_UNSET,
        help="Rate limit window in seconds (default: 60).",
    )
    parser.add_argument(
        "--rate-limit-tokens",
        type=int,
        default=_UNSET,
        help="Estimated tokens allowed per window, 0 disables (default: 50000).",
    )
    parser.add_argument(
        "--rate-limit-requests",
        type=int,
        default=_UNSET,
        help="Requests allowed per window, 0 disables (default: 60).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for commands and relative paths (default: current directory).",
    )
    parser.add_argument(
        "--skills-dir",
        type=str,
        default=_UNSET,
        help="Skills directory (default: ~/.config/storage-doctor/skills).",
    )
    parser.add_argument(
        "--skill",
        action="append",
        default=[],
        metavar="NAME",
        help="Activate a skill before starting (repeatable).",
    )
    parser.add_argument(
        "--backup-dir",
        type=str,
        default=_UNSET,
        help="Where file backups are written (default: ~/.config/storage-doctor/backups).",
    )
    parser.add_argument(
        "--auto-approve",
        dest="auto_approve_commands",
        action="store_true",
        default=_UNSET,
        help="Run commands and write files without asking for approval.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the answer.",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=_UNSET,
        help="Level for internal log messages (default: warning).",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON report of the run to FILE.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("storage-doctor")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    if args.problem is None:
        parser.error("a problem description is required")

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color, log_level=args.log_level)

    report = ReportCollector() if args.report else None
    state: dict = {"rounds": 0, "skills": {}}

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.problem,
            model=state.get("model", args.model or "unknown"),
            provider=args.provider,
            settings={
                "max_iterations": args.max_iterations,
                "max_output_tokens": args.max_output_tokens,
                "summarize_threshold": args.summarize_threshold,
                "keep_recent": args.keep_recent,
                "auto_approve_commands": args.auto_approve_commands,
                "skills_discovered": sorted(state["skills"]),
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=state["rounds"] or report.max_round_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        result = _run_main(args, report, state)
    except KeyboardInterrupt:
        fmt.error("interrupted")
        _write_report("interrupted", exit_code=130, error_message="interrupted")
        sys.exit(130)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)

    if result.exhausted:
        if args.verbose:
            fmt.completion(result.rounds, "exhausted")
        _write_report("exhausted", answer=result.answer, exit_code=2)
        sys.exit(2)

    if args.verbose:
        fmt.completion(result.rounds, "ok")
    _write_report("success", answer=result.answer, exit_code=0)


def _run_main(args, report, state) -> TaskResult:
    provider = new_provider(provider_settings(args))
    state["model"] = provider.model
    if args.verbose:
        fmt.model_info(f"Using {provider.display_name} model: {provider.model}")

    skills = discover_skills(args.skills_dir, verbose=args.verbose)
    state["skills"] = skills

    warn = fmt.warning if args.verbose else (lambda msg: None)
    context = ContextManager(
        provider,
        summarize_threshold=args.summarize_threshold,
        keep_recent=args.keep_recent,
        on_warning=warn,
        report=report,
    )
    agent = Agent(
        provider,
        context,
        TOOLS,
        max_iterations=args.max_iterations,
        skills=skills,
        report=report,
        verbose=args.verbose,
    )
    for name in args.skill:
        agent.activate_skill(name)

    executor = ToolExecutor(
        str(Path(args.base_dir).resolve()),
        args.backup_dir,
        auto_approve=args.auto_approve_commands,
        verbose=args.verbose,
    )

    def on_chunk(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    with provider:
        result = agent.stream_task(args.problem, on_chunk, executor)
    state["rounds"] = result.rounds
    sys.stdout.write("\n")
    return result
