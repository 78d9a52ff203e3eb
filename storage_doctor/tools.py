"""Tool catalog and the default executor for storage diagnostics."""

import os
import re
import subprocess
import sys
import threading
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from rich.prompt import Prompt

from . import fmt
from .models import Tool, ToolCall
from .report import ToolExecutionError

TOOLS = [
    Tool(
        name="execute_command",
        description=(
            "Run a shell command and return its output. "
            "The operator must approve each command unless auto-approve is enabled."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to run.",
                },
                "description": {
                    "type": "string",
                    "description": "Why the command is being run.",
                },
            },
            "required": ["command", "description"],
        },
    ),
    Tool(
        name="read_file",
        description="Read a file and return its contents.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path of the file to read.",
                },
            },
            "required": ["path"],
        },
    ),
    Tool(
        name="write_file",
        description=(
            "Create or overwrite a file. "
            "The previous content is backed up automatically before writing."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path of the file to write.",
                },
                "content": {
                    "type": "string",
                    "description": "New file content.",
                },
                "description": {
                    "type": "string",
                    "description": "Why the file is being changed.",
                },
            },
            "required": ["path", "content", "description"],
        },
    ),
    Tool(
        name="search_web",
        description=(
            "Search the web. Use it to find similar cases or known fixes "
            "for storage problems."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query.",
                },
            },
            "required": ["query"],
        },
    ),
    Tool(
        name="monitor_log",
        description="Inspect or search a log file.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path of the log file.",
                },
                "action": {
                    "type": "string",
                    "enum": ["tail", "search", "filter", "summarize"],
                    "description": (
                        "'tail' (last lines), 'search' (regex search), "
                        "'filter' (filter by level), 'summarize' (level counts)."
                    ),
                },
                "pattern": {
                    "type": "string",
                    "description": "Regex for 'search', level name for 'filter'.",
                },
                "lines": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Number of lines for 'tail'. Defaults to 100.",
                },
            },
            "required": ["path", "action"],
        },
    ),
    Tool(
        name="ask_user",
        description="Ask the operator for more information or a confirmation.",
        input_schema={
            "type": "object",
            "properties": {
                "question": {
                    "type": "string",
                    "description": "Question to ask.",
                },
            },
            "required": ["question"],
        },
    ),
]

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
DEFAULT_COMMAND_TIMEOUT = 120
DEFAULT_TAIL_LINES = 100
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

SearchFunc = Callable[[str], str]
AskFunc = Callable[[str], str]


def _prompt(question: str, choices: list[str] | None = None, default: str | None = None) -> str:
    try:
        return Prompt.ask(question, console=fmt.console(), choices=choices, default=default)
    except EOFError:
        return ""


def _truncate(text: str, limit: int = MAX_OUTPUT_BYTES) -> str:
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", errors="ignore") + f"\n[truncated at {limit // 1024}KB]"


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def run_shell_command(command: str, cwd: str, timeout: int) -> tuple[int | None, str]:
    """Run command via the shell. Returns (exit code, output); exit code is None on timeout."""
    popen_kwargs: dict = dict(
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(command, **popen_kwargs)
    except OSError as e:
        raise ToolExecutionError(f"failed to start command: {e}") from e

    chunks: list[bytes] = []

    def _reader():
        try:
            for chunk in iter(lambda: proc.stdout.read(4096), b""):
                chunks.append(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    try:
        proc.wait(timeout=timeout)
        code: int | None = proc.returncode
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        code = None

    reader.join(timeout=2)
    proc.stdout.close()
    return code, b"".join(chunks).decode("utf-8", errors="replace")


def backup_path_for(path: Path, backup_dir: Path, now: datetime | None = None) -> Path:
    """<name>.<utc timestamp>.<path hash>.backup inside backup_dir."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y%m%d-%H%M%S.%f")
    path_hash = f"{zlib.crc32(str(path).encode('utf-8')):08x}"
    return backup_dir / f"{path.name}.{stamp}.{path_hash}.backup"


class ToolExecutor:
    """Default tool executor: callable(ToolCall) -> str, raising ToolExecutionError.

    Shell commands and file writes ask the operator for approval unless
    auto_approve is set; answering "a" approves everything for the rest of
    the session.
    """

    def __init__(
        self,
        base_dir: str,
        backup_dir: str | None,
        *,
        auto_approve: bool = False,
        search: SearchFunc | None = None,
        ask: AskFunc | None = None,
        approve: Callable[[str], str] | None = None,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        verbose: bool = False,
    ):
        self.base_dir = base_dir
        self.backup_dir = Path(backup_dir).expanduser() if backup_dir else None
        self.auto_approve = auto_approve
        self.search = search
        self.ask = ask or _prompt
        self.approve = approve or (
            lambda question: _prompt(question, choices=["y", "n", "a"], default="n")
        )
        self.command_timeout = command_timeout
        self.verbose = verbose
        self._handlers = {
            "execute_command": self._execute_command,
            "read_file": self._read_file,
            "write_file": self._write_file,
            "search_web": self._search_web,
            "monitor_log": self._monitor_log,
            "ask_user": self._ask_user,
        }

    def __call__(self, call: ToolCall) -> str:
        handler = self._handlers.get(call.name)
        if handler is None:
            raise ToolExecutionError(f"unknown tool: {call.name}")
        return handler(call.input)

    # -- helpers --------------------------------------------------------------

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = Path(self.base_dir) / p
        return p

    def _confirm(self, question: str) -> None:
        if self.auto_approve:
            return
        answer = (self.approve(question) or "").strip().lower()
        if answer in ("a", "always"):
            self.auto_approve = True
            if self.verbose:
                fmt.info("All commands will be approved for the rest of this session.")
            return
        if answer not in ("y", "yes"):
            raise ToolExecutionError("operator declined the request")

    # -- tools ----------------------------------------------------------------

    def _execute_command(self, args: dict) -> str:
        command = _require_str(args, "command")
        description = args.get("description") or ""
        if self.verbose:
            fmt.command_request(command, description)
        self._confirm("Run this command?")

        code, output = run_shell_command(command, self.base_dir, self.command_timeout)
        output = _truncate(output)
        if code is None:
            raise ToolExecutionError(
                f"command timed out after {self.command_timeout}s\nOutput: {output}"
            )
        if code != 0:
            raise ToolExecutionError(f"command failed with exit code {code}\nOutput: {output}")
        return f"Command succeeded\nOutput:\n{output}"

    def _read_file(self, args: dict) -> str:
        path = self._resolve(_require_str(args, "path"))
        try:
            with open(path, "rb") as f:
                head = f.read(BINARY_CHECK_BYTES)
            if b"\x00" in head:
                raise ToolExecutionError(f"binary file detected: {path}")
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ToolExecutionError(f"failed to read file: {e}") from e
        return f"File contents:\n{_truncate(text)}"

    def _write_file(self, args: dict) -> str:
        path = self._resolve(_require_str(args, "path"))
        content = _require_str(args, "content")
        description = args.get("description") or ""
        if self.verbose:
            fmt.file_write_request(str(path), description)
        self._confirm("Write this file?")

        try:
            backup = self._backup(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ToolExecutionError(f"failed to write file: {e}") from e
        if backup is None:
            return f"File written: {path}"
        return f"File written: {path} (backup: {backup})"

    def _backup(self, path: Path) -> Path | None:
        if self.backup_dir is None or not path.is_file():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = backup_path_for(path.resolve(), self.backup_dir)
        target.write_bytes(path.read_bytes())
        return target

    def _search_web(self, args: dict) -> str:
        query = _require_str(args, "query")
        if self.search is None:
            raise ToolExecutionError("web search is not available")
        try:
            return self.search(query)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"search failed: {e}") from e

    def _monitor_log(self, args: dict) -> str:
        path = self._resolve(_require_str(args, "path"))
        action = _require_str(args, "action")
        pattern = args.get("pattern") or ""

        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                lines = f.read().splitlines()
        except OSError as e:
            raise ToolExecutionError(f"failed to open log file: {e}") from e

        if action == "tail":
            n = args.get("lines") or DEFAULT_TAIL_LINES
            if not isinstance(n, int) or n < 1:
                raise ToolExecutionError("lines must be a positive integer")
            return _truncate("\n".join(lines[-n:]))

        if action == "search":
            try:
                regex = re.compile(pattern)
            except re.error as e:
                raise ToolExecutionError(f"invalid regex pattern: {e}") from e
            matches = [f"{i}: {line}" for i, line in enumerate(lines, 1) if regex.search(line)]
            return _truncate(f"Search results ({len(matches)}):\n" + "\n".join(matches))

        if action == "filter":
            level = pattern.upper()
            matches = [line for line in lines if level in line.upper()]
            return _truncate(f"Filter results ({len(matches)}):\n" + "\n".join(matches))

        if action == "summarize":
            counts = summarize_log_lines(lines)
            return (
                "Log summary:\n"
                f"Total lines: {counts['total_lines']}\n"
                f"Errors: {counts['error_count']}\n"
                f"Warnings: {counts['warn_count']}\n"
                f"Info: {counts['info_count']}"
            )

        raise ToolExecutionError(f"unknown action: {action}")

    def _ask_user(self, args: dict) -> str:
        question = _require_str(args, "question")
        answer = (self.ask(question) or "").strip()
        return f"Operator answer: {answer}"


def summarize_log_lines(lines: list[str]) -> dict[str, int]:
    counts = {"total_lines": len(lines), "error_count": 0, "warn_count": 0, "info_count": 0}
    for line in lines:
        upper = line.upper()
        if "ERROR" in upper:
            counts["error_count"] += 1
        if "WARN" in upper:
            counts["warn_count"] += 1
        if "INFO" in upper:
            counts["info_count"] += 1
    return counts


def _require_str(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise ToolExecutionError(f"invalid {key} parameter")
    return value
