"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False, log_level: str | None = None) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output. When log_level is given, the
    root logger is routed through a RichHandler on the same console.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)

    if log_level:
        logging.basicConfig(
            level=log_level.upper(),
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=_console, show_path=False)],
            force=True,
        )


def console() -> Console:
    return _console


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Round {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, tool_calls: int) -> None:
    style = "green" if tool_calls == 0 else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  tool_calls={tool_calls}", style=style)
    _console.print(text)


def rate_limit_wait(seconds: float) -> None:
    line = Text()
    line.append("  ⏳ Rate limit reached, ", style="yellow")
    line.append(f"waiting {seconds:.1f}s", style="bold yellow")
    _console.print(line)


def completion(rounds: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {rounds} rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {rounds} rounds, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def command_request(command: str, description: str) -> None:
    _console.print(Text("  [command request]", style="yellow"))
    if description:
        _console.print(Text(f"    purpose: {description}", style="cyan"))
    _console.print(Text(f"    command: {command}", style="cyan"))


def file_write_request(path: str, description: str) -> None:
    _console.print(Text("  [file write request]", style="yellow"))
    if description:
        _console.print(Text(f"    purpose: {description}", style="cyan"))
    _console.print(Text(f"    file: {path}", style="cyan"))


# -- Context -----------------------------------------------------------------


def summarized(before: int, after: int) -> None:
    _console.print(
        Text(f"  Context summarized: {before} -> {after} messages", style="dim")
    )


def skill_activated(name: str) -> None:
    line = Text()
    line.append("  [skill] ", style="yellow")
    line.append(name, style="dim italic")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
