"""Configuration file loading and merging for storage-doctor.

Reads TOML config from ~/.config/storage-doctor/config.toml (global) and
<base_dir>/storage-doctor.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401 (re-export)

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_NAME = "storage-doctor.toml"
PROVIDERS = ("anthropic", "openai")
LOG_LEVELS = ("debug", "info", "warning", "error")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_iterations": int,
    "summarize_threshold": int,
    "keep_recent": int,
    "rate_limit_window": (int, float),
    "rate_limit_tokens": int,
    "rate_limit_requests": int,
    "skills_dir": str,
    "backup_dir": str,
    "auto_approve_commands": bool,
    "log_level": str,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_KEYS = {"max_output_tokens", "max_iterations", "summarize_threshold"}
_NON_NEGATIVE_KEYS = {"keep_recent", "rate_limit_tokens", "rate_limit_requests"}
_PATH_KEYS = ("skills_dir", "backup_dir")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "anthropic",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 4096,
    "max_iterations": 10,
    "summarize_threshold": 30,
    "keep_recent": 5,
    "rate_limit_window": 60.0,
    "rate_limit_tokens": None,
    "rate_limit_requests": None,
    "skills_dir": None,
    "backup_dir": None,
    "auto_approve_commands": False,
    "log_level": "warning",
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "storage-doctor"
    return Path.home() / ".config" / "storage-doctor"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _POSITIVE_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")
        if key in _NON_NEGATIVE_KEYS and value < 0:
            raise ConfigError(f"{source}: {key!r} must not be negative, got {value}")
        if key == "rate_limit_window" and value <= 0:
            raise ConfigError(f"{source}: 'rate_limit_window' must be positive, got {value}")

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, got {config['provider']!r}"
        )
    if "log_level" in config and config["log_level"].lower() not in LOG_LEVELS:
        raise ConfigError(
            f"{source}: 'log_level' must be one of {', '.join(LOG_LEVELS)}, got {config['log_level']!r}"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory.

    Applies expanduser() before checking is_absolute(), so that ~/... paths
    expand to the user's home directory instead of becoming <config_dir>/~/...
    """
    for key in _PATH_KEYS:
        if key in config:
            expanded = Path(config[key]).expanduser()
            config[key] = str(expanded if expanded.is_absolute() else config_dir / expanded)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    The returned dict also contains ``config_dir`` (a ``Path``) pointing
    to the resolved global config directory.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, remaining _UNSET sentinels are
    replaced with the hardcoded defaults from _ARGPARSE_DEFAULTS. Directory
    defaults live under the global config directory.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    config_dir = Path(config.get("config_dir") or global_config_dir())
    if args.skills_dir is None:
        args.skills_dir = str(config_dir / "skills")
    if args.backup_dir is None:
        args.backup_dir = str(config_dir / "backups")


def provider_settings(args: argparse.Namespace) -> dict:
    """The subset of resolved settings consumed by provider.new_provider()."""
    keys = (
        "provider",
        "model",
        "api_key",
        "base_url",
        "max_output_tokens",
        "rate_limit_window",
        "rate_limit_tokens",
        "rate_limit_requests",
    )
    return {k: getattr(args, k, None) for k in keys}


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# storage-doctor configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/' + PROJECT_CONFIG_NAME if project else '~/.config/storage-doctor/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"         # "anthropic" | "openai"',
        '# model = "claude-haiku-4-5-20251001"',
        "# api_key = \"sk-...\"               # prefer ANTHROPIC_API_KEY / OPENAI_API_KEY",
        '# base_url = "https://..."',
        "# max_output_tokens = 4096",
        "",
        "# --- Rate limiting ---",
        "# rate_limit_window = 60          # seconds",
        "# rate_limit_tokens = 50000       # 0 disables the token cap",
        "# rate_limit_requests = 60        # 0 disables the request cap",
        "",
        "# --- Agent behaviour ---",
        "# max_iterations = 10",
        "# summarize_threshold = 30",
        "# keep_recent = 5",
        "# auto_approve_commands = false",
        "",
        "# --- Paths ---",
        '# skills_dir = "~/.config/storage-doctor/skills"',
        '# backup_dir = "~/.config/storage-doctor/backups"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        '# log_level = "warning"',
        "",
    ]
    return "\n".join(lines)
