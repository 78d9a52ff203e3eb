"""Skill discovery and activation for SKILL.md-based agent skills.

A skill is a directory holding a SKILL.md file whose frontmatter names and
describes it; the markdown body is the instruction text added to the system
prompt when the skill is activated.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .report import AgentError

MAX_SKILL_BODY_CHARS = 20_000
MAX_SKILL_DESCRIPTION_CHARS = 1024
MAX_SKILL_NAME_CHARS = 64

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9_-]*[a-z0-9])?$")


@dataclass
class SkillInfo:
    name: str  # validated name from frontmatter
    description: str  # description from frontmatter
    path: Path  # resolved absolute path to skill directory


def validate_skill_name(name: str, dir_name: str) -> str | None:
    """Validate a skill name. Returns error string or None if valid."""
    if not name:
        return "name is empty"
    if len(name) > MAX_SKILL_NAME_CHARS:
        return f"name exceeds {MAX_SKILL_NAME_CHARS} characters"
    if not _NAME_RE.match(name):
        return f"name {name!r} must be lowercase alphanumeric with '_' or '-' separators"
    if name != dir_name:
        return f"name {name!r} does not match directory name {dir_name!r}"
    return None


def parse_frontmatter(text: str) -> dict | str:
    """Parse YAML frontmatter from SKILL.md content.

    Returns a dict with 'name', 'description', and 'body' keys on success,
    or an error string on failure.

    Supports plain and quoted scalars, folded continuation lines, and
    literal blocks (key: |). Keys other than name/description are ignored.
    """
    lines = text.split("\n")

    if not lines or lines[0].strip() != "---":
        return "missing opening '---' delimiter"

    end_idx = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end_idx = i
            break
    if end_idx is None:
        return "missing closing '---' delimiter"

    fm_lines = lines[1:end_idx]
    result: dict = {"body": "\n".join(lines[end_idx + 1 :]).strip()}

    def indented(j: int) -> bool:
        return j < len(fm_lines) and bool(fm_lines[j]) and fm_lines[j][0] in (" ", "\t")

    i = 0
    while i < len(fm_lines):
        line = fm_lines[i]
        colon_idx = line.find(":")
        if not line.strip() or line[0] in (" ", "\t") or colon_idx < 0:
            i += 1
            continue

        key = line[:colon_idx].strip()
        raw_value = line[colon_idx + 1 :].strip()
        i += 1

        if key not in ("name", "description"):
            while indented(i):
                i += 1
            continue

        if raw_value == "|":
            block = []
            while indented(i):
                block.append(fm_lines[i].strip())
                i += 1
            result[key] = "\n".join(block)
            continue

        if raw_value and raw_value[0] in ('"', "'"):
            quote = raw_value[0]
            if len(raw_value) < 2 or raw_value[-1] != quote:
                return f"missing closing {quote} for {key}"
            result[key] = raw_value[1:-1].replace(f"\\{quote}", quote)
            continue

        value = raw_value
        while indented(i):
            value += " " + fm_lines[i].strip()
            i += 1
        result[key] = value

    if not result.get("name"):
        return "missing 'name' field"
    if not result.get("description"):
        return "missing 'description' field"
    return result


def _try_load_skill(entry: Path, catalog: dict[str, SkillInfo], verbose: bool) -> None:
    """Load one skill directory into the catalog, skipping it with a warning on error.

    First-seen name wins.
    """
    skill_md = entry / "SKILL.md"
    try:
        content = skill_md.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        if verbose:
            fmt.warning(f"failed to read {skill_md}: {e}")
        return

    parsed = parse_frontmatter(content)
    if isinstance(parsed, str):
        if verbose:
            fmt.warning(f"failed to parse SKILL.md frontmatter in {entry}: {parsed}")
        return

    name = parsed["name"]
    description = parsed["description"]

    name_err = validate_skill_name(name, entry.name)
    if name_err:
        if verbose:
            fmt.warning(f"invalid skill in {entry}: {name_err}")
        return

    if len(description) > MAX_SKILL_DESCRIPTION_CHARS:
        if verbose:
            fmt.warning(
                f"skill {name!r} description exceeds {MAX_SKILL_DESCRIPTION_CHARS} chars, skipping"
            )
        return

    if name in catalog:
        if verbose:
            fmt.warning(f"skill {name!r} in {entry} shadowed by {catalog[name].path}")
        return

    catalog[name] = SkillInfo(name=name, description=description, path=entry.resolve())


def discover_skills(skills_dir: str | Path, verbose: bool = False) -> dict[str, SkillInfo]:
    """Load every <skills_dir>/<name>/SKILL.md, keyed by skill name.

    When skills_dir does not exist it is created and seeded with the
    built-in skills (see DEFAULT_SKILLS).
    """
    root = Path(skills_dir).expanduser()
    if not root.exists():
        write_default_skills(root)
        if verbose:
            fmt.info(f"Created default skills in {root}")

    catalog: dict[str, SkillInfo] = {}
    try:
        entries = sorted(root.iterdir())
    except OSError as e:
        if verbose:
            fmt.warning(f"cannot list skills directory {root}: {e}")
        return catalog

    for entry in entries:
        if entry.is_dir() and (entry / "SKILL.md").is_file():
            _try_load_skill(entry, catalog, verbose)

    if verbose and catalog:
        fmt.info(f"Discovered {len(catalog)} skill(s): {', '.join(sorted(catalog))}")

    return catalog


def activate_skill(name: str, catalog: dict[str, SkillInfo]) -> str:
    """Return the skill's instruction text for the system prompt.

    Raises AgentError for unknown or unreadable skills.
    """
    skill = catalog.get(name)
    if skill is None:
        raise AgentError(f"skill not found: {name!r}")

    skill_md = skill.path / "SKILL.md"
    try:
        content = skill_md.read_text(encoding="utf-8")
    except OSError as e:
        raise AgentError(f"failed to read {skill_md}: {e}") from e

    parsed = parse_frontmatter(content)
    if isinstance(parsed, str):
        raise AgentError(f"failed to parse {skill_md}: {parsed}")

    body = parsed["body"]
    truncated = len(body) > MAX_SKILL_BODY_CHARS
    if truncated:
        body = body[:MAX_SKILL_BODY_CHARS]

    parts = [f"[Skill: {name} activated]", "", "<skill-instructions>", body]
    if truncated:
        parts.append(f"\n[truncated at {MAX_SKILL_BODY_CHARS} characters]")
    parts.append("</skill-instructions>")
    return "\n".join(parts)


def format_skill_catalog(catalog: dict[str, SkillInfo]) -> str:
    """Format the skill catalog for inclusion in the system prompt."""
    if not catalog:
        return ""

    lines = ["<available-skills>", "Available skills:"]
    for i, name in enumerate(sorted(catalog), 1):
        lines.append(f"{i}. {name}: {catalog[name].description}")
    lines.append("")
    lines.append("If a skill is relevant to the task, apply its guidance.")
    lines.append("</available-skills>")
    return "\n".join(lines)


def write_default_skills(root: Path) -> None:
    for name, content in DEFAULT_SKILLS.items():
        skill_dir = root / name
        skill_dir.mkdir(parents=True, exist_ok=True)
        (skill_dir / "SKILL.md").write_text(content, encoding="utf-8")


DEFAULT_SKILLS = {
    "storage_diagnosis": """\
---
name: storage_diagnosis
description: Diagnose and fix Kubernetes and cloud storage problems
---

# Storage Diagnosis

Expertise for diagnosing and resolving storage problems in Kubernetes and
cloud environments.

## Capabilities

### 1. PVC problems
- Check PVC status
- Validate StorageClass settings
- Resolve volume binding failures

### 2. Storage drivers
- Check CSI driver health
- Analyze driver logs
- Restart and recover drivers

### 3. Disk space
- Inspect disk usage
- Clean up stale resources
- Expand storage

## Procedure

1. Check the state of the related resources (kubectl get)
2. Review events and logs
3. Validate configuration files
4. Search the web for similar cases
5. Apply the fix

## Cautions

- Always back up before working on production
- Apply changes incrementally
- Keep a rollback plan ready
""",
    "file_operations": """\
---
name: file_operations
description: Read, modify, back up and restore configuration files
---

# File Operations

How to safely modify Kubernetes manifests and configuration files.

## Capabilities

### 1. Reading
- Parse YAML, JSON and TOML files
- Validate settings
- Analyze structure

### 2. Modifying
- Automatic backups
- Safe edit procedure
- Verify changes

### 3. Rollback
- Restore from backup
- Track change history

## Best practices

- Always back up before editing
- Apply changes incrementally
- Verify after every edit
""",
    "log_analysis": """\
---
name: log_analysis
description: Monitor log files, search for patterns and analyze them
---

# Log Analysis

How to analyze log files effectively and locate problems.

## Capabilities

### 1. Monitoring
- tail-style monitoring
- Keyword filtering
- Error pattern detection

### 2. Searching
- Regular expression search
- Log level filtering

### 3. Analysis
- Statistics
- Error summaries
- Pattern analysis

## Procedure

1. Locate the log file
2. Choose an action (tail/search/filter/summarize)
3. Provide a pattern when needed
4. Analyze the result and identify the problem
""",
}
