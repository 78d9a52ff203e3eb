"""Tests for skills.py: skill discovery, default skills and activation."""

from pathlib import Path

import pytest

from storage_doctor.report import AgentError
from storage_doctor.skills import (
    DEFAULT_SKILLS,
    MAX_SKILL_BODY_CHARS,
    MAX_SKILL_NAME_CHARS,
    SkillInfo,
    activate_skill,
    discover_skills,
    format_skill_catalog,
    parse_frontmatter,
    validate_skill_name,
)


def _make_skill(
    parent: Path,
    name: str,
    description: str = "A test skill.",
    body: str = "# Instructions\nDo stuff.",
):
    """Create a skill directory with a SKILL.md file."""
    skill_dir = parent / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    content = f"---\nname: {name}\ndescription: {description}\n---\n\n{body}"
    (skill_dir / "SKILL.md").write_text(content, encoding="utf-8")
    return skill_dir


# =========================================================================
# Frontmatter parsing
# =========================================================================


class TestParseFrontmatter:
    def test_valid_plain_scalars(self):
        text = "---\nname: my-skill\ndescription: A simple skill.\n---\n\n# Body"
        result = parse_frontmatter(text)
        assert isinstance(result, dict)
        assert result["name"] == "my-skill"
        assert result["description"] == "A simple skill."
        assert result["body"] == "# Body"

    def test_valid_double_quoted(self):
        text = '---\nname: "my-skill"\ndescription: "Check https://example.com:8080"\n---\n\nBody'
        result = parse_frontmatter(text)
        assert result["name"] == "my-skill"
        assert result["description"] == "Check https://example.com:8080"

    def test_valid_single_quoted(self):
        text = "---\nname: 'my-skill'\ndescription: 'A skill with \\'quotes\\''\n---\n\nBody"
        result = parse_frontmatter(text)
        assert result["description"] == "A skill with 'quotes'"

    def test_missing_closing_quote(self):
        text = '---\nname: "my-skill\ndescription: A skill.\n---\n\nBody'
        result = parse_frontmatter(text)
        assert isinstance(result, str)
        assert "closing" in result

    def test_multiline_folded(self):
        text = "---\nname: my-skill\ndescription: This is a long\n  description that spans\n  multiple lines.\n---\n\nBody"
        result = parse_frontmatter(text)
        assert result["description"] == "This is a long description that spans multiple lines."

    def test_multiline_literal(self):
        text = "---\nname: my-skill\ndescription: |\n  Line one.\n  Line two.\n---\n\nBody"
        result = parse_frontmatter(text)
        assert result["description"] == "Line one.\nLine two."

    def test_missing_opening_delimiter(self):
        result = parse_frontmatter("name: my-skill\ndescription: A skill.\n---\n\nBody")
        assert isinstance(result, str)
        assert "opening" in result

    def test_missing_closing_delimiter(self):
        result = parse_frontmatter("---\nname: my-skill\ndescription: A skill.\n\nBody")
        assert isinstance(result, str)
        assert "closing" in result

    def test_missing_name(self):
        result = parse_frontmatter("---\ndescription: A skill.\n---\n\nBody")
        assert isinstance(result, str)
        assert "name" in result

    def test_empty_description(self):
        result = parse_frontmatter("---\nname: my-skill\ndescription:\n---\n\nBody")
        assert isinstance(result, str)
        assert "description" in result

    def test_unknown_fields_skipped(self):
        text = "---\nname: my-skill\nmetadata: ignore-me\n  nested: also-ignored\ndescription: A skill.\nlicense: MIT\n---\n\nBody"
        result = parse_frontmatter(text)
        assert result["name"] == "my-skill"
        assert result["description"] == "A skill."
        assert "metadata" not in result
        assert "license" not in result

    def test_empty_body(self):
        result = parse_frontmatter("---\nname: my-skill\ndescription: A skill.\n---\n")
        assert result["body"] == ""


# =========================================================================
# Name validation
# =========================================================================


class TestValidateSkillName:
    def test_valid_underscore(self):
        assert validate_skill_name("log_analysis", "log_analysis") is None

    def test_valid_hyphenated(self):
        assert validate_skill_name("code-review", "code-review") is None

    def test_valid_single_char(self):
        assert validate_skill_name("a", "a") is None

    def test_valid_max_length(self):
        name = "a" * MAX_SKILL_NAME_CHARS
        assert validate_skill_name(name, name) is None

    def test_invalid_uppercase(self):
        assert "lowercase" in validate_skill_name("PDF", "PDF")

    def test_invalid_leading_separator(self):
        assert validate_skill_name("_pdf", "_pdf") is not None
        assert validate_skill_name("-pdf", "-pdf") is not None

    def test_invalid_trailing_separator(self):
        assert validate_skill_name("pdf-", "pdf-") is not None

    def test_invalid_too_long(self):
        name = "a" * (MAX_SKILL_NAME_CHARS + 1)
        assert "exceeds" in validate_skill_name(name, name)

    def test_invalid_dot(self):
        assert validate_skill_name("pdf.review", "pdf.review") is not None

    def test_invalid_empty(self):
        assert validate_skill_name("", "") is not None

    def test_directory_mismatch(self):
        assert "does not match" in validate_skill_name("pdf", "pdf-tool")


# =========================================================================
# Discovery
# =========================================================================


class TestDiscoverSkills:
    def test_missing_dir_gets_defaults(self, tmp_path):
        skills_dir = tmp_path / "skills"
        catalog = discover_skills(skills_dir)
        assert sorted(catalog) == ["file_operations", "log_analysis", "storage_diagnosis"]
        for name in DEFAULT_SKILLS:
            assert (skills_dir / name / "SKILL.md").is_file()

    def test_default_skills_parse(self):
        for name, content in DEFAULT_SKILLS.items():
            parsed = parse_frontmatter(content)
            assert isinstance(parsed, dict)
            assert parsed["name"] == name

    def test_empty_dir_not_seeded(self, tmp_path):
        (tmp_path / "skills").mkdir()
        assert discover_skills(tmp_path / "skills") == {}

    def test_valid_skills_found(self, tmp_path):
        _make_skill(tmp_path, "pvc", "Debug PVCs.")
        _make_skill(tmp_path, "nfs", "Debug NFS mounts.")
        catalog = discover_skills(tmp_path)
        assert sorted(catalog) == ["nfs", "pvc"]
        assert catalog["pvc"].description == "Debug PVCs."
        assert catalog["pvc"].path == (tmp_path / "pvc").resolve()

    def test_invalid_skills_skipped(self, tmp_path, capsys):
        skill_dir = tmp_path / "wrong-name"
        skill_dir.mkdir()
        (skill_dir / "SKILL.md").write_text("---\nname: different\ndescription: Bad.\n---\n\nBody")
        _make_skill(tmp_path, "good")

        catalog = discover_skills(tmp_path, verbose=True)
        assert list(catalog) == ["good"]
        assert "different" in capsys.readouterr().err

    def test_invalid_skills_silent_when_not_verbose(self, tmp_path, capsys):
        bad = tmp_path / "bad"
        bad.mkdir()
        (bad / "SKILL.md").write_text("no frontmatter")
        assert discover_skills(tmp_path) == {}
        assert capsys.readouterr().err == ""

    def test_directories_without_skill_md_ignored(self, tmp_path):
        (tmp_path / "notes").mkdir()
        (tmp_path / "README.md").write_text("hi")
        assert discover_skills(tmp_path) == {}

    def test_non_utf8_skill_md_skipped(self, tmp_path):
        bad = tmp_path / "binary"
        bad.mkdir()
        (bad / "SKILL.md").write_bytes(b"\xff\xfe---\n")
        assert discover_skills(tmp_path) == {}


# =========================================================================
# Activation
# =========================================================================


class TestActivateSkill:
    def test_successful_load(self, tmp_path):
        _make_skill(tmp_path, "deploy", "Deploy.", "# Deployment\n\nStep 1: Build.")
        result = activate_skill("deploy", discover_skills(tmp_path))
        assert result.startswith("[Skill: deploy activated]")
        assert "<skill-instructions>" in result
        assert "Step 1: Build." in result
        assert result.endswith("</skill-instructions>")

    def test_unknown_skill(self):
        with pytest.raises(AgentError, match="nonexistent"):
            activate_skill("nonexistent", {})

    def test_deleted_after_discovery(self, tmp_path):
        skill_dir = _make_skill(tmp_path, "gone")
        catalog = discover_skills(tmp_path)
        (skill_dir / "SKILL.md").unlink()
        with pytest.raises(AgentError, match="failed to read"):
            activate_skill("gone", catalog)

    def test_body_truncation(self, tmp_path):
        _make_skill(tmp_path, "big", "A big skill.", "x" * (MAX_SKILL_BODY_CHARS + 1000))
        result = activate_skill("big", discover_skills(tmp_path))
        assert f"[truncated at {MAX_SKILL_BODY_CHARS} characters]" in result
        assert "x" * (MAX_SKILL_BODY_CHARS + 1) not in result


# =========================================================================
# Catalog formatting
# =========================================================================


class TestFormatCatalog:
    def test_empty_catalog(self):
        assert format_skill_catalog({}) == ""

    def test_numbered_and_sorted(self, tmp_path):
        catalog = {
            "deploy": SkillInfo(name="deploy", description="Deploy.", path=tmp_path),
            "analyze": SkillInfo(name="analyze", description="Analyze.", path=tmp_path),
        }
        text = format_skill_catalog(catalog)
        assert text.startswith("<available-skills>")
        assert "1. analyze: Analyze." in text
        assert "2. deploy: Deploy." in text
        assert text.endswith("</available-skills>")
