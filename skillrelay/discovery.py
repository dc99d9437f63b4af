"""
skillrelay.discovery

Skill discovery and parsing.

A skill is a folder holding a definition file (SKILL.md, or skill.md) that begins with a YAML
frontmatter block delimited by '---' lines:

    ---
    name: pdf-tools
    description: Work with PDF files
    disable-model-invocation: false   # optional, true hides the skill from the model
    user-invocable: true              # optional, false hides the skill from the prompts menu
    ---
    # Body markdown ...

Discovery scans immediate subfolders of each configured directory (plus `.claude/skills` and
`skills` beneath it) in alphabetical order. A folder with a missing or malformed definition is
logged and skipped. Name collisions across the whole scan keep the first occurrence.

Effective invocability is always recomputed from the frontmatter defaults plus the persisted
overrides; records are immutable and are never patched in place.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any
from xml.sax.saxutils import escape

import yaml

from skillrelay import SERVER_NAME
from skillrelay.config import InvocationOverride

logger = logging.getLogger(f"{SERVER_NAME}.discovery")

SKILL_FILENAMES = ("SKILL.md", "skill.md")
SKILL_SUBDIRS = (".claude/skills", "skills")

INSTRUCTIONS_PREAMBLE = (
    "# Skills\n\n"
    "When a user's task matches a skill description below: "
    "1) activate it, 2) follow its instructions completely.\n\n"
)

SkillIndex = Mapping[str, "SkillRecord"]


class SkillParseError(ValueError):
    """A single skill definition file is missing, malformed, or lacks required fields."""


@dataclass(frozen=True)
class SkillSource:
    kind: str
    display_name: str
    owner: str | None = None
    repo: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "displayName": self.display_name}
        if self.owner:
            data["owner"] = self.owner
        if self.repo:
            data["repo"] = self.repo
        return data


LOCAL_SOURCE = SkillSource(kind="local", display_name="Local")
BUNDLED_SOURCE = SkillSource(kind="local", display_name="Bundled")


def remote_source(owner: str, repo: str) -> SkillSource:
    return SkillSource(kind="remote", display_name=f"{owner}/{repo}", owner=owner, repo=repo)


@dataclass(frozen=True)
class SkillRecord:
    name: str
    description: str
    definition_path: Path
    source_directory: Path
    source: SkillSource = LOCAL_SOURCE
    raw_model_invocable: bool = True
    raw_user_invocable: bool = True
    effective_model_invocable: bool = True
    effective_user_invocable: bool = True
    is_model_overridden: bool = False
    is_user_overridden: bool = False

    @property
    def skill_dir(self) -> Path:
        return self.definition_path.parent

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "path": str(self.definition_path),
            "sourceDirectory": str(self.source_directory),
            "source": self.source.to_dict(),
            "modelInvocable": self.effective_model_invocable,
            "userInvocable": self.effective_user_invocable,
            "isModelOverridden": self.is_model_overridden,
            "isUserOverridden": self.is_user_overridden,
        }


# --- Parsing ---
def parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """
    function_purpose: Parse YAML frontmatter delimited by '---' lines, followed by markdown body.

    Returns a (frontmatter_dict, body_text) tuple.
    """
    lines = text.lstrip("\ufeff").splitlines(keepends=False)
    if not lines or lines[0].strip() != "---":
        raise SkillParseError("SKILL.md must begin with a '---' line for YAML frontmatter")

    fm_lines: list[str] = []
    idx = 1
    while idx < len(lines) and lines[idx].strip() != "---":
        fm_lines.append(lines[idx])
        idx += 1

    if idx >= len(lines):
        raise SkillParseError("YAML frontmatter must end with a '---' line")

    try:
        fm = yaml.safe_load("\n".join(fm_lines)) or {}
    except yaml.YAMLError as e:
        raise SkillParseError(f"invalid YAML frontmatter: {e}") from e
    if not isinstance(fm, dict):
        raise SkillParseError("YAML frontmatter must parse to a mapping")
    return fm, "\n".join(lines[idx + 1 :])


def find_definition_file(skill_dir: Path) -> Path | None:
    """Return the definition file in skill_dir, preferring the canonical SKILL.md spelling."""
    for filename in SKILL_FILENAMES:
        candidate = skill_dir / filename
        if candidate.is_file():
            return candidate
    return None


def parse_skill_file(
    md_path: Path,
    source_directory: Path,
    source: SkillSource = LOCAL_SOURCE,
) -> SkillRecord:
    """
    function_purpose: Parse one definition file into a SkillRecord with raw invocability.

    Enforces:
    - 'name' and 'description' are strings that are non-empty after trimming
    - `disable-model-invocation: true` makes the skill not model-invocable
    - `user-invocable: false` makes the skill not user-invocable
    """
    try:
        text = md_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SkillParseError(f"cannot read {md_path}: {e}") from e
    fm, _ = parse_frontmatter(text)

    name = fm.get("name")
    description = fm.get("description")
    if not isinstance(name, str) or not name.strip():
        raise SkillParseError("frontmatter 'name' is required and must be a non-empty string")
    if not isinstance(description, str) or not description.strip():
        raise SkillParseError("frontmatter 'description' is required and must be a non-empty string")

    model_invocable = fm.get("disable-model-invocation") is not True
    user_invocable = fm.get("user-invocable") is not False
    return SkillRecord(
        name=name.strip(),
        description=description.strip(),
        definition_path=md_path,
        source_directory=source_directory,
        source=source,
        raw_model_invocable=model_invocable,
        raw_user_invocable=user_invocable,
        effective_model_invocable=model_invocable,
        effective_user_invocable=user_invocable,
    )


def discover_skills(directory: Path, source: SkillSource = LOCAL_SOURCE) -> list[SkillRecord]:
    """
    function_purpose: Discover skills in the immediate subfolders of one directory.

    Subfolders are visited in alphabetical order so duplicate resolution does not depend on
    filesystem enumeration order. Invalid skills are logged and skipped.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.debug("Skills directory not found: %s", directory)
        return []

    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        logger.warning("Cannot list skills directory %s: %s", directory, e)
        return []

    records: list[SkillRecord] = []
    for entry in entries:
        if not entry.is_dir():
            continue
        md_path = find_definition_file(entry)
        if md_path is None:
            continue
        try:
            records.append(parse_skill_file(md_path, directory, source))
        except SkillParseError as e:
            logger.warning("Skipping skill at %s: %s", entry, e)
    return records


def scan_directories(directory: Path) -> list[Path]:
    """The configured directory followed by its fixed skill subdirectories."""
    directory = Path(directory)
    return [directory] + [directory / sub for sub in SKILL_SUBDIRS]


def discover_all(directories: Iterable[tuple[Path, SkillSource]]) -> list[SkillRecord]:
    """
    function_purpose: Discover skills across every configured directory, in configured order.

    Each directory is scanned itself and then its `.claude/skills` and `skills` subfolders.
    A folder reached twice (e.g. configured both directly and as a subfolder) is scanned once.
    """
    seen: set[Path] = set()
    records: list[SkillRecord] = []
    for directory, source in directories:
        for scan_dir in scan_directories(directory):
            if not scan_dir.is_dir():
                continue
            key = scan_dir.resolve()
            if key in seen:
                continue
            seen.add(key)
            records.extend(discover_skills(scan_dir, source))
    return records


def build_skill_index(records: Iterable[SkillRecord]) -> SkillIndex:
    """
    function_purpose: Build a read-only name -> SkillRecord index, keeping the first record for
    each name and logging every suppressed duplicate.
    """
    index: dict[str, SkillRecord] = {}
    for record in records:
        existing = index.get(record.name)
        if existing is not None:
            logger.warning(
                "Duplicate skill name '%s' found at %s - keeping first occurrence from %s",
                record.name,
                record.definition_path,
                existing.definition_path,
            )
            continue
        index[record.name] = record
    return MappingProxyType(index)


def apply_invocation_overrides(
    records: Sequence[SkillRecord],
    overrides: Mapping[str, InvocationOverride],
) -> list[SkillRecord]:
    """
    function_purpose: Compute effective invocability from raw frontmatter defaults plus overrides.

    Pure: returns new records, always derived from the raw values, so applying it repeatedly
    gives the same result.
    """
    out: list[SkillRecord] = []
    for record in records:
        override = overrides.get(record.name) or InvocationOverride()
        out.append(
            dataclasses.replace(
                record,
                effective_model_invocable=(
                    override.model if override.model is not None else record.raw_model_invocable
                ),
                effective_user_invocable=(
                    override.user if override.user is not None else record.raw_user_invocable
                ),
                is_model_overridden=override.model is not None,
                is_user_overridden=override.user is not None,
            )
        )
    return out


def model_invocable_skills(records: Iterable[SkillRecord]) -> list[SkillRecord]:
    return [r for r in records if r.effective_model_invocable]


def user_invocable_skills(records: Iterable[SkillRecord]) -> list[SkillRecord]:
    return [r for r in records if r.effective_user_invocable]


def generate_instructions(records: Iterable[SkillRecord]) -> str:
    """
    function_purpose: Render the aggregate instructions text listing available skills as XML.
    """
    lines = ["<available_skills>"]
    for record in records:
        lines.append("<skill>")
        lines.append(f"<name>{escape(record.name)}</name>")
        lines.append(f"<description>{escape(record.description)}</description>")
        lines.append(f"<location>{escape(str(record.definition_path))}</location>")
        lines.append("</skill>")
    lines.append("</available_skills>")
    return INSTRUCTIONS_PREAMBLE + "\n".join(lines)


def load_skill_content(record: SkillRecord) -> str:
    return record.definition_path.read_text(encoding="utf-8")
