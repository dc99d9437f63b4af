from __future__ import annotations

from pathlib import Path

import pytest

from skillrelay.config import SettingsStore


def write_skill(
    base: Path,
    folder: str,
    name: str | None = None,
    description: str = "A test skill",
    extra_frontmatter: str = "",
    body: str = "# Instructions\n\nDo the thing.\n",
    filename: str = "SKILL.md",
) -> Path:
    """Create `base/folder/<filename>` with frontmatter and return the definition path."""
    skill_dir = base / folder
    skill_dir.mkdir(parents=True, exist_ok=True)
    md = skill_dir / filename
    md.write_text(
        f"---\nname: {name or folder}\ndescription: {description}\n{extra_frontmatter}---\n{body}",
        encoding="utf-8",
    )
    return md


@pytest.fixture
def store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "config" / "config.json")


@pytest.fixture
def skills_root(tmp_path: Path) -> Path:
    root = tmp_path / "skills-root"
    root.mkdir()
    return root
