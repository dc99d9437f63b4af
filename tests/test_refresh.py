from __future__ import annotations

from pathlib import Path
from typing import Any

from conftest import write_skill

from skillrelay.config import InvocationOverride
from skillrelay.discovery import LOCAL_SOURCE, SkillRecord
from skillrelay.refresh import PromptRegistry, RefreshPipeline, SkillState


class FakeSurface:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []
        self.tool_description = ""
        self.prompt_description = ""
        self.resources: list[str] = []

    def update_tool_description(self, description: str) -> None:
        self.tool_description = description
        self.events.append(("tool", None))

    def update_prompt_description(self, description: str) -> None:
        self.prompt_description = description
        self.events.append(("prompt-description", None))

    def add_skill_prompt(self, record: SkillRecord) -> None:
        self.events.append(("add", record.name))

    def update_skill_prompt(self, record: SkillRecord) -> None:
        self.events.append(("update", record.name))

    def enable_skill_prompt(self, record: SkillRecord) -> None:
        self.events.append(("enable", record.name))

    def disable_skill_prompt(self, name: str) -> None:
        self.events.append(("disable", name))

    def update_skill_resources(self, index: Any) -> None:
        self.resources = sorted(index)
        self.events.append(("resources", None))

    def send_list_changed(self) -> None:
        self.events.append(("list-changed", None))

    def prompt_events(self) -> list[tuple[str, Any]]:
        return [e for e in self.events if e[0] in {"add", "update", "enable", "disable"}]


def _pipeline(overrides: dict[str, InvocationOverride]) -> tuple[RefreshPipeline, FakeSurface]:
    surface = FakeSurface()
    pipeline = RefreshPipeline(
        SkillState(),
        overrides_provider=lambda: overrides,
        surface=surface,
        prompts=PromptRegistry(surface),
    )
    return pipeline, surface


def test_refresh_publishes_new_snapshot_and_notifies(skills_root: Path) -> None:
    write_skill(skills_root, "pdf")
    write_skill(skills_root, "secret", extra_frontmatter="disable-model-invocation: true\n")
    pipeline, surface = _pipeline({})

    first = pipeline.refresh([(skills_root, LOCAL_SOURCE)])
    assert set(first.index) == {"pdf", "secret"}
    assert first.generation == 1
    assert "<name>pdf</name>" in surface.tool_description
    assert "<name>secret</name>" not in surface.tool_description
    assert "<name>secret</name>" in surface.prompt_description
    assert surface.events[0] == ("tool", None)
    assert surface.events[-1] == ("list-changed", None)
    assert sorted(surface.prompt_events()) == [("add", "pdf"), ("add", "secret")]
    assert surface.resources == ["pdf", "secret"]

    write_skill(skills_root, "docx")
    second = pipeline.refresh()
    assert pipeline.state.snapshot is second
    assert set(second.index) == {"pdf", "secret", "docx"}
    assert set(first.index) == {"pdf", "secret"}
    assert second.generation == 2
    assert surface.resources == ["docx", "pdf", "secret"]


def test_prompts_are_disabled_and_re_enabled(skills_root: Path) -> None:
    write_skill(skills_root, "pdf")
    overrides: dict[str, InvocationOverride] = {}
    pipeline, surface = _pipeline(overrides)
    pipeline.refresh([(skills_root, LOCAL_SOURCE)])

    overrides["pdf"] = InvocationOverride(user=False)
    pipeline.refresh()
    assert surface.prompt_events()[-1] == ("disable", "pdf")
    assert pipeline.prompts is not None and "pdf" in pipeline.prompts.disabled

    del overrides["pdf"]
    restored = pipeline.refresh()
    assert restored.index["pdf"].effective_user_invocable is True
    assert restored.index["pdf"].is_user_overridden is False
    assert surface.prompt_events()[-1] == ("enable", "pdf")
    assert pipeline.prompts.disabled == set()


def test_override_toggle_then_clear_restores_defaults(skills_root: Path) -> None:
    write_skill(skills_root, "pdf")
    overrides: dict[str, InvocationOverride] = {}
    pipeline, surface = _pipeline(overrides)
    baseline = pipeline.refresh([(skills_root, LOCAL_SOURCE)])
    baseline_description = surface.tool_description

    overrides["pdf"] = InvocationOverride(model=False)
    hidden = pipeline.refresh()
    assert "<name>pdf</name>" not in surface.tool_description
    assert hidden.index["pdf"].is_model_overridden

    overrides.clear()
    restored = pipeline.refresh()
    assert surface.tool_description == baseline_description
    assert restored.index["pdf"] == baseline.index["pdf"]


def test_changed_description_updates_prompt(skills_root: Path) -> None:
    write_skill(skills_root, "pdf", description="old")
    pipeline, surface = _pipeline({})
    pipeline.refresh([(skills_root, LOCAL_SOURCE)])

    write_skill(skills_root, "pdf", description="new")
    pipeline.refresh()
    assert surface.prompt_events()[-1] == ("update", "pdf")

    pipeline.refresh()
    assert surface.prompt_events()[-1] == ("update", "pdf")
    assert len(surface.prompt_events()) == 2


def test_reserved_prompt_name_is_not_registered(skills_root: Path) -> None:
    write_skill(skills_root, "skill")
    pipeline, surface = _pipeline({})
    snapshot = pipeline.refresh([(skills_root, LOCAL_SOURCE)])
    assert "skill" in snapshot.index
    assert surface.prompt_events() == []


def test_pipeline_without_surface_only_updates_state(skills_root: Path) -> None:
    write_skill(skills_root, "pdf")
    state = SkillState()
    pipeline = RefreshPipeline(state, overrides_provider=dict)
    pipeline.refresh([(skills_root, LOCAL_SOURCE)])
    assert state.get("pdf") is not None
    assert state.get("missing") is None
