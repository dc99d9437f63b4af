"""
skillrelay.refresh

The refresh pipeline: the single place where the exposed skill set changes.

One refresh, in order:
  1. discover skills across all active directories
  2. apply the current invocation overrides
  3. build a new index and swap it in as one snapshot
  4. push the regenerated instructions to the model-facing `skill` tool and list one
     `skill://{name}` resource per skill
  5. reconcile the per-skill prompts
  6. re-resolve resource subscriptions
  7. emit list-changed notifications for tools, prompts and resources

Readers always take `state.snapshot` once and work from it; a later refresh replaces the
reference and never mutates a published snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from skillrelay import SERVER_NAME
from skillrelay.config import InvocationOverride
from skillrelay.discovery import (
    SkillIndex,
    SkillRecord,
    SkillSource,
    apply_invocation_overrides,
    build_skill_index,
    discover_all,
    generate_instructions,
    model_invocable_skills,
    user_invocable_skills,
)
from skillrelay.subscriptions import SubscriptionManager

logger = logging.getLogger(f"{SERVER_NAME}.refresh")

SKILL_PROMPT_NAME = "skill"
SKILL_PROMPT_USAGE = "Load a skill by name with auto-completion.\n\n"
RESERVED_PROMPT_NAMES = frozenset({SKILL_PROMPT_NAME})

ActiveDirectories = Sequence[tuple[Path, SkillSource]]


@dataclass(frozen=True)
class SkillSnapshot:
    index: SkillIndex = field(default_factory=lambda: MappingProxyType({}))
    instructions: str = field(default_factory=lambda: generate_instructions([]))
    directories: tuple[tuple[Path, SkillSource], ...] = ()
    generation: int = 0


class SkillState:
    """Holder of the current snapshot. Replaced wholesale, never edited."""

    def __init__(self) -> None:
        self.snapshot = SkillSnapshot()

    @property
    def index(self) -> SkillIndex:
        return self.snapshot.index

    def get(self, name: str) -> SkillRecord | None:
        return self.snapshot.index.get(name)


class ProtocolSurface(Protocol):
    """The registration and notification operations the pipeline needs from the server."""

    def update_tool_description(self, description: str) -> None: ...

    def update_prompt_description(self, description: str) -> None: ...

    def add_skill_prompt(self, record: SkillRecord) -> None: ...

    def update_skill_prompt(self, record: SkillRecord) -> None: ...

    def enable_skill_prompt(self, record: SkillRecord) -> None: ...

    def disable_skill_prompt(self, name: str) -> None: ...

    def update_skill_resources(self, index: SkillIndex) -> None: ...

    def send_list_changed(self) -> None: ...


def prompt_description(index: SkillIndex) -> str:
    return SKILL_PROMPT_USAGE + generate_instructions(user_invocable_skills(index.values()))


class PromptRegistry:
    """
    Tracks which per-skill prompts are registered, and which were disabled and can be
    re-enabled, so each refresh only issues the changes needed.
    """

    def __init__(self, surface: ProtocolSurface) -> None:
        self.surface = surface
        self.active: dict[str, SkillRecord] = {}
        self.disabled: set[str] = set()

    def reconcile(self, index: SkillIndex) -> None:
        """
        function_purpose: Bring the per-skill prompts in line with the effectively
        user-invocable skills of index, and refresh the /skill prompt description.
        """
        self.surface.update_prompt_description(prompt_description(index))

        wanted: dict[str, SkillRecord] = {}
        for record in user_invocable_skills(index.values()):
            if record.name in RESERVED_PROMPT_NAMES:
                logger.warning("Skill '%s' shadows a built-in prompt name; no per-skill prompt", record.name)
                continue
            wanted[record.name] = record

        for name in list(self.active):
            if name not in wanted:
                self.surface.disable_skill_prompt(name)
                self.disabled.add(name)
                del self.active[name]

        for name, record in wanted.items():
            current = self.active.get(name)
            if current is not None:
                if current != record:
                    self.surface.update_skill_prompt(record)
                    self.active[name] = record
            elif name in self.disabled:
                self.surface.enable_skill_prompt(record)
                self.disabled.discard(name)
                self.active[name] = record
            else:
                self.surface.add_skill_prompt(record)
                self.active[name] = record


class RefreshPipeline:
    def __init__(
        self,
        state: SkillState,
        overrides_provider: Callable[[], Mapping[str, InvocationOverride]],
        surface: ProtocolSurface | None = None,
        prompts: PromptRegistry | None = None,
        subscriptions: SubscriptionManager | None = None,
    ) -> None:
        self.state = state
        self.overrides_provider = overrides_provider
        self.surface = surface
        self.prompts = prompts
        self.subscriptions = subscriptions

    def refresh(self, directories: ActiveDirectories | None = None) -> SkillSnapshot:
        """
        function_purpose: Run one complete refresh and return the published snapshot.

        With directories=None the previous snapshot's directories are rescanned.
        """
        previous = self.state.snapshot
        dirs = tuple(directories) if directories is not None else previous.directories

        records = apply_invocation_overrides(discover_all(dirs), self.overrides_provider())
        index = build_skill_index(records)
        instructions = generate_instructions(model_invocable_skills(index.values()))
        snapshot = SkillSnapshot(
            index=index,
            instructions=instructions,
            directories=dirs,
            generation=previous.generation + 1,
        )
        self.state.snapshot = snapshot

        if self.surface is not None:
            self.surface.update_tool_description(instructions)
            self.surface.update_skill_resources(index)
        if self.prompts is not None:
            self.prompts.reconcile(index)
        if self.subscriptions is not None:
            self.subscriptions.refresh(index)
        if self.surface is not None:
            self.surface.send_list_changed()

        logger.info(
            "Skills refreshed: %d skill(s) from %d director%s: %s",
            len(index),
            len(dirs),
            "y" if len(dirs) == 1 else "ies",
            ", ".join(index) or "none",
        )
        return snapshot
