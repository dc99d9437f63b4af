from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import write_skill

from skillrelay.config import SettingsStore, SourceConfigResolver
from skillrelay.remote_spec import parse_remote_reference
from skillrelay.remote_sync import GitCommandError, RemoteSyncEngine
from skillrelay.runtime import SkillRelayRuntime


class CloneWithSkills:
    """git runner whose clones contain one skill named after the repository."""

    def __init__(self, failing_repos: Sequence[str] = (), tags: Sequence[str] = ()) -> None:
        self.failing_repos = set(failing_repos)
        self.tags = list(tags)
        self.commands: list[list[str]] = []

    async def __call__(self, args: Sequence[str], cwd: Path | None) -> str:
        args = list(args)
        while args and args[0] == "-c":
            args = args[2:]
        self.commands.append(args)
        if args[0] == "clone":
            target = Path(args[-1])
            if target.name in self.failing_repos:
                raise GitCommandError(args, 128, "remote: Repository not found.")
            (target / ".git").mkdir(parents=True)
            write_skill(target / "skills", f"{target.name}-skill")
        if args[0] == "rev-parse":
            return "aaa111"
        if args[0] == "tag":
            return "\n".join(t for t in self.tags if t == args[-1])
        return ""


async def _no_sleep(delay: float) -> None:
    return None


def _runtime(
    store: SettingsStore,
    tmp_path: Path,
    cli_args: Sequence[str] = (),
    environ: dict[str, str] | None = None,
    runner: CloneWithSkills | None = None,
) -> SkillRelayRuntime:
    env = {"SKILLS_CACHE_DIR": str(tmp_path / "cache"), "GITHUB_POLL_INTERVAL": "0", **(environ or {})}
    resolver = SourceConfigResolver(store, cli_args=cli_args, environ=env, bundled_dir=None)
    engine = RemoteSyncEngine(runner=runner or CloneWithSkills(), sleep=_no_sleep)
    return SkillRelayRuntime(store, resolver, environ=env, engine=engine)


async def test_duplicate_name_across_directories_keeps_first(store: SettingsStore, tmp_path: Path) -> None:
    first, second = tmp_path / "first", tmp_path / "second"
    write_skill(first, "alpha", description="first copy")
    write_skill(second, "alpha", description="second copy")
    write_skill(second, "beta")
    runtime = _runtime(store, tmp_path, cli_args=[f"{first},{second}"])

    snapshot = await runtime.reload()
    assert sorted(snapshot.index) == ["alpha", "beta"]
    assert snapshot.index["alpha"].description == "first copy"

    config = runtime.describe_config()
    assert config["activeTier"] == "cli"
    assert config["isOverridden"] is True
    counts = {d["path"]: d["skillCount"] for d in config["directories"]}
    assert counts == {str(first): 1, str(second): 1}


async def test_pinned_remote_is_synced_and_never_polled(store: SettingsStore, tmp_path: Path) -> None:
    runner = CloneWithSkills(tags=["v1.2.3"])
    runtime = _runtime(store, tmp_path, environ={"SKILLS_DIR": "github.com/acme/skills@v1.2.3"}, runner=runner)

    snapshot = await runtime.reload()
    record = snapshot.index["skills-skill"]
    assert record.source.kind == "remote"
    assert record.source.display_name == "acme/skills"
    assert ["clone", "--depth", "1", "--branch", "v1.2.3"] == runner.commands[0][:5]

    spec = parse_remote_reference("github.com/acme/skills@v1.2.3")
    assert await runtime.engine.has_remote_updates(spec, runtime.sync_options) is False

    config = runtime.describe_config()
    entry = config["directories"][0]
    assert entry["kind"] == "remote"
    assert entry["allowed"] is True
    assert entry["sync"]["error"] is None
    assert entry["sync"]["pinned"] is True
    assert entry["skillCount"] == 1


async def test_failed_or_disallowed_remotes_are_left_out(store: SettingsStore, tmp_path: Path) -> None:
    local = tmp_path / "local"
    write_skill(local, "pdf")
    runtime = _runtime(
        store,
        tmp_path,
        environ={
            "SKILLS_DIR": f"{local},github.com/acme/broken,github.com/stranger/tools",
            "GITHUB_ALLOWED_ORGS": "acme",
        },
        runner=CloneWithSkills(failing_repos=["broken"]),
    )

    snapshot = await runtime.reload()
    assert list(snapshot.index) == ["pdf"]

    by_path = {d["path"]: d for d in runtime.describe_config()["directories"]}
    assert by_path["github.com/acme/broken"]["sync"]["errorKind"] == "not_found"
    assert by_path["github.com/stranger/tools"]["allowed"] is False
    assert "sync" not in by_path["github.com/stranger/tools"]


async def test_persisted_edits_apply_on_reload(store: SettingsStore, tmp_path: Path) -> None:
    mine = tmp_path / "mine"
    write_skill(mine, "pdf")
    runtime = _runtime(store, tmp_path)
    assert len((await runtime.reload()).index) == 0

    store.add_directory(str(mine))
    assert "pdf" in (await runtime.reload()).index

    store.set_invocation_override("pdf", "model", False)
    snapshot = runtime.refresh()
    assert snapshot.index["pdf"].effective_model_invocable is False
    assert "<name>pdf</name>" not in snapshot.instructions

    store.clear_invocation_override("pdf")
    assert "<name>pdf</name>" in runtime.refresh().instructions


async def test_static_mode_starts_without_watching(store: SettingsStore, tmp_path: Path) -> None:
    write_skill(tmp_path / "skills-a", "pdf")
    store.add_directory(str(tmp_path / "skills-a"))
    store.set_static_mode(True)
    runtime = _runtime(store, tmp_path)

    snapshot = await runtime.start()
    assert "pdf" in snapshot.index
    assert runtime.watcher is not None and runtime.watcher.watched == []
    assert runtime.poller is None
    assert runtime.describe_config()["staticMode"] is True
    await runtime.stop()


async def test_new_skill_on_disk_is_picked_up(store: SettingsStore, tmp_path: Path) -> None:
    root = tmp_path / "live"
    write_skill(root, "pdf")
    runtime = _runtime(store, tmp_path, cli_args=[str(root)])
    await runtime.start()
    try:
        assert runtime.watcher is not None and runtime.watcher.watched
        write_skill(root, "docx")
        for _ in range(100):
            if runtime.state.get("docx") is not None:
                break
            await asyncio.sleep(0.1)
        assert runtime.state.get("docx") is not None
    finally:
        await runtime.stop()


async def test_remotes_pinned_to_named_tags_are_not_polled(store: SettingsStore, tmp_path: Path) -> None:
    runtime = _runtime(
        store,
        tmp_path,
        environ={"SKILLS_DIR": "github.com/acme/skills@stable", "GITHUB_POLL_INTERVAL": "60"},
        runner=CloneWithSkills(tags=["stable"]),
    )
    await runtime.start()
    try:
        assert "skills-skill" in runtime.state.index
        assert runtime.poller is None
    finally:
        await runtime.stop()


@pytest.mark.parametrize("interval, expected", [("0", False), ("60", True)])
async def test_polling_follows_interval(store: SettingsStore, tmp_path: Path, interval: str, expected: bool) -> None:
    runtime = _runtime(
        store,
        tmp_path,
        environ={"SKILLS_DIR": "github.com/acme/skills@main", "GITHUB_POLL_INTERVAL": interval},
    )
    await runtime.start()
    try:
        assert (runtime.poller is not None and runtime.poller.is_running()) is expected
    finally:
        await runtime.stop()
