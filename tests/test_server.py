from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import Any

import pytest
from conftest import write_skill
from fastmcp import Client
from fastmcp.exceptions import ToolError

from skillrelay import SERVER_NAME
from skillrelay.server import SessionRegistry, cli_main, configure_logging, mcp


@pytest.fixture
def skills_dir(tmp_path: Path) -> Path:
    root = tmp_path / "skills"
    write_skill(root, "pdf", description="Work with PDF files", body="# PDF\n\nUse pypdf.\n")
    (root / "pdf" / "reference.md").write_text("# Reference\n", encoding="utf-8")
    write_skill(root, "internal", description="Model only", extra_frontmatter="user-invocable: false\n")
    return root


@pytest.fixture
def server_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    config_dir = tmp_path / "config"
    monkeypatch.setenv("SKILLRELAY_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("SKILLS_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("GITHUB_POLL_INTERVAL", "0")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "logs" / "skillrelay.log"))
    monkeypatch.delenv("SKILLS_DIR", raising=False)
    for name in ("GITHUB_TOKEN", "GITHUB_ALLOWED_ORGS", "GITHUB_ALLOWED_USERS"):
        monkeypatch.delenv(name, raising=False)
    return config_dir


@pytest.fixture
def clean_logger() -> Iterator[logging.Logger]:
    logger = logging.getLogger(SERVER_NAME)
    saved = list(logger.handlers)
    logger.handlers.clear()
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved


@pytest.fixture
async def client(server_env: Path, skills_dir: Path, monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[Client[Any]]:
    monkeypatch.setenv("SKILLS_DIR", str(skills_dir))
    async with Client(mcp) as c:
        yield c


def _text(result: Any) -> str:
    return result.content[0].text


async def _skill_tool_description(client: Client[Any]) -> str:
    tools = {t.name: t for t in await client.list_tools()}
    return tools["skill"].description or ""


async def test_tools_are_registered(client: Client[Any]) -> None:
    names = {t.name for t in await client.list_tools()}
    assert {
        "skill",
        "skill-resource",
        "skill-config",
        "skill-config-add-directory",
        "skill-config-remove-directory",
        "skill-config-set-invocation",
        "skill-config-clear-invocation",
        "skill-config-allow-owner",
        "skill-config-disallow-owner",
        "skill-config-set-static-mode",
        "skill-resource-subscribe",
        "skill-resource-unsubscribe",
    } <= names


async def test_skill_tool_lists_and_loads_skills(client: Client[Any]) -> None:
    description = await _skill_tool_description(client)
    assert "<name>pdf</name>" in description
    assert "<name>internal</name>" in description
    assert "<name>skill-creator</name>" in description

    content = _text(await client.call_tool("skill", {"name": "pdf"}))
    assert "Use pypdf." in content
    assert content.startswith("---")

    with pytest.raises(ToolError, match="Available skills"):
        await client.call_tool("skill", {"name": "missing"})


async def test_skill_resource_tool(client: Client[Any]) -> None:
    listing = await client.call_tool("skill-resource", {"name": "pdf"})
    assert listing.structured_content == {"skill": "pdf", "files": ["reference.md"]}

    read = await client.call_tool("skill-resource", {"name": "pdf", "path": "reference.md"})
    assert read.structured_content is not None
    assert read.structured_content["data"] == "# Reference\n"
    assert read.structured_content["encoding"] == "text"

    with pytest.raises(ToolError, match="outside the skill directory"):
        await client.call_tool("skill-resource", {"name": "pdf", "path": "../internal/SKILL.md"})


async def test_prompts_follow_user_invocability(client: Client[Any]) -> None:
    prompts = {p.name: p for p in await client.list_prompts()}
    assert "skill" in prompts
    assert "pdf" in prompts
    assert "internal" not in prompts
    assert prompts["pdf"].description == "Work with PDF files"

    rendered = await client.get_prompt("pdf")
    assert "Use pypdf." in rendered.messages[0].content.text

    by_name = await client.get_prompt("skill", {"name": "pdf"})
    assert "Use pypdf." in by_name.messages[0].content.text


async def test_resources_read_skill_files(client: Client[Any], skills_dir: Path) -> None:
    definition = await client.read_resource("skill://pdf")
    assert "Use pypdf." in definition[0].text

    reference = await client.read_resource("skill://pdf/reference.md")
    assert reference[0].text == "# Reference\n"

    (skills_dir / "pdf" / "logo.bin").write_bytes(b"\x89PNG\x00\xff")
    binary = await client.read_resource("skill://pdf/logo.bin")
    assert base64.b64decode(binary[0].blob) == b"\x89PNG\x00\xff"


async def test_resources_are_listed_per_skill(client: Client[Any]) -> None:
    listed = {str(r.uri): r for r in await client.list_resources()}
    assert {"skill://pdf", "skill://internal", "skill://skill-creator"} <= set(listed)
    assert listed["skill://pdf"].description == "Work with PDF files"

    templates = {t.uri_template for t in await client.list_resource_templates()}
    assert "skill://{name}/" in templates


async def test_collection_resource_returns_every_file(client: Client[Any]) -> None:
    contents = await client.read_resource("skill://pdf/")
    assert len(contents) == 2
    assert "Use pypdf." in contents[0].text
    assert contents[1].text == "# Reference\n"


async def test_invocation_override_round_trip(client: Client[Any], server_env: Path) -> None:
    await client.call_tool("skill-config-set-invocation", {"name": "pdf", "setting": "model", "value": False})
    assert "<name>pdf</name>" not in await _skill_tool_description(client)
    saved = json.loads((server_env / "config.json").read_text(encoding="utf-8"))
    assert saved["skillInvocationOverrides"] == {"pdf": {"model": False}}

    await client.call_tool("skill-config-set-invocation", {"name": "pdf", "setting": "user", "value": False})
    assert "pdf" not in {p.name for p in await client.list_prompts()}

    result = await client.call_tool("skill-config-clear-invocation", {"name": "pdf"})
    assert result.structured_content is not None
    assert result.structured_content["skill"]["modelInvocable"] is True
    assert "<name>pdf</name>" in await _skill_tool_description(client)
    assert "pdf" in {p.name for p in await client.list_prompts()}

    with pytest.raises(ToolError, match="Unknown invocation setting"):
        await client.call_tool("skill-config-set-invocation", {"name": "pdf", "setting": "assistant", "value": True})


async def test_config_tool_reports_env_override(client: Client[Any], skills_dir: Path, tmp_path: Path) -> None:
    config = (await client.call_tool("skill-config", {})).structured_content
    assert config is not None
    assert config["activeTier"] == "env"
    assert config["isOverridden"] is True
    assert config["directories"][0]["path"] == str(skills_dir)
    assert config["directories"][0]["skillCount"] == 2

    extra = tmp_path / "extra"
    write_skill(extra, "docx")
    added = (await client.call_tool("skill-config-add-directory", {"directory": str(extra)})).structured_content
    assert added is not None
    assert added["added"] == str(extra)
    # The env tier still wins, so the persisted entry is listed but inactive
    entries = {d["path"]: d for d in added["config"]["directories"]}
    assert entries[str(extra)]["active"] is False

    with pytest.raises(ToolError, match="Already configured"):
        await client.call_tool("skill-config-add-directory", {"directory": str(extra)})


async def test_persisted_directory_edits(server_env: Path, tmp_path: Path) -> None:
    extra = tmp_path / "extra"
    write_skill(extra, "docx")
    async with Client(mcp) as c:
        await c.call_tool("skill-config-add-directory", {"directory": str(extra)})
        assert "<name>docx</name>" in await _skill_tool_description(c)
        assert "skill://docx" in {str(r.uri) for r in await c.list_resources()}

        await c.call_tool("skill-config-remove-directory", {"directory": str(extra)})
        assert "<name>docx</name>" not in await _skill_tool_description(c)
        assert "skill://docx" not in {str(r.uri) for r in await c.list_resources()}

        with pytest.raises(ToolError, match="Not found in config"):
            await c.call_tool("skill-config-remove-directory", {"directory": str(extra)})

        static = await c.call_tool("skill-config-set-static-mode", {"enabled": True})
        assert static.structured_content == {"staticMode": True}


async def test_owner_allow_list_tools(client: Client[Any]) -> None:
    result = (await client.call_tool("skill-config-allow-owner", {"kind": "org", "owner": "acme"})).structured_content
    assert result is not None
    assert result["changed"] is True
    assert result["config"]["allowedOrgs"] == ["acme"]

    again = (await client.call_tool("skill-config-allow-owner", {"kind": "org", "owner": "ACME"})).structured_content
    assert again is not None and again["changed"] is False

    removed = (
        await client.call_tool("skill-config-disallow-owner", {"kind": "org", "owner": "acme"})
    ).structured_content
    assert removed is not None and removed["changed"] is True

    with pytest.raises(ToolError):
        await client.call_tool("skill-config-allow-owner", {"kind": "team", "owner": "x"})


async def test_subscription_tools(client: Client[Any], skills_dir: Path) -> None:
    result = (await client.call_tool("skill-resource-subscribe", {"uri": "skill://pdf/"})).structured_content
    assert result is not None
    assert set(result["files"]) == {
        str(skills_dir / "pdf" / "SKILL.md"),
        str(skills_dir / "pdf" / "reference.md"),
    }

    with pytest.raises(ToolError, match="Resource not found"):
        await client.call_tool("skill-resource-subscribe", {"uri": "skill://missing"})

    gone = (await client.call_tool("skill-resource-unsubscribe", {"uri": "skill://pdf/"})).structured_content
    assert gone == {"uri": "skill://pdf/", "unsubscribed": True}


async def test_session_registry_drops_failing_sessions() -> None:
    class Session:
        def __init__(self, fail: bool) -> None:
            self.fail = fail
            self.sent: list[str] = []

        async def send_tool_list_changed(self) -> None:
            if self.fail:
                raise RuntimeError("closed")
            self.sent.append("tools")

    good, bad = Session(False), Session(True)
    registry = SessionRegistry()
    registry.add(good)
    registry.add(bad)
    registry.broadcast("send_tool_list_changed")
    for _ in range(3):
        await asyncio.sleep(0)
    assert good.sent == ["tools"]
    assert len(registry) == 1


def test_configure_logging_writes_log_file(
    server_env: Path, tmp_path: Path, clean_logger: logging.Logger
) -> None:
    logger = configure_logging()
    assert logger is clean_logger
    assert len(logger.handlers) == 2
    configure_logging()
    assert len(logger.handlers) == 2
    assert (tmp_path / "logs").is_dir()


def test_cli_list_detail_and_config(
    server_env: Path, skills_dir: Path, capsys: pytest.CaptureFixture[str], clean_logger: logging.Logger
) -> None:
    cli_main([str(skills_dir), "--list"])
    listed = json.loads(capsys.readouterr().out)
    assert {s["name"] for s in listed} >= {"pdf", "internal", "skill-creator"}

    cli_main([str(skills_dir), "--detail", "pdf"])
    detail = json.loads(capsys.readouterr().out)
    assert detail["name"] == "pdf"
    assert detail["files"] == ["reference.md"]
    assert "Use pypdf." in detail["content"]

    cli_main([str(skills_dir), "--config"])
    config = json.loads(capsys.readouterr().out)
    assert config["activeTier"] == "cli"

    with pytest.raises(SystemExit):
        cli_main([str(skills_dir), "--detail", "missing"])
