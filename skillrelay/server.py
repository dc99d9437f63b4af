"""
skillrelay.server

FastMCP stdio server that relays Agent Skills from local directories and GitHub repositories
to MCP clients, and keeps what it exposes in sync as those sources change.

Server-level documentation:
- Purpose: Expose every discovered skill to the model (the `skill` tool, whose description
  lists the model-invocable skills), to the user (the `/skill` prompt and one prompt per
  user-invocable skill) and to the client application (`skill://` resources).
- Sources, highest priority first: positional CLI arguments, SKILLS_DIR, then
  `skillDirectories` in the persisted config file. Bundled skills are always appended.
  Entries containing "github.com" are cloned into the cache directory and kept up to date.
- Live updates: skill folders are watched; branch-tracking repositories are polled. Each
  change runs one refresh and emits list-changed notifications.
- Transport: STDIO
- Safety: file reads are confined to the skill folder; symlinks and files over 10 MiB are
  rejected.
- Logging: Console (stderr) + rotating file logs

Environment (optional):
- SKILLS_DIR: comma-separated skill directories and/or GitHub references
- SKILLRELAY_CONFIG_DIR: directory holding config.json (default: ~/.skillrelay)
- SKILLS_CACHE_DIR: clone cache for GitHub sources (default: ~/.skillrelay/github-cache)
- GITHUB_TOKEN: token for private repositories
- GITHUB_POLL_INTERVAL: seconds between update checks, 0 disables (default: 300)
- GITHUB_ALLOWED_ORGS / GITHUB_ALLOWED_USERS: comma-separated owner allow-lists
- LOG_FILE: override log file path (default: ~/.skillrelay/logs/skillrelay.log)
- LOG_LEVEL: logging level (default: INFO)

Usage:
- As a script:
  python -m skillrelay.server [DIR_OR_REPO ...]   # starts stdio server
  python -m skillrelay.server --help              # CLI for inspection without starting server

- As a module within MCP client config (stdio):
  command: python
  args: ["-m", "skillrelay.server", "/path/to/skills,github.com/owner/repo"]

Package: skillrelay
Entry point: python -m skillrelay.server
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import weakref
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import ResourceError, ToolError
from fastmcp.prompts import Prompt
from fastmcp.resources import FunctionResource, ResourceContent, ResourceResult
from fastmcp.server.middleware import Middleware, MiddlewareContext
from fastmcp.tools import Tool

from skillrelay import SERVER_NAME, __version__
from skillrelay.config import (
    DEFAULT_CONFIG_DIR,
    ConfigurationError,
    SettingsStore,
    SourceConfigResolver,
)
from skillrelay.discovery import SkillIndex, SkillRecord, generate_instructions, load_skill_content
from skillrelay.files import ResourceAccessError, list_skill_files, read_skill_file
from skillrelay.refresh import SKILL_PROMPT_NAME, SKILL_PROMPT_USAGE
from skillrelay.runtime import SkillRelayRuntime
from skillrelay.subscriptions import UnknownResourceError
from skillrelay.watcher import WatchdogFileBackend

# --- Paths & constants ---
DEFAULT_LOG_DIR = DEFAULT_CONFIG_DIR / "logs"
DEFAULT_LOG_FILE = DEFAULT_LOG_DIR / "skillrelay.log"
SKILL_TOOL_NAME = "skill"

logger = logging.getLogger(SERVER_NAME)


# --- Logging setup ---
def configure_logging() -> logging.Logger:
    """
    function_purpose: Configure application-wide logging to both console and rotating file.

    - Creates logs directory if needed.
    - Console output goes to stderr so the stdio transport stays clean.
    - Returns the package logger; module loggers are its children.
    """
    logger = logging.getLogger(SERVER_NAME)
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    if logger.handlers:
        return logger

    log_file_env = os.environ.get("LOG_FILE")
    log_file = Path(log_file_env) if log_file_env else DEFAULT_LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"
    )

    # Console handler (stderr)
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    # Rotating file handler (5 files, 5MB each)
    fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
    fh.setLevel(level)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    logger.info("Logging initialized. File: %s", str(log_file))
    return logger


# --- Sessions & notifications ---
class SessionRegistry:
    """Connected client sessions, collected as requests arrive, for server-initiated notifications."""

    def __init__(self) -> None:
        self._sessions: weakref.WeakSet[Any] = weakref.WeakSet()

    def add(self, session: Any) -> None:
        self._sessions.add(session)

    def __len__(self) -> int:
        return len(self._sessions)

    async def _send(self, session: Any, method: str, *args: Any) -> None:
        try:
            await getattr(session, method)(*args)
        except Exception as e:
            logger.warning("Dropping session after failed %s: %s", method, e)
            self._sessions.discard(session)

    def broadcast(self, method: str, *args: Any) -> None:
        """Schedule `session.<method>(*args)` on every session. Must run on the event loop."""
        sessions = list(self._sessions)
        if not sessions:
            return
        loop = asyncio.get_running_loop()
        for session in sessions:
            loop.create_task(self._send(session, method, *args))


class SessionTrackingMiddleware(Middleware):
    def __init__(self, sessions: SessionRegistry) -> None:
        self.sessions = sessions

    async def on_request(self, context: MiddlewareContext[Any], call_next: Any) -> Any:
        ctx = context.fastmcp_context
        if ctx is not None:
            try:
                self.sessions.add(ctx.session)
            except RuntimeError:
                logger.debug("Request without a bound session: %s", context.method)
        return await call_next(context)


# --- Runtime access ---
_runtime: SkillRelayRuntime | None = None
_cli_args: list[str] = []


def _get_runtime() -> SkillRelayRuntime:
    if _runtime is None:
        raise ToolError("Skill relay is still starting up")
    return _runtime


def _get_skill(name: str) -> SkillRecord:
    runtime = _get_runtime()
    record = runtime.state.get(name)
    if record is None:
        available = ", ".join(runtime.state.index) or "none"
        raise ToolError(f'Skill "{name}" not found. Available skills: {available}')
    return record


def build_runtime(
    cli_args: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
    surface: FastMCPSurface | None = None,
    file_backend: WatchdogFileBackend | None = None,
) -> SkillRelayRuntime:
    """
    function_purpose: Assemble the settings store, resolver and runtime from CLI args and env.
    """
    store = SettingsStore.from_environment(environ)
    resolver = SourceConfigResolver(store, cli_args=cli_args, environ=environ)
    return SkillRelayRuntime(
        store,
        resolver,
        environ=environ,
        surface=surface,
        file_backend=file_backend,
        on_resource_updated=surface.resource_updated if surface is not None else None,
    )


# --- Model- and user-facing handlers ---
def skill(name: str) -> str:
    """Load a skill's full instructions (SKILL.md) by name."""
    record = _get_skill(name)
    try:
        return load_skill_content(record)
    except OSError as e:
        raise ToolError(f'Failed to load skill "{name}": {e}') from e


def skill_prompt(name: str) -> str:
    """Load a skill by name."""
    runtime = _get_runtime()
    record = runtime.state.get(name)
    if record is None:
        available = ", ".join(r.name for r in runtime.state.index.values() if r.effective_user_invocable)
        return f'Skill "{name}" not found. Available skills: {available or "none"}'
    try:
        return load_skill_content(record)
    except OSError as e:
        return f'Failed to load skill "{name}": {e}'


def _per_skill_prompt(name: str) -> Any:
    def load() -> str:
        return skill_prompt(name)

    load.__name__ = f"skill_prompt_{name.replace('-', '_')}"
    return load



def _definition_reader(name: str) -> Any:
    def read() -> str:
        return skill_definition_resource(name)

    read.__name__ = f"skill_resource_{name.replace('-', '_')}"
    return read


class FastMCPSurface:
    """
    Applies refresh results to a FastMCP server: re-registers the `skill` tool and prompts
    with fresh descriptions and sends list-changed / resource-updated notifications.

    The server is created with on_duplicate="replace", so re-adding a component under the
    same name swaps it in place. A disabled prompt is removed and added back on re-enable.
    """

    def __init__(self, server: FastMCP, sessions: SessionRegistry) -> None:
        self.server = server
        self.sessions = sessions
        self._resource_uris: set[str] = set()

    def update_tool_description(self, description: str) -> None:
        self.server.add_tool(Tool.from_function(skill, name=SKILL_TOOL_NAME, description=description))
        self.server.instructions = description

    def update_prompt_description(self, description: str) -> None:
        self.server.add_prompt(
            Prompt.from_function(skill_prompt, name=SKILL_PROMPT_NAME, title="Load Skill", description=description)
        )

    def add_skill_prompt(self, record: SkillRecord) -> None:
        self.server.add_prompt(
            Prompt.from_function(
                _per_skill_prompt(record.name),
                name=record.name,
                title=record.name,
                description=record.description,
            )
        )

    def update_skill_prompt(self, record: SkillRecord) -> None:
        self.add_skill_prompt(record)

    def enable_skill_prompt(self, record: SkillRecord) -> None:
        self.add_skill_prompt(record)

    def disable_skill_prompt(self, name: str) -> None:
        try:
            self.server.local_provider.remove_prompt(name)
        except KeyError:
            logger.debug("Prompt %s was not registered", name)

    def update_skill_resources(self, index: SkillIndex) -> None:
        """
        function_purpose: List one concrete `skill://{name}` resource per indexed skill,
        dropping the ones whose skill is gone.
        """
        registered: set[str] = set()
        for record in index.values():
            try:
                resource = FunctionResource.from_function(
                    _definition_reader(record.name),
                    uri=f"skill://{record.name}",
                    name=record.name,
                    description=record.description,
                    mime_type="text/markdown",
                )
            except ValueError as e:
                logger.warning("Skill %s has no listable resource URI: %s", record.name, e)
                continue
            self.server.add_resource(resource)
            registered.add(str(resource.uri))
        for uri in self._resource_uris - registered:
            try:
                self.server.local_provider.remove_resource(uri)
            except KeyError:
                logger.debug("Resource %s was not registered", uri)
        self._resource_uris = registered

    def send_list_changed(self) -> None:
        self.sessions.broadcast("send_tool_list_changed")
        self.sessions.broadcast("send_prompt_list_changed")
        self.sessions.broadcast("send_resource_list_changed")

    def resource_updated(self, uri: str) -> None:
        logger.debug("Resource updated: %s", uri)
        self.sessions.broadcast("send_resource_updated", uri)


# --- FastMCP server ---
@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """
    function_purpose: Start the runtime (initial sync, refresh, watchers, polling) with the
    server and stop it on shutdown.
    """
    global _runtime
    runtime = build_runtime(_cli_args, surface=_surface, file_backend=WatchdogFileBackend())
    _runtime = runtime
    snapshot = await runtime.start()
    logger.info("Serving %d skill(s)", len(snapshot.index))
    try:
        yield {}
    finally:
        await runtime.stop()
        _runtime = None


_sessions = SessionRegistry()

mcp = FastMCP(
    SERVER_NAME,
    version=__version__,
    instructions=generate_instructions([]),
    lifespan=lifespan,
    middleware=[SessionTrackingMiddleware(_sessions)],
    on_duplicate="replace",
)

_surface = FastMCPSurface(mcp, _sessions)
_surface.update_tool_description(generate_instructions([]))
_surface.update_prompt_description(SKILL_PROMPT_USAGE + generate_instructions([]))


@mcp.tool(name="skill-resource")
def skill_resource(name: str, path: str | None = None) -> dict[str, Any]:
    """
    function_purpose: Read a file inside a skill, or list the skill's files when no path is given.

    Args:
    - name: str         Skill name
    - path: str | None  Relative file path inside the skill folder

    Returns:
    - Without path: {"skill": name, "files": [relative paths]}
    - With path: {"path", "encoding": "text" | "base64", "data", "mime_type", "size"}

    Paths that escape the skill folder, symlinks, directories and files over 10 MiB are rejected.
    """
    record = _get_skill(name)
    if not path:
        return {"skill": name, "files": list_skill_files(record.skill_dir)}
    try:
        return read_skill_file(record.skill_dir, path)
    except ResourceAccessError as e:
        raise ToolError(str(e)) from e


@mcp.tool(name="skill-config")
def skill_config() -> dict[str, Any]:
    """
    function_purpose: Show skill source configuration.

    Returns every configured directory from every tier (cli, env, persisted) with its kind,
    validity, allow-list status and skill count, plus the active tier, whether CLI/env
    override the persisted list, static mode and the owner allow-lists.
    """
    return _get_runtime().describe_config()


@mcp.tool(name="skill-config-add-directory")
async def skill_config_add_directory(directory: str) -> dict[str, Any]:
    """
    function_purpose: Add a local skill directory or GitHub reference to the persisted config.

    Local directories must exist. GitHub references (github.com/owner/repo[/subpath][@ref])
    are synced right away. Has no effect on the active set while CLI or SKILLS_DIR entries
    are in use.
    """
    runtime = _get_runtime()
    try:
        added = runtime.store.add_directory(directory)
    except ConfigurationError as e:
        raise ToolError(str(e)) from e
    await runtime.reload()
    return {"added": added, "config": runtime.describe_config()}


@mcp.tool(name="skill-config-remove-directory")
async def skill_config_remove_directory(directory: str) -> dict[str, Any]:
    """
    function_purpose: Remove a directory or GitHub reference from the persisted config.
    """
    runtime = _get_runtime()
    try:
        removed = runtime.store.remove_directory(directory)
    except ConfigurationError as e:
        raise ToolError(str(e)) from e
    await runtime.reload()
    return {"removed": removed, "config": runtime.describe_config()}


@mcp.tool(name="skill-config-set-invocation")
def skill_config_set_invocation(name: str, setting: str, value: bool) -> dict[str, Any]:
    """
    function_purpose: Override whether a skill is model-invocable or user-invocable.

    Args:
    - name: str      Skill name
    - setting: str   "model" (listed in the skill tool) or "user" (offered as a prompt)
    - value: bool    New effective value
    """
    runtime = _get_runtime()
    try:
        runtime.store.set_invocation_override(name, setting, value)
    except ConfigurationError as e:
        raise ToolError(str(e)) from e
    runtime.refresh()
    record = runtime.state.get(name)
    return {"name": name, "skill": record.to_dict() if record else None}


@mcp.tool(name="skill-config-clear-invocation")
def skill_config_clear_invocation(name: str, setting: str | None = None) -> dict[str, Any]:
    """
    function_purpose: Revert a skill to its frontmatter defaults.

    With setting ("model" or "user") only that override is cleared; without it, both are.
    """
    runtime = _get_runtime()
    try:
        runtime.store.clear_invocation_override(name, setting)
    except ConfigurationError as e:
        raise ToolError(str(e)) from e
    runtime.refresh()
    record = runtime.state.get(name)
    return {"name": name, "skill": record.to_dict() if record else None}


@mcp.tool(name="skill-config-allow-owner")
async def skill_config_allow_owner(kind: str, owner: str) -> dict[str, Any]:
    """
    function_purpose: Allow GitHub repositories from an org (kind="org") or user (kind="user").

    While both allow-lists are empty every owner is allowed.
    """
    runtime = _get_runtime()
    try:
        changed = runtime.store.allow_owner(kind, owner)
    except ConfigurationError as e:
        raise ToolError(str(e)) from e
    if changed:
        await runtime.reload()
    return {"changed": changed, "config": runtime.describe_config()}


@mcp.tool(name="skill-config-disallow-owner")
async def skill_config_disallow_owner(kind: str, owner: str) -> dict[str, Any]:
    """
    function_purpose: Remove an org or user from the GitHub allow-list.
    """
    runtime = _get_runtime()
    try:
        changed = runtime.store.disallow_owner(kind, owner)
    except ConfigurationError as e:
        raise ToolError(str(e)) from e
    if changed:
        await runtime.reload()
    return {"changed": changed, "config": runtime.describe_config()}


@mcp.tool(name="skill-config-set-static-mode")
async def skill_config_set_static_mode(enabled: bool) -> dict[str, Any]:
    """
    function_purpose: Turn static mode on or off. In static mode skill folders are not
    watched and GitHub sources are not polled.
    """
    runtime = _get_runtime()
    runtime.store.set_static_mode(enabled)
    await runtime.reload(sync=False)
    return {"staticMode": runtime.static_mode()}


@mcp.tool(name="skill-resource-subscribe")
def skill_resource_subscribe(uri: str) -> dict[str, Any]:
    """
    function_purpose: Subscribe to change notifications for a skill resource.

    uri is one of skill://, skill://{name}, skill://{name}/ or skill://{name}/{path}.
    Changes arrive as notifications/resources/updated for the same uri.
    """
    runtime = _get_runtime()
    if runtime.subscriptions is None:
        raise ToolError("Resource subscriptions are not available")
    try:
        files = runtime.subscriptions.subscribe(uri)
    except (UnknownResourceError, ResourceAccessError) as e:
        raise ToolError(str(e)) from e
    return {"uri": uri, "files": sorted(str(f) for f in files)}


@mcp.tool(name="skill-resource-unsubscribe")
def skill_resource_unsubscribe(uri: str) -> dict[str, Any]:
    """
    function_purpose: Stop change notifications for a skill resource.
    """
    runtime = _get_runtime()
    removed = runtime.subscriptions.unsubscribe(uri) if runtime.subscriptions else False
    return {"uri": uri, "unsubscribed": removed}


def _get_resource_skill(name: str) -> SkillRecord:
    runtime = _get_runtime()
    record = runtime.state.get(name)
    if record is None:
        raise ResourceError(f'Skill "{name}" not found. Available: {", ".join(runtime.state.index) or "none"}')
    return record


@mcp.resource("skill://{name}", mime_type="text/markdown", description="SKILL.md content for a skill")
def skill_definition_resource(name: str) -> str:
    return load_skill_content(_get_resource_skill(name))


@mcp.resource("skill://{name}/", description="Every file of a skill, definition file first")
def skill_collection_resource(name: str) -> ResourceResult:
    record = _get_resource_skill(name)
    contents = [
        ResourceContent(
            load_skill_content(record), mime_type="text/markdown", meta={"path": record.definition_path.name}
        )
    ]
    for rel_path in list_skill_files(record.skill_dir):
        try:
            payload = read_skill_file(record.skill_dir, rel_path)
        except ResourceAccessError as e:
            logger.warning("Skipping %s in collection for %s: %s", rel_path, name, e)
            continue
        data = payload["data"] if payload["encoding"] == "text" else base64.b64decode(payload["data"])
        contents.append(ResourceContent(data, mime_type=payload["mime_type"], meta={"path": rel_path}))
    return ResourceResult(contents)


@mcp.resource("skill://{name}/{path*}", description="Files within a skill directory")
def skill_file_resource(name: str, path: str) -> str | bytes:
    record = _get_resource_skill(name)
    try:
        payload = read_skill_file(record.skill_dir, path)
    except ResourceAccessError as e:
        raise ResourceError(str(e)) from e
    if payload["encoding"] == "text":
        return payload["data"]
    return base64.b64decode(payload["data"])


# --- Entry points ---
def run(cli_args: Sequence[str] = ()) -> None:
    """
    function_purpose: Entry point to start the MCP stdio server.

    - Configures logging
    - Records the CLI directory tier for the lifespan to resolve
    - Runs FastMCP stdio server
    """
    global _cli_args
    logger = configure_logging()
    _cli_args = list(cli_args)
    logger.info("Server starting with cli directories=%s", _cli_args or "none")
    mcp.run()  # stdio transport by default


def cli_main(argv: Sequence[str] | None = None) -> None:
    """
    function_purpose: CLI for inspecting skill sources without starting the MCP server.

    Usage:
      python -m skillrelay.server [DIR_OR_REPO ...]            # serve over stdio
      python -m skillrelay.server [DIR_OR_REPO ...] --list
      python -m skillrelay.server [DIR_OR_REPO ...] --detail <NAME>
      python -m skillrelay.server [DIR_OR_REPO ...] --config
      python -m skillrelay.server [DIR_OR_REPO ...] --sync
    """
    import argparse
    import json

    parser = argparse.ArgumentParser(
        prog="skillrelay",
        description="Relay Agent Skills from local directories and GitHub repositories over MCP stdio.",
    )
    parser.add_argument(
        "directories",
        nargs="*",
        metavar="DIR_OR_REPO",
        help="Skill directories or GitHub references; comma-separated lists accepted",
    )
    parser.add_argument("--list", action="store_true", help="List all discovered skills and exit")
    parser.add_argument("--detail", metavar="NAME", help="Show full details for a specific skill name")
    parser.add_argument("--config", action="store_true", help="Show the resolved source configuration and exit")
    parser.add_argument("--sync", action="store_true", help="Sync configured GitHub repositories once and exit")

    args = parser.parse_args(argv)

    if not (args.list or args.detail or args.config or args.sync):
        run(args.directories)
        return

    logger = configure_logging()
    runtime = build_runtime(args.directories)

    if args.sync:
        logger.info("Syncing remote repositories...")
        results = asyncio.run(runtime.sync_remotes())
        print(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
        return

    asyncio.run(runtime.reload())

    if args.list:
        logger.info("Listing skills...")
        result = [r.to_dict() for r in runtime.state.index.values()]
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return

    if args.detail:
        logger.info("Detail for skill: %s", args.detail)
        record = runtime.state.get(args.detail)
        if record is None:
            parser.exit(1, f"Skill not found: {args.detail}\n")
        detail = record.to_dict()
        detail["content"] = load_skill_content(record)
        detail["files"] = list_skill_files(record.skill_dir)
        print(json.dumps(detail, indent=2, ensure_ascii=False))
        return

    print(json.dumps(runtime.describe_config(), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    cli_main()
