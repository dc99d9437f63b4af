"""
skillrelay: FastMCP stdio server that relays Agent Skills from local directories and
GitHub repositories to MCP clients, and keeps the exposed set in sync as sources change.

The package provides the source configuration resolver, remote repository sync and
polling, skill discovery, the refresh pipeline, and resource subscriptions, plus the
server entrypoint that wires them into FastMCP.
"""

__version__: str = "0.1.0"

SERVER_NAME: str = "SkillRelay"


def version() -> str:
    return __version__


__all__: list[str] = ["SERVER_NAME", "__version__", "version"]
