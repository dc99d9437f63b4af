"""
Package entry point for launching the skillrelay server module.

This allows running:
  - python -m skillrelay            -> invokes skillrelay.server CLI
  - python -m skillrelay.server     -> also available directly via the server module

The entry point delegates to skillrelay.server.cli_main() which supports both
CLI inspection modes and starting the stdio MCP server.
"""

from skillrelay.server import cli_main


def main() -> None:
    cli_main()


if __name__ == "__main__":
    main()
