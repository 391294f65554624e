"""Command-line surface."""

from __future__ import annotations

from cogworks.ui.cli import CLIError, build_parser, run_cli

__all__ = ["CLIError", "build_parser", "run_cli"]
