"""Module entrypoint for ``python -m cogworks``."""

from __future__ import annotations

from cogworks.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
