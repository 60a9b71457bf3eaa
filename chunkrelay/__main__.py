"""Module entrypoint for running chunkrelay as ``python -m chunkrelay``."""

from __future__ import annotations

from chunkrelay.cli import main


if __name__ == "__main__":
    main()
