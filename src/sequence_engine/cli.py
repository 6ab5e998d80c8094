"""Module entrypoint (`python -m sequence_engine.cli`).

The CLI is implemented in `sequence_engine.engine.main`.
"""

from __future__ import annotations

from sequence_engine.engine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
