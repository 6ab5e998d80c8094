"""FastAPI server adapter for the sequence engine.

This module exposes a REST API over the engine services.

Design intent:
- Keep business logic in `sequence_engine.engine.*`
- Keep server-specific concerns (routing, CORS, worker threads) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from sequence_engine.server.app import create_app
