"""Sequence Automation Engine.

Multi-step outreach sequences (email, WhatsApp, SMS) with:
- event-driven and manual enrollment
- durable, lease-based step scheduling
- engagement-driven branching
- local JSON persistence
"""

__version__ = "0.1.0"

from sequence_engine.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
