"""Triggering, branching, scheduling and step execution.

Modules here depend on `sequence_engine.engine.enrollment`; import them
directly (e.g. `sequence_engine.engine.workflow.scheduler`) rather than
through this package.
"""

__all__: list[str] = []
