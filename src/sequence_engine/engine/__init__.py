"""Core engine: definitions, enrollments, scheduling and dispatch.

Server-specific concerns (routing, worker threads) live in `sequence_engine.server`.
"""
