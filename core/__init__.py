"""Driftline core: events, exceptions and scheduling primitives."""
