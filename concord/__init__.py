"""
Concord - Edit conflict detection and resolution engine.

Detects when concurrent edits to document elements conflict, resolves them
with a configurable strategy or defers them to people, and commits the
outcome with optimistic concurrency.
"""

__version__ = "0.1.0"

from concord.coordinator.session import EditHandle, ResolutionCoordinator, ResolutionOutcome

__all__ = ["EditHandle", "ResolutionCoordinator", "ResolutionOutcome", "__version__"]
