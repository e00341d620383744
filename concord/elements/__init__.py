"""Element Model - versioned content units with optimistic commits."""

from concord.elements.model import ElementModel

__all__ = ["ElementModel"]
