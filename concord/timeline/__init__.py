"""Change Log / Timeline - append-only edit history per element."""

from concord.timeline.change_log import ChangeLog, validate_transition

__all__ = ["ChangeLog", "validate_transition"]
