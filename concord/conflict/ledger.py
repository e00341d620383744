"""Conflict and resolution records, indexed by element and edit."""

from loguru import logger

from concord.core.exceptions import InvalidTransitionError, NotFoundError
from concord.core.state import Conflict, ConflictStatus, Resolution


class ConflictLedger:
    """
    Owned store of conflicts and their resolutions.

    Open conflicts may be updated; a resolved conflict is an immutable audit
    record and accepts exactly one resolution.
    """

    def __init__(self) -> None:
        self._conflicts: dict[str, Conflict] = {}
        self._resolutions: dict[str, Resolution] = {}
        self._by_edit: dict[str, str] = {}

    def get(self, conflict_id: str) -> Conflict:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise NotFoundError("conflict", conflict_id)
        return conflict

    def get_resolution(self, resolution_id: str) -> Resolution:
        resolution = self._resolutions.get(resolution_id)
        if resolution is None:
            raise NotFoundError("resolution", resolution_id)
        return resolution

    def resolution_for(self, conflict_id: str) -> Resolution | None:
        conflict = self.get(conflict_id)
        if conflict.resolution_id is None:
            return None
        return self._resolutions.get(conflict.resolution_id)

    def check_update(self, conflict: Conflict) -> None:
        existing = self._conflicts.get(conflict.conflict_id)
        if existing is not None and existing.is_resolved:
            raise InvalidTransitionError(
                f"Conflict {conflict.conflict_id} is resolved and immutable"
            )

    def check_attach(self, conflict_id: str) -> None:
        existing = self._conflicts.get(conflict_id)
        if existing is not None and (existing.is_resolved or existing.resolution_id):
            raise InvalidTransitionError(f"Conflict {conflict_id} already has a resolution")
        if any(r.conflict_id == conflict_id for r in self._resolutions.values()):
            raise InvalidTransitionError(f"Conflict {conflict_id} already has a resolution")

    def put(self, conflict: Conflict) -> None:
        """Insert or update an unresolved conflict."""
        self.check_update(conflict)
        self._store(conflict)

    def attach_resolution(self, conflict: Conflict, resolution: Resolution) -> None:
        """Store a resolution together with the conflict snapshot it resolves."""
        self.check_attach(resolution.conflict_id)
        if conflict.resolution_id != resolution.resolution_id:
            raise InvalidTransitionError(
                f"Conflict {conflict.conflict_id} does not reference {resolution.resolution_id}"
            )
        self._resolutions[resolution.resolution_id] = resolution
        self._store(conflict)
        logger.debug(f"Attached {resolution.resolution_id} to {conflict.conflict_id}")

    def _store(self, conflict: Conflict) -> None:
        self._conflicts[conflict.conflict_id] = conflict
        for edit_id in conflict.competing_edit_ids:
            self._by_edit[edit_id] = conflict.conflict_id

    def conflict_for_edit(self, edit_id: str) -> Conflict | None:
        """Most recent conflict that references the edit."""
        conflict_id = self._by_edit.get(edit_id)
        if conflict_id is None:
            return None
        return self._conflicts[conflict_id]

    def open_conflict_for_edit(self, edit_id: str) -> Conflict | None:
        conflict = self.conflict_for_edit(edit_id)
        if conflict is None or conflict.is_resolved:
            return None
        return conflict

    def open_for_element(self, element_id: str) -> list[Conflict]:
        return [
            c
            for c in self.list_conflicts()
            if c.element_id == element_id and not c.is_resolved
        ]

    def list_conflicts(self, status: ConflictStatus | None = None) -> list[Conflict]:
        conflicts = sorted(
            self._conflicts.values(), key=lambda c: (c.detected_at, c.conflict_id)
        )
        if status is None:
            return conflicts
        return [c for c in conflicts if c.status == status]

    def list_resolutions(self) -> list[Resolution]:
        return sorted(self._resolutions.values(), key=lambda r: (r.decided_at, r.resolution_id))

    def restore(self, conflict: Conflict, resolution: Resolution | None = None) -> None:
        """Load persisted records (journal replay)."""
        if resolution is not None:
            self._resolutions[resolution.resolution_id] = resolution
        self._store(conflict)
