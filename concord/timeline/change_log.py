"""
Change Log / Timeline for Concord

Append-only record of edits per element with their causal metadata.
Recording never rejects an edit for conflicting; detection is a separate
concern. Status transitions are validated here so every edit reaches exactly
one terminal state.
"""

from loguru import logger

from concord.core.exceptions import InvalidTransitionError, NotFoundError
from concord.core.state import TERMINAL_EDIT_STATUSES, Edit, EditStatus


def validate_transition(edit: Edit, status: EditStatus) -> bool:
    """
    Validate moving ``edit`` to ``status`` without applying it.

    Returns:
        False when the transition is an idempotent no-op, True otherwise

    Raises:
        InvalidTransitionError: The transition is illegal
    """
    current = edit.status

    if status == EditStatus.PENDING:
        raise InvalidTransitionError(f"Edit {edit.edit_id} cannot return to pending")

    if status == EditStatus.AWAITING_MANUAL_RESOLUTION:
        if current == status:
            return False
        if current != EditStatus.PENDING:
            raise InvalidTransitionError(
                f"Edit {edit.edit_id} is {current.value}; only pending edits can await resolution"
            )
        return True

    if current in TERMINAL_EDIT_STATUSES:
        if current == status:
            return False
        raise InvalidTransitionError(
            f"Edit {edit.edit_id} is already {current.value}; cannot become {status.value}"
        )
    return True


class ChangeLog:
    """
    Ordered edit timeline, indexed per element.

    Usage:
        log = ChangeLog()
        log.record(edit)
        pending = log.pending_for(edit.element_id)
        log.mark_terminal(edit.edit_id, EditStatus.COMMITTED, committed_version=1)
    """

    def __init__(self) -> None:
        self._edits: dict[str, Edit] = {}
        self._by_element: dict[str, list[str]] = {}
        self._committed: dict[str, dict[int, str]] = {}  # element -> version -> edit

    def record(self, edit: Edit) -> None:
        """Append an edit in ``Pending`` status."""
        if edit.edit_id in self._edits:
            raise InvalidTransitionError(f"Edit already recorded: {edit.edit_id}")

        if edit.status != EditStatus.PENDING:
            edit = edit.model_copy(update={"status": EditStatus.PENDING})

        self._edits[edit.edit_id] = edit
        self._by_element.setdefault(edit.element_id, []).append(edit.edit_id)
        logger.debug(
            f"Recorded edit {edit.edit_id} on {edit.element_id} "
            f"(author={edit.author_id}, base={edit.base_version})"
        )

    def get(self, edit_id: str) -> Edit:
        edit = self._edits.get(edit_id)
        if edit is None:
            raise NotFoundError("edit", edit_id)
        return edit

    def pending_for(self, element_id: str) -> list[Edit]:
        """Non-terminal edits ordered by ``submitted_at`` then ``edit_id``."""
        edits = [
            self._edits[edit_id]
            for edit_id in self._by_element.get(element_id, [])
            if not self._edits[edit_id].is_terminal
        ]
        return sorted(edits, key=lambda e: e.sort_key)

    def history(self, element_id: str) -> list[Edit]:
        """All edits ever recorded for an element, in submission order."""
        edits = [self._edits[edit_id] for edit_id in self._by_element.get(element_id, [])]
        return sorted(edits, key=lambda e: e.sort_key)

    def committed_between(self, element_id: str, low: int, high: int) -> list[Edit]:
        """Committed edits whose produced version lies in ``(low, high]``."""
        versions = self._committed.get(element_id, {})
        return [
            self._edits[versions[v]]
            for v in sorted(versions)
            if low < v <= high
        ]

    def check_transition(self, edit_id: str, status: EditStatus) -> bool:
        """Validate a transition of a recorded edit; see ``validate_transition``."""
        return validate_transition(self.get(edit_id), status)

    def contains(self, edit_id: str) -> bool:
        return edit_id in self._edits

    def mark_terminal(
        self,
        edit_id: str,
        status: EditStatus,
        reason: str | None = None,
        committed_version: int | None = None,
    ) -> Edit:
        """Move an edit to a terminal status; re-marking the same status is a no-op."""
        if status not in TERMINAL_EDIT_STATUSES:
            raise InvalidTransitionError(f"{status.value} is not a terminal status")
        if status == EditStatus.COMMITTED and committed_version is None:
            raise InvalidTransitionError(f"Committing {edit_id} requires a committed version")

        if not self.check_transition(edit_id, status):
            return self._edits[edit_id]

        edit = self._edits[edit_id].model_copy(
            update={
                "status": status,
                "status_reason": reason,
                "committed_version": committed_version,
            }
        )
        self._edits[edit_id] = edit

        if status == EditStatus.COMMITTED:
            self._committed.setdefault(edit.element_id, {})[committed_version] = edit_id

        logger.debug(f"Edit {edit_id} -> {status.value}")
        return edit

    def mark_awaiting(self, edit_id: str, reason: str | None = None) -> Edit:
        if not self.check_transition(edit_id, EditStatus.AWAITING_MANUAL_RESOLUTION):
            return self._edits[edit_id]
        edit = self._edits[edit_id].model_copy(
            update={"status": EditStatus.AWAITING_MANUAL_RESOLUTION, "status_reason": reason}
        )
        self._edits[edit_id] = edit
        return edit

    def mark_withdrawn(self, edit_id: str) -> Edit:
        """Flag a non-terminal edit as withdrawn by its author."""
        edit = self.get(edit_id)
        if edit.is_terminal:
            raise InvalidTransitionError(
                f"Edit {edit_id} is already {edit.status.value}; cannot withdraw"
            )
        edit = edit.model_copy(update={"withdrawn": True})
        self._edits[edit_id] = edit
        return edit

    def restore(self, edit: Edit) -> None:
        """Load a persisted edit snapshot (journal replay)."""
        if edit.edit_id not in self._edits:
            self._by_element.setdefault(edit.element_id, []).append(edit.edit_id)
        self._edits[edit.edit_id] = edit
        if edit.status == EditStatus.COMMITTED and edit.committed_version is not None:
            self._committed.setdefault(edit.element_id, {})[edit.committed_version] = edit.edit_id

    def all_edits(self) -> list[Edit]:
        return sorted(self._edits.values(), key=lambda e: e.sort_key)
