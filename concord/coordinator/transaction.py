"""
Atomic coordinator transactions.

A ``UnitOfWork`` stages element commits, edit transitions and conflict and
resolution records against snapshots, validates them, hands the resulting
``ChangeSet`` to the journal and only then applies it to the in-memory
stores. A failure at any point before the journal returns leaves every
store untouched.
"""

from typing import Any

from loguru import logger

from concord.conflict.ledger import ConflictLedger
from concord.core.exceptions import InvalidTransitionError
from concord.core.state import (
    Conflict,
    ConflictStatus,
    Edit,
    EditStatus,
    Element,
    Resolution,
    utc_now,
)
from concord.elements.model import ElementModel
from concord.persistence.journal import ChangeSet, ElementWrite, TransactionJournal
from concord.timeline.change_log import ChangeLog, validate_transition


class UnitOfWork:
    """
    One all-or-nothing change across the element model, change log and
    conflict ledger.

    Usage:
        uow = UnitOfWork(elements, change_log, ledger, journal)
        version = uow.commit_element("para-1", 3, new_content)
        uow.transition_edit(edit_id, EditStatus.COMMITTED, committed_version=version)
        await uow.commit()
    """

    def __init__(
        self,
        elements: ElementModel,
        change_log: ChangeLog,
        ledger: ConflictLedger,
        journal: TransactionJournal,
    ) -> None:
        self.elements = elements
        self.change_log = change_log
        self.ledger = ledger
        self.journal = journal

        self._element_writes: dict[str, ElementWrite] = {}
        self._new_edit_ids: set[str] = set()
        self._edits: dict[str, Edit] = {}
        self._conflicts: dict[str, Conflict] = {}
        self._resolutions: dict[str, Resolution] = {}
        self._committed = False

    # =========================================================================
    # Staged reads
    # =========================================================================

    def element(self, element_id: str) -> Element:
        write = self._element_writes.get(element_id)
        if write is not None:
            return write.element
        return self.elements.get(element_id)

    def edit(self, edit_id: str) -> Edit:
        if edit_id in self._edits:
            return self._edits[edit_id]
        return self.change_log.get(edit_id)

    def conflict(self, conflict_id: str) -> Conflict:
        if conflict_id in self._conflicts:
            return self._conflicts[conflict_id]
        return self.ledger.get(conflict_id)

    # =========================================================================
    # Staging
    # =========================================================================

    def create_element(self, element: Element) -> None:
        if self.elements.exists(element.element_id) or element.element_id in self._element_writes:
            raise InvalidTransitionError(f"Element already exists: {element.element_id}")
        self._element_writes[element.element_id] = ElementWrite(element=element)

    def commit_element(self, element_id: str, content: Any, deleted: bool = False) -> int:
        """Stage the next version of an element and return its number."""
        if element_id in self._element_writes:
            raise InvalidTransitionError(f"Element {element_id} is already written in this transaction")

        current = self.elements.get(element_id)
        expected = current.current_version
        new_version = current.current_version + 1
        self._element_writes[element_id] = ElementWrite(
            element=current.model_copy(
                update={
                    "current_version": new_version,
                    "content": content,
                    "deleted": deleted,
                    "updated_at": utc_now(),
                }
            ),
            expected_prior_version=expected,
        )
        return new_version

    def record_edit(self, edit: Edit) -> Edit:
        if self.change_log.contains(edit.edit_id) or edit.edit_id in self._edits:
            raise InvalidTransitionError(f"Edit already recorded: {edit.edit_id}")
        edit = edit.model_copy(update={"status": EditStatus.PENDING})
        self._new_edit_ids.add(edit.edit_id)
        self._edits[edit.edit_id] = edit
        return edit

    def transition_edit(
        self,
        edit_id: str,
        status: EditStatus,
        reason: str | None = None,
        committed_version: int | None = None,
    ) -> Edit:
        edit = self.edit(edit_id)
        if status == EditStatus.COMMITTED and committed_version is None:
            raise InvalidTransitionError(f"Committing {edit_id} requires a committed version")
        if not validate_transition(edit, status):
            return edit

        update: dict[str, Any] = {"status": status, "status_reason": reason}
        if status == EditStatus.COMMITTED:
            update["committed_version"] = committed_version
        edit = edit.model_copy(update=update)
        self._edits[edit_id] = edit
        return edit

    def withdraw_edit(self, edit_id: str) -> Edit:
        edit = self.edit(edit_id)
        if edit.is_terminal:
            raise InvalidTransitionError(
                f"Edit {edit_id} is already {edit.status.value}; cannot withdraw"
            )
        edit = edit.model_copy(update={"withdrawn": True})
        self._edits[edit_id] = edit
        return edit

    def put_conflict(self, conflict: Conflict) -> None:
        self.ledger.check_update(conflict)
        if conflict.is_resolved and conflict.resolution_id not in self._resolutions:
            raise InvalidTransitionError(
                f"Conflict {conflict.conflict_id} can only be resolved with a resolution"
            )
        self._conflicts[conflict.conflict_id] = conflict

    def attach_resolution(self, resolution: Resolution) -> Conflict:
        """Stage a resolution and mark its conflict resolved."""
        self.ledger.check_attach(resolution.conflict_id)
        conflict = self.conflict(resolution.conflict_id)
        if conflict.is_resolved or resolution.conflict_id in {
            r.conflict_id for r in self._resolutions.values()
        }:
            raise InvalidTransitionError(
                f"Conflict {resolution.conflict_id} already has a resolution"
            )

        self._resolutions[resolution.resolution_id] = resolution
        conflict = conflict.model_copy(
            update={
                "status": ConflictStatus.RESOLVED,
                "resolution_id": resolution.resolution_id,
            }
        )
        self._conflicts[conflict.conflict_id] = conflict
        return conflict

    # =========================================================================
    # Commit
    # =========================================================================

    def _validate(self) -> None:
        for element_id, write in self._element_writes.items():
            if write.expected_prior_version is None:
                if self.elements.exists(element_id):
                    raise InvalidTransitionError(f"Element already exists: {element_id}")
            else:
                self.elements.check_version(element_id, write.expected_prior_version)

        for conflict in self._conflicts.values():
            self.ledger.check_update(conflict)
        for resolution in self._resolutions.values():
            self.ledger.check_attach(resolution.conflict_id)

    def changeset(self) -> ChangeSet:
        return ChangeSet(
            element_writes=list(self._element_writes.values()),
            edits=sorted(self._edits.values(), key=lambda e: e.sort_key),
            conflicts=list(self._conflicts.values()),
            resolutions=list(self._resolutions.values()),
        )

    async def commit(self) -> ChangeSet:
        """
        Validate, persist and apply the staged changes.

        Raises:
            VersionMismatchError: An element moved since it was staged
            InvalidTransitionError: A staged change is no longer legal
            PersistenceError: The journal rejected the change set
        """
        if self._committed:
            raise InvalidTransitionError("Transaction already committed")

        self._validate()
        changes = self.changeset()
        await self.journal.persist(changes)
        self._apply(changes)
        self._committed = True
        logger.debug(f"Transaction applied: {changes.summary()}")
        return changes

    def _apply(self, changes: ChangeSet) -> None:
        for write in changes.element_writes:
            element = write.element
            if write.expected_prior_version is None:
                self.elements.restore(element)
            else:
                self.elements.commit_nowait(
                    element.element_id,
                    write.expected_prior_version,
                    element.content,
                    deleted=element.deleted,
                )

        for edit in changes.edits:
            self.change_log.restore(edit)

        for conflict in changes.conflicts:
            resolution = (
                self._resolutions.get(conflict.resolution_id) if conflict.resolution_id else None
            )
            if resolution is not None:
                self.ledger.attach_resolution(conflict, resolution)
            else:
                self.ledger.put(conflict)
