"""
Transaction journal for Concord

Every coordinator transaction is handed to a journal as one ``ChangeSet``
before any in-memory state changes. A journal either makes the whole change
set durable or raises, in which case nothing is applied:
- MemoryJournal: Process-local journal for tests and embedded use
- SqlJournal: SQLAlchemy async journal (PostgreSQL via asyncpg, SQLite via aiosqlite)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from concord.core.exceptions import PersistenceError, VersionMismatchError
from concord.core.state import Conflict, Edit, Element, Resolution
from concord.persistence.database import Database
from concord.persistence.models import ConflictRow, EditRow, ElementRow, ResolutionRow


@dataclass
class ElementWrite:
    """Element snapshot after a write, with the version it must replace."""

    element: Element
    expected_prior_version: int | None = None  # None creates the element


@dataclass
class ChangeSet:
    """All record changes of one transaction."""

    element_writes: list[ElementWrite] = field(default_factory=list)
    edits: list[Edit] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    resolutions: list[Resolution] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.element_writes or self.edits or self.conflicts or self.resolutions)

    def summary(self) -> str:
        return (
            f"{len(self.element_writes)} elements, {len(self.edits)} edits, "
            f"{len(self.conflicts)} conflicts, {len(self.resolutions)} resolutions"
        )


@dataclass
class JournalSnapshot:
    """Latest persisted state of every record."""

    elements: list[Element] = field(default_factory=list)
    edits: list[Edit] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    resolutions: list[Resolution] = field(default_factory=list)


class TransactionJournal(ABC):
    """Base class for transaction journals."""

    @abstractmethod
    async def persist(self, changes: ChangeSet) -> None:
        """
        Make a change set durable atomically.

        Raises:
            VersionMismatchError: An element write lost a race
            PersistenceError: The change set could not be stored
        """
        pass

    @abstractmethod
    async def load_snapshot(self) -> JournalSnapshot:
        """Read back every persisted record."""
        pass

    @abstractmethod
    async def load_element(self, element_id: str) -> JournalSnapshot:
        """Read back one element with its edits, conflicts and resolutions."""
        pass

    async def close(self) -> None:
        pass


class MemoryJournal(TransactionJournal):
    """
    Journal that keeps persisted records in process memory.

    Applies the same element version checks as the SQL journal, so it can
    stand in for it in tests.
    """

    def __init__(self) -> None:
        self._elements: dict[str, Element] = {}
        self._edits: dict[str, Edit] = {}
        self._conflicts: dict[str, Conflict] = {}
        self._resolutions: dict[str, Resolution] = {}
        self.transactions = 0

    async def persist(self, changes: ChangeSet) -> None:
        for write in changes.element_writes:
            element_id = write.element.element_id
            stored = self._elements.get(element_id)
            if write.expected_prior_version is None:
                if stored is not None:
                    raise PersistenceError(f"Element already journaled: {element_id}")
            else:
                actual = stored.current_version if stored is not None else 0
                if stored is None or actual != write.expected_prior_version:
                    raise VersionMismatchError(element_id, write.expected_prior_version, actual)

        for write in changes.element_writes:
            self._elements[write.element.element_id] = write.element
        for edit in changes.edits:
            self._edits[edit.edit_id] = edit
        for conflict in changes.conflicts:
            self._conflicts[conflict.conflict_id] = conflict
        for resolution in changes.resolutions:
            self._resolutions[resolution.resolution_id] = resolution

        self.transactions += 1

    async def load_snapshot(self) -> JournalSnapshot:
        return JournalSnapshot(
            elements=list(self._elements.values()),
            edits=list(self._edits.values()),
            conflicts=list(self._conflicts.values()),
            resolutions=list(self._resolutions.values()),
        )

    async def load_element(self, element_id: str) -> JournalSnapshot:
        element = self._elements.get(element_id)
        conflicts = [c for c in self._conflicts.values() if c.element_id == element_id]
        conflict_ids = {c.conflict_id for c in conflicts}
        return JournalSnapshot(
            elements=[element] if element is not None else [],
            edits=[e for e in self._edits.values() if e.element_id == element_id],
            conflicts=conflicts,
            resolutions=[r for r in self._resolutions.values() if r.conflict_id in conflict_ids],
        )


class SqlJournal(TransactionJournal):
    """
    Journal backed by a relational database.

    Element writes use a conditional update on ``current_version`` so that two
    processes racing on one element cannot both commit.

    Usage:
        journal = SqlJournal(Database("sqlite+aiosqlite:///concord.db"))
        await journal.init_schema()
        coordinator = ResolutionCoordinator(journal=journal)
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    @classmethod
    def from_url(cls, url: str | None = None) -> "SqlJournal":
        return cls(Database(url))

    async def init_schema(self) -> None:
        await self.database.init_schema()

    async def persist(self, changes: ChangeSet) -> None:
        if changes.is_empty:
            return

        try:
            async with self.database.session() as session:
                for write in changes.element_writes:
                    await self._write_element(session, write)
                await session.flush()

                for edit in changes.edits:
                    await session.merge(
                        EditRow(
                            edit_id=edit.edit_id,
                            element_id=edit.element_id,
                            author_id=edit.author_id,
                            base_version=edit.base_version,
                            status=edit.status.value,
                            committed_version=edit.committed_version,
                            data=edit.model_dump(mode="json"),
                        )
                    )
                for conflict in changes.conflicts:
                    await session.merge(
                        ConflictRow(
                            conflict_id=conflict.conflict_id,
                            element_id=conflict.element_id,
                            classification=conflict.classification.value,
                            status=conflict.status.value,
                            data=conflict.model_dump(mode="json"),
                        )
                    )
                await session.flush()

                for resolution in changes.resolutions:
                    session.add(
                        ResolutionRow(
                            resolution_id=resolution.resolution_id,
                            conflict_id=resolution.conflict_id,
                            strategy_used=resolution.strategy_used,
                            decided_by=resolution.decided_by,
                            data=resolution.model_dump(mode="json"),
                        )
                    )
        except SQLAlchemyError as e:
            logger.error(f"Journal write failed ({changes.summary()}): {e}")
            raise PersistenceError(f"Could not persist transaction: {e}") from e

        logger.debug(f"Journaled {changes.summary()}")

    async def _write_element(self, session, write: ElementWrite) -> None:
        element = write.element
        if write.expected_prior_version is None:
            session.add(
                ElementRow(
                    element_id=element.element_id,
                    document_id=element.document_id,
                    element_class=element.element_class,
                    current_version=element.current_version,
                    deleted=element.deleted,
                    data=element.model_dump(mode="json"),
                )
            )
            return

        result = await session.execute(
            update(ElementRow)
            .where(
                ElementRow.element_id == element.element_id,
                ElementRow.current_version == write.expected_prior_version,
            )
            .values(
                current_version=element.current_version,
                deleted=element.deleted,
                data=element.model_dump(mode="json"),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        actual = await session.scalar(
            select(ElementRow.current_version).where(ElementRow.element_id == element.element_id)
        )
        raise VersionMismatchError(
            element.element_id,
            write.expected_prior_version,
            actual if actual is not None else 0,
        )

    async def load_snapshot(self) -> JournalSnapshot:
        try:
            async with self.database.session() as session:
                elements = (await session.scalars(select(ElementRow))).all()
                edits = (await session.scalars(select(EditRow))).all()
                conflicts = (await session.scalars(select(ConflictRow))).all()
                resolutions = (await session.scalars(select(ResolutionRow))).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load journal: {e}") from e

        snapshot = JournalSnapshot(
            elements=[Element.model_validate(row.data) for row in elements],
            edits=[Edit.model_validate(row.data) for row in edits],
            conflicts=[Conflict.model_validate(row.data) for row in conflicts],
            resolutions=[Resolution.model_validate(row.data) for row in resolutions],
        )
        logger.info(
            f"Loaded journal: {len(snapshot.elements)} elements, {len(snapshot.edits)} edits, "
            f"{len(snapshot.conflicts)} conflicts"
        )
        return snapshot

    async def load_element(self, element_id: str) -> JournalSnapshot:
        try:
            async with self.database.session() as session:
                elements = (
                    await session.scalars(select(ElementRow).where(ElementRow.element_id == element_id))
                ).all()
                edits = (
                    await session.scalars(select(EditRow).where(EditRow.element_id == element_id))
                ).all()
                conflicts = (
                    await session.scalars(
                        select(ConflictRow).where(ConflictRow.element_id == element_id)
                    )
                ).all()
                resolutions = []
                if conflicts:
                    resolutions = (
                        await session.scalars(
                            select(ResolutionRow).where(
                                ResolutionRow.conflict_id.in_([c.conflict_id for c in conflicts])
                            )
                        )
                    ).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load element {element_id}: {e}") from e

        logger.debug(f"Reloaded {element_id}: {len(edits)} edits, {len(conflicts)} conflicts")
        return JournalSnapshot(
            elements=[Element.model_validate(row.data) for row in elements],
            edits=[Edit.model_validate(row.data) for row in edits],
            conflicts=[Conflict.model_validate(row.data) for row in conflicts],
            resolutions=[Resolution.model_validate(row.data) for row in resolutions],
        )

    async def close(self) -> None:
        await self.database.close()
