"""
Unit tests for atomic coordinator transactions.

Tests the transaction layer including:
- MemoryJournal version checks and per-element reads
- UnitOfWork staging, validation and all-or-nothing apply
- ConflictLedger immutability of resolved conflicts
"""

from datetime import datetime, timezone

import pytest

from concord.conflict.ledger import ConflictLedger
from concord.coordinator.transaction import UnitOfWork
from concord.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    VersionMismatchError,
)
from concord.core.state import (
    Conflict,
    ConflictClassification,
    ConflictStatus,
    EditStatus,
    Element,
    Resolution,
)
from concord.elements.model import ElementModel
from concord.persistence.journal import ChangeSet, ElementWrite, MemoryJournal
from concord.timeline.change_log import ChangeLog

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)

# =============================================================================
# TEST FIXTURES
# =============================================================================


class FailingJournal(MemoryJournal):
    """Journal that refuses every write while ``failing`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    async def persist(self, changes: ChangeSet) -> None:
        if self.failing:
            raise PersistenceError("disk full")
        await super().persist(changes)


@pytest.fixture
def stores():
    return ElementModel(), ChangeLog(), ConflictLedger(), FailingJournal()


@pytest.fixture
def uow_factory(stores):
    def _make() -> UnitOfWork:
        return UnitOfWork(*stores)

    return _make


def make_conflict(conflict_id: str = "cfl-1", **overrides) -> Conflict:
    data = {
        "conflict_id": conflict_id,
        "element_id": "el-1",
        "competing_edit_ids": ["a", "b"],
        "detected_at": NOW,
        "classification": ConflictClassification.CONTRADICTORY,
    }
    data.update(overrides)
    return Conflict(**data)


def make_resolution(resolution_id: str = "res-1", conflict_id: str = "cfl-1") -> Resolution:
    return Resolution(
        resolution_id=resolution_id,
        conflict_id=conflict_id,
        strategy_used="manual_merge",
        outcome_edit_id="a",
        decided_by="carol",
        decided_at=NOW,
    )


async def seed(uow_factory, make_edit, *edit_ids: str) -> None:
    uow = uow_factory()
    uow.create_element(Element(element_id="el-1", content={"t": 0}))
    for i, edit_id in enumerate(edit_ids):
        uow.record_edit(make_edit(edit_id, regions={"/t": edit_id}, submitted=i))
    await uow.commit()


# =============================================================================
# TEST MemoryJournal
# =============================================================================


class TestMemoryJournal:
    """Tests for MemoryJournal."""

    @pytest.mark.asyncio
    async def test_persist_and_load(self, make_edit):
        journal = MemoryJournal()
        element = Element(element_id="el-1")

        await journal.persist(ChangeSet(element_writes=[ElementWrite(element)], edits=[make_edit("a")]))
        snapshot = await journal.load_snapshot()

        assert [e.element_id for e in snapshot.elements] == ["el-1"]
        assert [e.edit_id for e in snapshot.edits] == ["a"]
        assert journal.transactions == 1

    @pytest.mark.asyncio
    async def test_stale_element_write(self):
        """Test a write against an outdated version is refused."""
        journal = MemoryJournal()
        await journal.persist(ChangeSet(element_writes=[ElementWrite(Element(element_id="el-1"))]))
        bumped = Element(element_id="el-1", current_version=1)
        await journal.persist(ChangeSet(element_writes=[ElementWrite(bumped, 0)]))

        with pytest.raises(VersionMismatchError):
            await journal.persist(ChangeSet(element_writes=[ElementWrite(bumped, 0)]))

    @pytest.mark.asyncio
    async def test_duplicate_create(self):
        journal = MemoryJournal()
        write = ElementWrite(Element(element_id="el-1"))
        await journal.persist(ChangeSet(element_writes=[write]))

        with pytest.raises(PersistenceError):
            await journal.persist(ChangeSet(element_writes=[write]))

    @pytest.mark.asyncio
    async def test_load_element(self, make_edit):
        """Test reading back one element keeps only its own records."""
        journal = MemoryJournal()
        await journal.persist(
            ChangeSet(
                element_writes=[
                    ElementWrite(Element(element_id="el-1")),
                    ElementWrite(Element(element_id="el-2")),
                ],
                edits=[make_edit("a"), make_edit("b"), make_edit("c", element_id="el-2")],
                conflicts=[
                    make_conflict(),
                    make_conflict("cfl-2", element_id="el-2", competing_edit_ids=["c"]),
                ],
                resolutions=[make_resolution(), make_resolution("res-2", "cfl-2")],
            )
        )

        snapshot = await journal.load_element("el-1")

        assert [e.element_id for e in snapshot.elements] == ["el-1"]
        assert [e.edit_id for e in snapshot.edits] == ["a", "b"]
        assert [c.conflict_id for c in snapshot.conflicts] == ["cfl-1"]
        assert [r.resolution_id for r in snapshot.resolutions] == ["res-1"]
        assert (await journal.load_element("el-9")).elements == []

    def test_changeset_summary(self):
        changes = ChangeSet()

        assert changes.is_empty
        assert changes.summary() == "0 elements, 0 edits, 0 conflicts, 0 resolutions"


# =============================================================================
# TEST UnitOfWork
# =============================================================================


class TestUnitOfWork:
    """Tests for UnitOfWork."""

    @pytest.mark.asyncio
    async def test_commit_applies_everything(self, stores, uow_factory, make_edit):
        elements, change_log, ledger, journal = stores
        await seed(uow_factory, make_edit, "a", "b")

        uow = uow_factory()
        version = uow.commit_element("el-1", {"t": "a"})
        uow.transition_edit("a", EditStatus.COMMITTED, committed_version=version)
        uow.transition_edit("b", EditStatus.SUPERSEDED, reason="lost")
        uow.put_conflict(make_conflict())
        uow.attach_resolution(make_resolution())
        await uow.commit()

        assert elements.get("el-1").current_version == 1
        assert change_log.get("a").status == EditStatus.COMMITTED
        assert change_log.get("b").status == EditStatus.SUPERSEDED
        assert ledger.get("cfl-1").status == ConflictStatus.RESOLVED
        assert ledger.resolution_for("cfl-1").resolution_id == "res-1"
        assert journal.transactions == 2

    @pytest.mark.asyncio
    async def test_journal_failure_applies_nothing(self, stores, uow_factory, make_edit):
        """Test a refused change set leaves every store untouched."""
        elements, change_log, ledger, journal = stores
        await seed(uow_factory, make_edit, "a", "b")

        uow = uow_factory()
        version = uow.commit_element("el-1", {"t": "a"})
        uow.transition_edit("a", EditStatus.COMMITTED, committed_version=version)
        uow.put_conflict(make_conflict())
        uow.attach_resolution(make_resolution())
        journal.failing = True

        with pytest.raises(PersistenceError):
            await uow.commit()

        assert elements.get("el-1").current_version == 0
        assert change_log.get("a").status == EditStatus.PENDING
        with pytest.raises(NotFoundError):
            ledger.get("cfl-1")

    @pytest.mark.asyncio
    async def test_stale_write_detected_before_persist(self, stores, uow_factory, make_edit):
        elements, _, _, journal = stores
        await seed(uow_factory, make_edit)

        uow = uow_factory()
        uow.commit_element("el-1", {"t": 1})
        elements.commit_nowait("el-1", 0, {"t": "elsewhere"})

        with pytest.raises(VersionMismatchError):
            await uow.commit()
        assert journal.transactions == 1

    @pytest.mark.asyncio
    async def test_staged_reads(self, uow_factory, make_edit):
        await seed(uow_factory, make_edit, "a")

        uow = uow_factory()
        uow.commit_element("el-1", {"t": "x"})
        uow.transition_edit("a", EditStatus.AWAITING_MANUAL_RESOLUTION)

        assert uow.element("el-1").current_version == 1
        assert uow.edit("a").status == EditStatus.AWAITING_MANUAL_RESOLUTION

    @pytest.mark.asyncio
    async def test_element_written_once(self, uow_factory, make_edit):
        await seed(uow_factory, make_edit)

        uow = uow_factory()
        uow.commit_element("el-1", {"t": 1})

        with pytest.raises(InvalidTransitionError):
            uow.commit_element("el-1", {"t": 2})

    @pytest.mark.asyncio
    async def test_duplicate_record(self, uow_factory, make_edit):
        await seed(uow_factory, make_edit, "a")

        with pytest.raises(InvalidTransitionError):
            uow_factory().record_edit(make_edit("a"))

    @pytest.mark.asyncio
    async def test_resolved_requires_resolution(self, uow_factory, make_edit):
        await seed(uow_factory, make_edit, "a", "b")

        with pytest.raises(InvalidTransitionError):
            uow_factory().put_conflict(
                make_conflict(status=ConflictStatus.RESOLVED, resolution_id="res-x")
            )

    @pytest.mark.asyncio
    async def test_single_resolution_per_conflict(self, uow_factory, make_edit):
        """Test a conflict accepts exactly one resolution."""
        await seed(uow_factory, make_edit, "a", "b")
        uow = uow_factory()
        uow.put_conflict(make_conflict())
        uow.attach_resolution(make_resolution())
        await uow.commit()

        second = uow_factory()
        with pytest.raises(InvalidTransitionError):
            second.attach_resolution(make_resolution("res-2"))
        with pytest.raises(InvalidTransitionError):
            second.put_conflict(make_conflict(reason="reopened"))

    @pytest.mark.asyncio
    async def test_commit_twice(self, uow_factory, make_edit):
        await seed(uow_factory, make_edit)
        uow = uow_factory()
        await uow.commit()

        with pytest.raises(InvalidTransitionError):
            await uow.commit()


# =============================================================================
# TEST ConflictLedger
# =============================================================================


class TestConflictLedger:
    """Tests for ConflictLedger."""

    def test_index_by_edit(self):
        ledger = ConflictLedger()
        ledger.put(make_conflict())

        assert ledger.conflict_for_edit("a").conflict_id == "cfl-1"
        assert ledger.open_conflict_for_edit("b").conflict_id == "cfl-1"
        assert ledger.conflict_for_edit("zzz") is None
        assert [c.conflict_id for c in ledger.open_for_element("el-1")] == ["cfl-1"]

    def test_attach_requires_matching_id(self):
        ledger = ConflictLedger()

        with pytest.raises(InvalidTransitionError):
            ledger.attach_resolution(make_conflict(resolution_id="res-9"), make_resolution())

    def test_resolved_conflict_is_closed(self):
        ledger = ConflictLedger()
        resolved = make_conflict(status=ConflictStatus.RESOLVED, resolution_id="res-1")
        ledger.attach_resolution(resolved, make_resolution())

        assert ledger.open_conflict_for_edit("a") is None
        assert ledger.open_for_element("el-1") == []
        with pytest.raises(InvalidTransitionError):
            ledger.put(make_conflict())

    def test_list_conflicts_by_status(self):
        ledger = ConflictLedger()
        ledger.put(make_conflict("cfl-2", detected_at=NOW.replace(hour=5)))
        ledger.put(
            make_conflict("cfl-1", status=ConflictStatus.AWAITING_MANUAL_RESOLUTION)
        )

        assert [c.conflict_id for c in ledger.list_conflicts()] == ["cfl-1", "cfl-2"]
        assert [
            c.conflict_id
            for c in ledger.list_conflicts(ConflictStatus.AWAITING_MANUAL_RESOLUTION)
        ] == ["cfl-1"]

    def test_unknown_records(self):
        ledger = ConflictLedger()

        with pytest.raises(NotFoundError):
            ledger.get("cfl-x")
        with pytest.raises(NotFoundError):
            ledger.get_resolution("res-x")
