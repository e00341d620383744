"""
Integration tests for human input on conflicts.

Tests:
- Manual decisions choosing an edit or a hand-authored merge
- Consensus approvals and quorum
- Withdrawal inside and outside conflicts
"""

from datetime import datetime, timedelta, timezone

import pytest

from concord.coordinator import EventType
from concord.core.exceptions import InvalidTransitionError, PersistenceError
from concord.core.state import ConflictStatus, EditStatus, Policy
from concord.persistence.journal import ChangeSet, MemoryJournal

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

CONSENSUS = Policy(strategy="consensus_required", approvers=["carol", "dave", "erin"], quorum=2)

# =============================================================================
# TEST FIXTURES
# =============================================================================


class CommitBlockingJournal(MemoryJournal):
    """Journal that refuses element updates while ``blocking`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.blocking = True

    async def persist(self, changes: ChangeSet) -> None:
        updates = [w for w in changes.element_writes if w.expected_prior_version is not None]
        if self.blocking and updates:
            raise PersistenceError("element store offline")
        await super().persist(changes)


async def open_race(coordinator, element_id: str = "title-1"):
    """Create an element and race two overlapping title edits on it."""
    await coordinator.create_element(element_id, content={"title": "Draft"})
    return await coordinator.submit_edits(
        [
            {
                "element_id": element_id,
                "author_id": author,
                "base_version": 0,
                "payload": {"regions": {"/title": value}},
                "submitted_at": T0 + timedelta(seconds=offset),
            }
            for author, value, offset in (("alice", "A", 1), ("bob", "B", 3))
        ]
    )


# =============================================================================
# TEST MANUAL DECISIONS
# =============================================================================


class TestManualDecision:
    """Tests for apply_manual_decision under manual merge."""

    @pytest.mark.asyncio
    async def test_hand_merged_payload(self, make_coordinator):
        """Test a merged payload commits as a new edit superseding both."""
        coordinator = make_coordinator(Policy(strategy="manual_merge"))
        a, b = await open_race(coordinator)

        outcome = await coordinator.apply_manual_decision(
            a.conflict_id,
            {"merged_payload": {"regions": {"/title": "A and B"}}},
            decided_by="carol",
        )

        assert outcome.resolved
        assert outcome.committed_version == 1
        assert coordinator.get_element("title-1").content == {"title": "A and B"}
        assert coordinator.get_edit(a.edit_id).status == EditStatus.SUPERSEDED
        assert coordinator.get_edit(b.edit_id).status == EditStatus.SUPERSEDED

        merged = coordinator.get_edit(outcome.resolution.outcome_edit_id)
        assert merged.author_id == "carol"
        assert merged.synthesized_from == [a.edit_id, b.edit_id]

    @pytest.mark.asyncio
    async def test_outcome_outside_conflict(self, make_coordinator):
        coordinator = make_coordinator(Policy(strategy="manual_merge"))
        a, _ = await open_race(coordinator)

        with pytest.raises(InvalidTransitionError):
            await coordinator.apply_manual_decision(
                a.conflict_id, {"edit_id": "edt-unknown"}, decided_by="carol"
            )
        assert coordinator.get_conflict(a.conflict_id).status == ConflictStatus.AWAITING_MANUAL_RESOLUTION

    @pytest.mark.asyncio
    async def test_approval_requires_consensus_policy(self, make_coordinator):
        coordinator = make_coordinator(Policy(strategy="manual_merge"))
        a, _ = await open_race(coordinator)

        with pytest.raises(InvalidTransitionError):
            await coordinator.record_approval(a.conflict_id, "carol", {"edit_id": a.edit_id})


# =============================================================================
# TEST CONSENSUS
# =============================================================================


class TestConsensus:
    """Tests for consensus_required conflicts."""

    @pytest.mark.asyncio
    async def test_quorum_resolves(self, make_coordinator):
        """Test the conflict resolves once two approvers agree."""
        coordinator = make_coordinator(CONSENSUS)
        a, b = await open_race(coordinator)
        conflict = coordinator.get_conflict(a.conflict_id)
        assert conflict.status == ConflictStatus.AWAITING_MANUAL_RESOLUTION
        assert conflict.awaiting_strategy == "consensus_required"

        first = await coordinator.record_approval(a.conflict_id, "carol", {"edit_id": a.edit_id})
        assert first.status == "awaiting_manual"
        assert set(coordinator.get_conflict(a.conflict_id).approvals) == {"carol"}

        second = await coordinator.apply_manual_decision(
            a.conflict_id, {"edit_id": a.edit_id}, decided_by="dave"
        )

        assert second.resolved
        assert second.resolution.strategy_used == "consensus_required"
        assert second.resolution.decided_by == "dave"
        assert coordinator.get_edit(a.edit_id).status == EditStatus.COMMITTED
        assert coordinator.get_edit(b.edit_id).status == EditStatus.SUPERSEDED

    @pytest.mark.asyncio
    async def test_split_vote_waits(self, make_coordinator):
        coordinator = make_coordinator(CONSENSUS)
        a, b = await open_race(coordinator)

        await coordinator.record_approval(a.conflict_id, "carol", {"edit_id": a.edit_id})
        split = await coordinator.record_approval(a.conflict_id, "dave", {"edit_id": b.edit_id})
        assert split.status == "awaiting_manual"

        final = await coordinator.record_approval(a.conflict_id, "erin", {"edit_id": b.edit_id})

        assert final.resolved
        assert final.resolution.outcome_edit_id == b.edit_id
        assert coordinator.get_element("title-1").content == {"title": "B"}

    @pytest.mark.asyncio
    async def test_changed_vote_replaces_previous(self, make_coordinator):
        """Test an approver voting again overrides their earlier choice."""
        coordinator = make_coordinator(CONSENSUS)
        a, b = await open_race(coordinator)

        await coordinator.record_approval(a.conflict_id, "carol", {"edit_id": a.edit_id})
        await coordinator.record_approval(a.conflict_id, "carol", {"edit_id": b.edit_id})

        approvals = coordinator.get_conflict(a.conflict_id).approvals
        assert list(approvals) == ["carol"]
        assert approvals["carol"].edit_id == b.edit_id

    @pytest.mark.asyncio
    async def test_non_approver_refused(self, make_coordinator):
        coordinator = make_coordinator(CONSENSUS)
        a, _ = await open_race(coordinator)

        with pytest.raises(InvalidTransitionError):
            await coordinator.record_approval(a.conflict_id, "mallory", {"edit_id": a.edit_id})
        with pytest.raises(InvalidTransitionError):
            await coordinator.apply_manual_decision(
                a.conflict_id, {"edit_id": a.edit_id}, decided_by="mallory"
            )
        assert coordinator.get_conflict(a.conflict_id).approvals == {}

    @pytest.mark.asyncio
    async def test_missing_approvers_parks_with_error(self, make_coordinator):
        coordinator = make_coordinator(Policy(strategy="consensus_required", quorum=2))
        a, _ = await open_race(coordinator)

        conflict = coordinator.get_conflict(a.conflict_id)
        assert conflict.status == ConflictStatus.AWAITING_MANUAL_RESOLUTION
        assert conflict.errors[0].startswith("InvalidPolicyError")


# =============================================================================
# TEST WITHDRAWAL
# =============================================================================


class TestWithdrawal:
    """Tests for withdraw_edit."""

    @pytest.mark.asyncio
    async def test_withdraw_outside_conflict(self, make_coordinator):
        """Test an edit that never reached a conflict is rejected outright."""
        journal = CommitBlockingJournal()
        coordinator = make_coordinator(journal=journal)
        await coordinator.create_element("p", content={"t": 0})
        with pytest.raises(PersistenceError):
            await coordinator.submit_edits(
                [{"element_id": "p", "author_id": "alice", "base_version": 0, "payload": {"content": 1}}]
            )
        [edit] = coordinator.history("p")
        assert edit.status == EditStatus.PENDING
        subscription = coordinator.bus.subscribe([EventType.EDIT_WITHDRAWN])

        handle = await coordinator.withdraw_edit(edit.edit_id)

        assert handle.status == EditStatus.REJECTED
        assert coordinator.get_edit(edit.edit_id).status_reason == "withdrawn"
        [event] = subscription.drain()
        assert event.rejected is True

    @pytest.mark.asyncio
    async def test_withdrawn_edit_cannot_win(self, make_coordinator):
        coordinator = make_coordinator(Policy(strategy="manual_merge"))
        a, b = await open_race(coordinator)
        subscription = coordinator.bus.subscribe([EventType.EDIT_WITHDRAWN])

        handle = await coordinator.withdraw_edit(a.edit_id)

        assert handle.status == EditStatus.AWAITING_MANUAL_RESOLUTION
        assert coordinator.get_edit(a.edit_id).withdrawn is True
        assert subscription.drain()[0].rejected is False
        with pytest.raises(InvalidTransitionError):
            await coordinator.apply_manual_decision(
                a.conflict_id, {"edit_id": a.edit_id}, decided_by="carol"
            )

        outcome = await coordinator.apply_manual_decision(
            a.conflict_id, {"edit_id": b.edit_id}, decided_by="carol"
        )

        assert coordinator.get_edit(a.edit_id).status == EditStatus.REJECTED
        assert coordinator.get_edit(b.edit_id).status == EditStatus.COMMITTED
        assert outcome.resolution.superseded_edit_ids == []

    @pytest.mark.asyncio
    async def test_withdrawing_every_edit_closes_conflict(self, make_coordinator):
        """Test a conflict with no remaining candidates resolves with no outcome."""
        coordinator = make_coordinator(Policy(strategy="manual_merge"))
        a, b = await open_race(coordinator)

        await coordinator.withdraw_edit(a.edit_id)
        await coordinator.withdraw_edit(b.edit_id)

        conflict = coordinator.get_conflict(a.conflict_id)
        assert conflict.status == ConflictStatus.RESOLVED
        resolution = coordinator.resolution_for(a.conflict_id)
        assert resolution.outcome_edit_id is None
        assert resolution.strategy_used == "manual_merge"
        assert resolution.decided_by == "bob"
        assert coordinator.get_edit(a.edit_id).status == EditStatus.REJECTED
        assert coordinator.get_edit(b.edit_id).status == EditStatus.REJECTED
        assert coordinator.get_element("title-1").current_version == 0

    @pytest.mark.asyncio
    async def test_withdrawing_stale_edit_keeps_committed_state(self, make_coordinator):
        """Test withdrawing the only pending edit closes its conflict on the committed edit."""
        coordinator = make_coordinator(Policy(strategy="manual_merge"))
        await coordinator.create_element("title-1", content={"title": "Draft"})
        committed = await coordinator.submit_edit(
            "title-1", "alice", 0, {"regions": {"/title": "A"}}
        )
        stale = await coordinator.submit_edit("title-1", "bob", 0, {"regions": {"/title": "B"}})
        assert stale.status == EditStatus.AWAITING_MANUAL_RESOLUTION

        handle = await coordinator.withdraw_edit(stale.edit_id)

        assert handle.status == EditStatus.REJECTED
        conflict = coordinator.get_conflict(stale.conflict_id)
        assert conflict.status == ConflictStatus.RESOLVED
        resolution = coordinator.resolution_for(stale.conflict_id)
        assert resolution.outcome_edit_id == committed.edit_id
        assert resolution.committed_version == 1
        assert resolution.decided_by == "bob"
        assert coordinator.get_edit(committed.edit_id).status == EditStatus.COMMITTED
        assert coordinator.get_element("title-1").content == {"title": "A"}

    @pytest.mark.asyncio
    async def test_withdraw_terminal_edit(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.create_element("p", content={"t": 0})
        handle = await coordinator.submit_edit("p", "alice", 0, {"content": 1})

        with pytest.raises(InvalidTransitionError):
            await coordinator.withdraw_edit(handle.edit_id)
