"""
Resolution Strategies for Concord

Strategy pattern implementation for conflict resolution. Every strategy is
a pure decision function: it inspects a conflict and returns either an
intended outcome or a request for human input, and never mutates state.
"""

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field

from loguru import logger

from concord.conflict.merge_engine import MergeEngine
from concord.core.exceptions import InvalidPolicyError, UnresolvableConflictError
from concord.core.state import (
    SYSTEM_ACTOR,
    Conflict,
    ConflictClassification,
    Edit,
    EditPayload,
    Element,
    ManualOutcome,
    Policy,
    StrategyName,
)


@dataclass
class ConflictContext:
    """Everything a strategy may look at when deciding a conflict."""

    conflict: Conflict
    element: Element
    pending: list[Edit]
    committed: list[Edit] = field(default_factory=list)
    acting_user: str = SYSTEM_ACTOR

    @property
    def candidates(self) -> list[Edit]:
        """Edits eligible to win, in deterministic order."""
        eligible = [e for e in self.pending if not e.withdrawn] + list(self.committed)
        return sorted(eligible, key=lambda e: e.sort_key)

    @property
    def live_pending(self) -> list[Edit]:
        return sorted((e for e in self.pending if not e.withdrawn), key=lambda e: e.sort_key)


@dataclass
class ResolutionDecision:
    """Intended outcome; the coordinator applies it transactionally."""

    strategy_used: str
    outcome_edit_id: str | None = None
    merged_payload: EditPayload | None = None
    decided_by: str = SYSTEM_ACTOR
    rationale: str = ""
    fallback_from: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "strategy_used": self.strategy_used,
            "outcome_edit_id": self.outcome_edit_id,
            "merged_payload": (
                self.merged_payload.model_dump(mode="json") if self.merged_payload else None
            ),
            "decided_by": self.decided_by,
            "rationale": self.rationale,
            "fallback_from": self.fallback_from,
        }


@dataclass
class PendingManualInput:
    """No automatic outcome; the conflict waits for people."""

    strategy_used: str
    reason: str
    approvals: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "strategy_used": self.strategy_used,
            "reason": self.reason,
            "approvals": self.approvals,
        }


StrategyOutcome = ResolutionDecision | PendingManualInput


class ResolutionStrategy(ABC):
    """Base class for conflict resolution strategies."""

    name: str = ""

    @abstractmethod
    def decide(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        """
        Decide the conflict.

        Args:
            context: Conflict with its competing edits and element snapshot
            policy: Applicable policy

        Returns:
            ResolutionDecision or PendingManualInput
        """
        pass


def _latest(edits: list[Edit]) -> Edit:
    return max(edits, key=lambda e: e.sort_key)


class LastWriteWinsStrategy(ResolutionStrategy):
    """
    The edit with the latest ``submitted_at`` wins.

    Ties are broken by ``edit_id`` ordering. Withdrawn edits never win.
    """

    name = StrategyName.LAST_WRITE_WINS.value

    def decide(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        candidates = context.candidates
        if not candidates:
            return PendingManualInput(
                strategy_used=self.name,
                reason="All competing edits were withdrawn",
            )

        winner = _latest(candidates)
        logger.debug(f"Last write wins on {context.conflict.conflict_id}: {winner.edit_id}")
        return ResolutionDecision(
            strategy_used=self.name,
            outcome_edit_id=winner.edit_id,
            rationale=f"Latest submission at {winner.submitted_at.isoformat()}",
        )


class ManualMergeStrategy(ResolutionStrategy):
    """
    Manual merge strategy.

    Flags the conflict for human review rather than attempting automatic
    resolution.
    """

    name = StrategyName.MANUAL_MERGE.value

    def decide(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        logger.info(f"Conflict {context.conflict.conflict_id} requires manual resolution")
        return PendingManualInput(
            strategy_used=self.name,
            reason="Policy requires a manual decision",
        )


class AutoMergeStrategy(ResolutionStrategy):
    """
    Combines non-overlapping regions into one synthesized edit.

    Only applicable to ``Mergeable`` conflicts; anything else raises
    ``UnresolvableConflictError`` so the engine can apply the policy fallback.
    """

    name = StrategyName.AUTO_MERGE.value

    def __init__(self, merge_engine: MergeEngine | None = None) -> None:
        self.merge_engine = merge_engine or MergeEngine()

    def decide(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        conflict = context.conflict
        if conflict.classification != ConflictClassification.MERGEABLE:
            raise UnresolvableConflictError(
                f"Conflict {conflict.conflict_id} is {conflict.classification.value}; "
                "auto-merge needs disjoint regions"
            )

        live = context.live_pending
        if not live:
            return PendingManualInput(
                strategy_used=self.name,
                reason="All competing edits were withdrawn",
            )

        if len(live) == 1:
            # Stale edit over disjoint committed regions: rebase it as-is
            return ResolutionDecision(
                strategy_used=self.name,
                outcome_edit_id=live[0].edit_id,
                rationale="Rebased onto committed changes to disjoint regions",
            )

        result = self.merge_engine.merge(live)
        if not result.success:
            raise UnresolvableConflictError(
                f"Regions {result.conflicting_regions} of {conflict.conflict_id} overlap"
            )

        return ResolutionDecision(
            strategy_used=self.name,
            merged_payload=result.merged_payload,
            rationale=f"Merged {len(live)} edits over disjoint regions",
        )


class HierarchicalStrategy(ResolutionStrategy):
    """
    Highest precedence rank of the author wins.

    Authors missing from the precedence table rank 0. Ties fall back to last
    write wins among the tied edits.
    """

    name = StrategyName.HIERARCHICAL.value

    def decide(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        candidates = context.candidates
        if not candidates:
            return PendingManualInput(
                strategy_used=self.name,
                reason="All competing edits were withdrawn",
            )

        def rank(edit: Edit) -> int:
            return policy.precedence_table.get(edit.author_id, 0)

        top = max(rank(e) for e in candidates)
        tied = [e for e in candidates if rank(e) == top]
        winner = _latest(tied)

        rationale = f"Author {winner.author_id} holds precedence rank {top}"
        if len(tied) > 1:
            rationale += f"; {len(tied)} edits tied, latest submission chosen"

        return ResolutionDecision(
            strategy_used=self.name,
            outcome_edit_id=winner.edit_id,
            rationale=rationale,
        )


class ConsensusRequiredStrategy(ResolutionStrategy):
    """
    Waits until a quorum of designated approvers accepts one outcome.

    Approvals from people outside ``policy.approvers`` and approvals of
    withdrawn or foreign edits are ignored.
    """

    name = StrategyName.CONSENSUS_REQUIRED.value

    def decide(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        approvers = set(policy.approvers)
        if not approvers:
            raise InvalidPolicyError("consensus_required needs at least one approver")
        if policy.quorum > len(approvers):
            raise InvalidPolicyError(
                f"Quorum {policy.quorum} exceeds the {len(approvers)} designated approvers"
            )

        eligible_ids = {e.edit_id for e in context.candidates}
        outcomes: dict[str, ManualOutcome] = {}
        tally: Counter[str] = Counter()

        for approver in sorted(context.conflict.approvals):
            if approver not in approvers:
                continue
            outcome = context.conflict.approvals[approver]
            if outcome.edit_id is not None and outcome.edit_id not in eligible_ids:
                continue
            key = outcome.key()
            outcomes[key] = outcome
            tally[key] += 1

        reached = sorted(
            (key for key, count in tally.items() if count >= policy.quorum),
            key=lambda k: (-tally[k], k),
        )

        if not reached:
            return PendingManualInput(
                strategy_used=self.name,
                reason=f"Waiting for {policy.quorum} matching approvals",
                approvals=dict(tally),
            )

        chosen = outcomes[reached[0]]
        return ResolutionDecision(
            strategy_used=self.name,
            outcome_edit_id=chosen.edit_id,
            merged_payload=chosen.merged_payload,
            decided_by=context.acting_user,
            rationale=f"Quorum of {policy.quorum} reached with {tally[reached[0]]} approvals",
        )


class StrategyRegistry:
    """
    Name-keyed registry of resolution strategies.

    New strategies are added with ``register`` without touching the
    coordinator.
    """

    def __init__(self, register_defaults: bool = True) -> None:
        self._strategies: dict[str, ResolutionStrategy] = {}
        if register_defaults:
            self._register_default_strategies()

    def _register_default_strategies(self) -> None:
        """Register the built-in strategies."""
        for strategy in (
            LastWriteWinsStrategy(),
            ManualMergeStrategy(),
            AutoMergeStrategy(),
            HierarchicalStrategy(),
            ConsensusRequiredStrategy(),
        ):
            self._strategies[strategy.name] = strategy

    def register(self, name: str, strategy: ResolutionStrategy) -> None:
        """Register a custom resolution strategy."""
        self._strategies[name] = strategy
        logger.info(f"Registered strategy {name}: {strategy.__class__.__name__}")

    def get(self, name: str) -> ResolutionStrategy:
        strategy = self._strategies.get(name)
        if strategy is None:
            raise InvalidPolicyError(f"Unknown strategy: {name}")
        return strategy

    def names(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, name: object) -> bool:
        return name in self._strategies
