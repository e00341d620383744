"""
Resolution Strategy Engine for Concord

Selects the policy's strategy from the registry and applies the policy
fallback when a strategy cannot produce an outcome. Decisions are returned,
never applied; the coordinator owns every state transition.
"""

from loguru import logger

from concord.conflict.strategies import (
    ConflictContext,
    PendingManualInput,
    ResolutionDecision,
    StrategyOutcome,
    StrategyRegistry,
)
from concord.core.exceptions import InvalidPolicyError, UnresolvableConflictError
from concord.core.state import Policy


class StrategyEngine:
    """
    Resolves conflicts using the configured strategies.

    Usage:
        engine = StrategyEngine()
        outcome = engine.resolve(context, policy)

        if isinstance(outcome, PendingManualInput):
            # Park the conflict for people
            pass
    """

    def __init__(self, registry: StrategyRegistry | None = None) -> None:
        self.registry = registry or StrategyRegistry()

    def validate_policy(self, policy: Policy) -> None:
        """Raise ``InvalidPolicyError`` if the policy names unknown strategies."""
        self.registry.get(policy.strategy)
        if policy.fallback_strategy is not None:
            self.registry.get(policy.fallback_strategy)
            if policy.fallback_strategy == policy.strategy:
                raise InvalidPolicyError(
                    f"Fallback strategy must differ from {policy.strategy}"
                )

    def resolve(self, context: ConflictContext, policy: Policy) -> StrategyOutcome:
        """
        Produce exactly one outcome for a conflict.

        Args:
            context: Conflict with its competing edits
            policy: Applicable policy

        Returns:
            ResolutionDecision or PendingManualInput

        Raises:
            InvalidPolicyError: Unknown strategy name
            UnresolvableConflictError: Strategy failed and no fallback is configured
        """
        self.validate_policy(policy)
        strategy = self.registry.get(policy.strategy)

        try:
            return strategy.decide(context, policy)
        except UnresolvableConflictError as e:
            if policy.fallback_strategy is None:
                raise

            logger.warning(
                f"{policy.strategy} could not resolve {context.conflict.conflict_id} ({e}); "
                f"falling back to {policy.fallback_strategy}"
            )
            fallback = self.registry.get(policy.fallback_strategy)
            outcome = fallback.decide(context, policy)
            if isinstance(outcome, ResolutionDecision):
                outcome.fallback_from = policy.strategy
            return outcome


def resolve_conflict(context: ConflictContext, policy: Policy) -> StrategyOutcome:
    """Convenience function to decide a single conflict with the built-in strategies."""
    return StrategyEngine().resolve(context, policy)


__all__ = [
    "PendingManualInput",
    "ResolutionDecision",
    "StrategyEngine",
    "resolve_conflict",
]
