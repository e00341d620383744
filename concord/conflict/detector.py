"""
Conflict Detection for Concord

Classifies a newly submitted edit against:
- Other non-terminal edits that share its base version (submission races)
- Edits committed after its base version (stale submissions)
- A deletion of the target element

Detection is pure: the same ordered inputs always produce the same
classification and the same ordering of competing edit ids.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from concord.conflict.regions import region_sets_overlap, touched_regions
from concord.core.state import ConflictClassification, Edit, Element


@dataclass
class Detection:
    """Outcome of classifying a set of competing edits."""

    classification: ConflictClassification
    competing_edit_ids: list[str]
    reason: str
    overlapping_pairs: list[tuple[str, str]] = field(default_factory=list)

    @property
    def is_conflict(self) -> bool:
        return self.classification != ConflictClassification.COMPATIBLE

    def to_dict(self) -> dict:
        """Convert detection to dictionary."""
        return {
            "classification": self.classification.value,
            "competing_edit_ids": self.competing_edit_ids,
            "reason": self.reason,
            "overlapping_pairs": [list(p) for p in self.overlapping_pairs],
        }


class ConflictDetector:
    """
    Detects conflicts between a new edit, concurrent edits and history.

    Usage:
        detector = ConflictDetector()
        detection = detector.detect(edit, element, pending, committed)

        if detection.is_conflict:
            # Hand over to the strategy engine
            pass
    """

    def detect(
        self,
        edit: Edit,
        element: Element,
        pending: Sequence[Edit],
        committed: Sequence[Edit],
        tombstone: Edit | None = None,
    ) -> Detection:
        """
        Classify a newly submitted edit.

        Args:
            edit: The edit under evaluation
            element: Current snapshot of the target element
            pending: Other non-terminal edits on the element
            committed: Committed edits with versions after ``edit.base_version``
            tombstone: The committed deletion edit, when the element is deleted

        Returns:
            Detection with classification and competing edit ids
        """
        racing = [
            p
            for p in pending
            if p.edit_id != edit.edit_id and p.base_version == edit.base_version
        ]
        return self.classify([edit, *racing], element, committed, tombstone)

    def classify(
        self,
        pending: Sequence[Edit],
        element: Element,
        committed: Sequence[Edit],
        tombstone: Edit | None = None,
    ) -> Detection:
        """
        Classify an arbitrary set of non-terminal competing edits.

        Committed edits are compared only against pending edits that are
        based on an earlier version; committed-vs-committed pairs are history.
        """
        ordered = sorted(pending, key=lambda e: e.sort_key)
        if not ordered:
            raise ValueError("classify requires at least one pending edit")

        history = sorted(
            (c for c in committed if c.committed_version is not None),
            key=lambda c: c.committed_version,
        )
        current = element.current_version

        competing_ids = [e.edit_id for e in ordered]
        for c in history:
            if any(c.committed_version > p.base_version for p in ordered):
                competing_ids.append(c.edit_id)

        if element.deleted:
            if tombstone is not None and tombstone.edit_id not in competing_ids:
                competing_ids.append(tombstone.edit_id)
            logger.debug(f"Element {element.element_id} is deleted; edits contradict the deletion")
            return Detection(
                classification=ConflictClassification.CONTRADICTORY,
                competing_edit_ids=competing_ids,
                reason="element_deleted",
            )

        if len(ordered) == 1 and ordered[0].base_version == current:
            return Detection(
                classification=ConflictClassification.COMPATIBLE,
                competing_edit_ids=competing_ids,
                reason="up_to_date",
            )

        for p in ordered:
            known = [c for c in history if p.base_version < c.committed_version <= current]
            if len(known) != current - p.base_version:
                logger.debug(
                    f"Edit {p.edit_id} is stale against versions with no recorded history"
                )
                return Detection(
                    classification=ConflictClassification.CONTRADICTORY,
                    competing_edit_ids=competing_ids,
                    reason="unknown_history",
                )

        overlapping: list[tuple[str, str]] = []
        regions = {e.edit_id: touched_regions(e.payload) for e in [*ordered, *history]}

        for i, p in enumerate(ordered):
            for q in ordered[i + 1 :]:
                if region_sets_overlap(regions[p.edit_id], regions[q.edit_id]):
                    overlapping.append((p.edit_id, q.edit_id))
            for c in history:
                if c.committed_version > p.base_version and region_sets_overlap(
                    regions[p.edit_id], regions[c.edit_id]
                ):
                    overlapping.append((p.edit_id, c.edit_id))

        stale = any(p.base_version < current for p in ordered)
        reason = "stale_base" if stale else "concurrent_submission"

        if overlapping:
            classification = ConflictClassification.CONTRADICTORY
        else:
            classification = ConflictClassification.MERGEABLE

        logger.debug(
            f"Classified {len(competing_ids)} edits on {element.element_id} as "
            f"{classification.value} ({reason}, {len(overlapping)} overlaps)"
        )

        return Detection(
            classification=classification,
            competing_edit_ids=competing_ids,
            reason=reason,
            overlapping_pairs=overlapping,
        )


def detect_conflicts(
    edit: Edit,
    element: Element,
    pending: Sequence[Edit],
    committed: Sequence[Edit],
    tombstone: Edit | None = None,
) -> Detection:
    """Convenience function for one-off detection."""
    return ConflictDetector().detect(edit, element, pending, committed, tombstone)
