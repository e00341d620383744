"""
Merge Engine for Concord

Synthesizes a single payload from competing edits that touch disjoint
structural regions. Whole-element replacements and deletions never merge.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from concord.conflict.regions import (
    apply_payload,
    normalize_region,
    regions_overlap,
)
from concord.core.state import Edit, EditPayload


@dataclass
class MergeResult:
    """Result of a merge operation."""

    success: bool
    merged_payload: EditPayload | None = None
    source_edit_ids: list[str] = field(default_factory=list)
    conflicting_regions: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "merged_payload": (
                self.merged_payload.model_dump(mode="json") if self.merged_payload else None
            ),
            "source_edit_ids": self.source_edit_ids,
            "conflicting_regions": self.conflicting_regions,
            "warnings": self.warnings,
        }


class MergeEngine:
    """
    Combines region-scoped edits into one synthesized payload.

    Usage:
        engine = MergeEngine()
        result = engine.merge(edits)

        if result.success:
            content, deleted = engine.preview(current_content, result.merged_payload)
    """

    def merge(self, edits: Sequence[Edit]) -> MergeResult:
        """
        Merge the regions of the given edits in submission order.

        Args:
            edits: Pending edits to combine

        Returns:
            MergeResult with the union payload, or the regions that clash
        """
        ordered = sorted(edits, key=lambda e: e.sort_key)
        result = MergeResult(success=True, source_edit_ids=[e.edit_id for e in ordered])

        if not ordered:
            result.success = False
            result.warnings.append("Nothing to merge")
            return result

        merged: dict[str, Any] = {}
        owners: dict[str, str] = {}

        for edit in ordered:
            payload = edit.payload
            if payload.delete or payload.regions is None:
                result.success = False
                result.conflicting_regions.append("/")
                result.warnings.append(f"Edit {edit.edit_id} replaces the whole element")
                continue

            for raw_region, value in payload.regions.items():
                region = normalize_region(raw_region)
                clashes = [r for r in merged if regions_overlap(r, region) and owners[r] != edit.edit_id]
                if clashes:
                    result.success = False
                    result.conflicting_regions.extend(sorted({region, *clashes}))
                    continue
                merged[region] = value
                owners[region] = edit.edit_id

        if not result.success:
            result.conflicting_regions = sorted(set(result.conflicting_regions))
            logger.debug(f"Merge failed on regions {result.conflicting_regions}")
            return result

        result.merged_payload = EditPayload(regions=dict(sorted(merged.items())))
        logger.debug(f"Merged {len(ordered)} edits into {len(merged)} regions")
        return result

    def preview(self, content: Any, payload: EditPayload) -> tuple[Any, bool]:
        """Content that would result from applying ``payload``."""
        return apply_payload(content, payload)
