"""
Conflict Detection and Resolution Module for Concord

Provides conflict handling for concurrent element edits:
- ConflictDetector: Classification of competing edits
- StrategyEngine: Policy-driven, pluggable resolution decisions
- MergeEngine: Region-level payload synthesis
"""

from concord.conflict.detector import (
    ConflictDetector,
    Detection,
    detect_conflicts,
)
from concord.conflict.ledger import ConflictLedger
from concord.conflict.merge_engine import MergeEngine, MergeResult
from concord.conflict.regions import (
    ROOT_REGION,
    apply_payload,
    normalize_region,
    region_sets_overlap,
    regions_overlap,
    touched_regions,
)
from concord.conflict.resolver import StrategyEngine, resolve_conflict
from concord.conflict.strategies import (
    AutoMergeStrategy,
    ConflictContext,
    ConsensusRequiredStrategy,
    HierarchicalStrategy,
    LastWriteWinsStrategy,
    ManualMergeStrategy,
    PendingManualInput,
    ResolutionDecision,
    ResolutionStrategy,
    StrategyRegistry,
)

__all__ = [
    # Detector
    "ConflictDetector",
    "Detection",
    "detect_conflicts",
    # Ledger
    "ConflictLedger",
    # Regions
    "ROOT_REGION",
    "apply_payload",
    "normalize_region",
    "region_sets_overlap",
    "regions_overlap",
    "touched_regions",
    # Resolver
    "StrategyEngine",
    "resolve_conflict",
    # Strategies
    "AutoMergeStrategy",
    "ConflictContext",
    "ConsensusRequiredStrategy",
    "HierarchicalStrategy",
    "LastWriteWinsStrategy",
    "ManualMergeStrategy",
    "PendingManualInput",
    "ResolutionDecision",
    "ResolutionStrategy",
    "StrategyRegistry",
    # Merge Engine
    "MergeEngine",
    "MergeResult",
]
