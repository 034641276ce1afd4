from __future__ import annotations

# Re-export program lifecycle services for centralized imports.

from revgrowth.services.program.cycle import CycleReport, month_bounds, run_snapshot_cycle
from revgrowth.services.program.enrollment import (
    EnrollmentLifecycleManager,
    GraduationOutcome,
    GraduationProgress,
    get_lifecycle_manager,
    reset_lifecycle_manager,
)
from revgrowth.services.program.graduation import (
    GraduationDecision,
    GraduationMetrics,
    GraduationTargets,
    evaluate_graduation,
)
from revgrowth.services.program.snapshots import (
    ProgramSummary,
    RevenueSnapshotAggregator,
    SnapshotOutcome,
    get_snapshot_aggregator,
    list_programs,
    reset_snapshot_aggregator,
)

__all__ = [
    "CycleReport",
    "month_bounds",
    "run_snapshot_cycle",
    "EnrollmentLifecycleManager",
    "GraduationOutcome",
    "GraduationProgress",
    "get_lifecycle_manager",
    "reset_lifecycle_manager",
    "GraduationDecision",
    "GraduationMetrics",
    "GraduationTargets",
    "evaluate_graduation",
    "ProgramSummary",
    "RevenueSnapshotAggregator",
    "SnapshotOutcome",
    "get_snapshot_aggregator",
    "list_programs",
    "reset_snapshot_aggregator",
]
