from __future__ import annotations

from typing import Any


class RevGrowthError(Exception):
    """Base error for revgrowth."""

    code = "REVGROWTH_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RevGrowthError):
    """Input rejected before any write."""

    code = "VALIDATION_ERROR"


class InvalidWeightsError(ValidationError):
    """Scoring weights do not sum to 100."""

    code = "INVALID_TOTAL"


class InvalidWeightError(InvalidWeightsError):
    """A single scoring weight is negative."""

    code = "INVALID_WEIGHT"


class InvalidTierError(ValidationError):
    """Tier bounds or share rate are malformed."""

    code = "INVALID_TIER"


class InvalidPeriodError(ValidationError):
    """Measurement period bounds are malformed."""

    code = "INVALID_PERIOD"


class UnknownActionError(ValidationError):
    """Action type has no declared credit cost."""

    code = "UNKNOWN_ACTION"


class ConflictError(RevGrowthError):
    """Operation conflicts with current durable state."""

    code = "CONFLICT"


class AlreadyEnrolledError(ConflictError):
    code = "ALREADY_ENROLLED"


class AlreadyGraduatedError(ConflictError):
    code = "ALREADY_GRADUATED"


class InvalidTransitionError(ConflictError):
    """Lifecycle transition not present in the transition table."""

    code = "INVALID_TRANSITION"


class ProgramNotActiveError(ConflictError):
    code = "PROGRAM_NOT_ACTIVE"


class ReservationStateError(ConflictError):
    """Credit reservation is no longer pending."""

    code = "RESERVATION_NOT_PENDING"


class NotFoundError(RevGrowthError):
    code = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"


class AccountMetricsNotFoundError(NotFoundError):
    code = "ACCOUNT_METRICS_NOT_FOUND"


class ProgramAccountNotFoundError(NotFoundError):
    code = "PROGRAM_ACCOUNT_NOT_FOUND"


class TenantNotFoundError(NotFoundError):
    code = "TENANT_NOT_FOUND"


class TierNotFoundError(NotFoundError):
    code = "TIER_NOT_FOUND"


class ReservationNotFoundError(NotFoundError):
    code = "RESERVATION_NOT_FOUND"


class DataIntegrityError(RevGrowthError):
    """Stored data violates an invariant the caller relied on."""

    code = "DATA_INTEGRITY_ERROR"


class OverlappingTiersError(DataIntegrityError):
    code = "OVERLAPPING_TIERS"


class SnapshotPeriodConflictError(DataIntegrityError):
    """Requested period overlaps an already recorded snapshot."""

    code = "SNAPSHOT_PERIOD_CONFLICT"
