from __future__ import annotations

from enum import Enum

from revgrowth.core.errors import InvalidTransitionError


class EnrollmentStatus(str, Enum):
    DISCOVERED = "discovered"
    ENROLLED = "enrolled"
    AT_RISK = "at_risk"
    GRADUATED = "graduated"


class ProgramStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    GRADUATED = "graduated"


class GraduationCriteria(str, Enum):
    ANY = "any"
    ALL = "all"


# Account.enrollment_status. at_risk -> enrolled is the only back-edge; graduated -> enrolled
# is a fresh enrollment and always creates a new ProgramAccount.
ACCOUNT_TRANSITIONS: dict[EnrollmentStatus, frozenset[EnrollmentStatus]] = {
    EnrollmentStatus.DISCOVERED: frozenset({EnrollmentStatus.ENROLLED}),
    EnrollmentStatus.ENROLLED: frozenset({EnrollmentStatus.GRADUATED, EnrollmentStatus.AT_RISK}),
    EnrollmentStatus.AT_RISK: frozenset({EnrollmentStatus.ENROLLED}),
    EnrollmentStatus.GRADUATED: frozenset({EnrollmentStatus.ENROLLED}),
}

PROGRAM_TRANSITIONS: dict[ProgramStatus, frozenset[ProgramStatus]] = {
    ProgramStatus.ACTIVE: frozenset({ProgramStatus.PAUSED, ProgramStatus.GRADUATED}),
    ProgramStatus.PAUSED: frozenset({ProgramStatus.ACTIVE}),
    ProgramStatus.GRADUATED: frozenset(),
}


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown {enum_cls.__name__} value: {value}") from exc


def ensure_account_transition(current: str, target: EnrollmentStatus) -> EnrollmentStatus:
    # Reject any status write that is not an edge in the table.
    source = _coerce(EnrollmentStatus, current)
    if target not in ACCOUNT_TRANSITIONS[source]:
        raise InvalidTransitionError(
            f"Account cannot move from {source.value} to {target.value}",
            details={"from": source.value, "to": target.value},
        )
    return target


def ensure_program_transition(current: str, target: ProgramStatus) -> ProgramStatus:
    source = _coerce(ProgramStatus, current)
    if target not in PROGRAM_TRANSITIONS[source]:
        raise InvalidTransitionError(
            f"Program enrollment cannot move from {source.value} to {target.value}",
            details={"from": source.value, "to": target.value},
        )
    return target
