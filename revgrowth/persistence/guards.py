from __future__ import annotations

from dataclasses import dataclass

from revgrowth.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    message: str


def tenant_predicate(model, tenant_id: str) -> object:
    """Return ``model.tenant_id == tenant_id`` for a tenant-owned table.

    Scores, tiers, ledgers and enrollments are all tenant-owned, so an empty
    tenant id is refused rather than silently widening the query.
    """
    if get_settings().authz_require_tenant_predicate and not tenant_id:
        raise TenantPredicateError(
            f"Tenant predicate required for {getattr(model, '__tablename__', model)} but tenant_id is missing"
        )
    return model.tenant_id == tenant_id
