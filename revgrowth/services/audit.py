from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.domain.models import AuditEvent


logger = logging.getLogger(__name__)

# Credit commits may carry the AI prompt or generated text; never persist those.
_SENSITIVE_KEY_PATTERNS = ("authorization", "token", "secret", "password", "prompt", "content")
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class AuditActor:
    # Identity stamped on audit rows for a lifecycle or ledger mutation.
    actor_type: str
    actor_id: str | None = None
    actor_role: str | None = None
    request_id: str | None = None


SYSTEM_ACTOR = AuditActor(actor_type="system", actor_id="revgrowth")


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_actor_event(
    *,
    session: AsyncSession,
    actor: AuditActor,
    tenant_id: str | None,
    event_type: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    outcome: str = "success",
    error_code: str | None = None,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction.

    The row commits or rolls back together with the score, tier, ledger or
    enrollment change it describes; callers own the commit.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        request_id=actor.request_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    session.add(event)
    logger.debug("audit_event_staged event_type=%s resource_id=%s", event_type, resource_id)
    return event
