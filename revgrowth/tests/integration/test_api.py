from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from revgrowth.apps.api.main import create_app
from revgrowth.domain.models import AuditEvent
from revgrowth.persistence.db import SessionLocal
from revgrowth.tests.utils.seed import add_metrics, create_account, create_tenant


def _headers(tenant_id: str, role: str = "admin") -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id, "X-Role": role, "X-User-Id": f"user-{role}"}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_health_uses_success_envelope() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "database": "ok"}
    assert body["meta"] == {"request_id": "req-health", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_missing_tenant_header_is_unauthorized() -> None:
    async with _client() as client:
        response = await client.get("/v1/scoring/weights")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_reader_cannot_change_weights() -> None:
    tenant_id = await create_tenant()
    async with _client() as client:
        response = await client.put(
            "/v1/scoring/weights",
            headers=_headers(tenant_id, "reader"),
            json={"gap_size_weight": 50, "revenue_potential_weight": 25, "category_count_weight": 25},
        )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_invalid_weights_are_rejected_and_defaults_kept() -> None:
    tenant_id = await create_tenant()
    async with _client() as client:
        rejected = await client.put(
            "/v1/scoring/weights",
            headers=_headers(tenant_id),
            json={"gap_size_weight": 45, "revenue_potential_weight": 30, "category_count_weight": 30},
        )
        current = await client.get("/v1/scoring/weights", headers=_headers(tenant_id, "reader"))

    assert rejected.status_code == 422
    error = rejected.json()["error"]
    assert error["code"] == "INVALID_TOTAL"
    assert error["message"] == "Weights must sum to 100%. Current total: 105%"
    data = current.json()["data"]
    assert data["is_default"] is True
    assert (data["gap_size_weight"], data["revenue_potential_weight"], data["category_count_weight"]) == (
        40.0,
        30.0,
        30.0,
    )


@pytest.mark.asyncio
async def test_weights_update_keeps_history_and_rescored_accounts() -> None:
    tenant_id = await create_tenant()
    account_id = await create_account(tenant_id, name="Acme")
    await add_metrics(tenant_id, account_id, gap_pct=100.0, revenue_potential="0", category_gap_count=0)
    async with _client() as client:
        before = await client.get(f"/v1/scoring/accounts/{account_id}", headers=_headers(tenant_id, "reader"))
        first = await client.put(
            "/v1/scoring/weights",
            headers=_headers(tenant_id),
            json={"gap_size_weight": 60, "revenue_potential_weight": 20, "category_count_weight": 20},
        )
        second = await client.put(
            "/v1/scoring/weights",
            headers=_headers(tenant_id),
            json={
                "gap_size_weight": 80,
                "revenue_potential_weight": 10,
                "category_count_weight": 10,
                "description": "gap heavy",
            },
        )
        after = await client.get(f"/v1/scoring/accounts/{account_id}", headers=_headers(tenant_id, "reader"))
        ranking = await client.get("/v1/scoring/ranking", headers=_headers(tenant_id, "reader"))

    assert before.json()["data"]["score"] == 40
    assert first.status_code == 200
    assert second.json()["data"]["description"] == "gap heavy"
    assert second.json()["data"]["id"] != first.json()["data"]["id"]
    assert after.json()["data"]["score"] == 80
    assert ranking.json()["data"][0]["account_id"] == account_id
    async with SessionLocal() as session:
        events = await session.execute(
            select(AuditEvent).where(
                AuditEvent.tenant_id == tenant_id,
                AuditEvent.event_type == "scoring.weights.updated",
            )
        )
        rows = events.scalars().all()
    assert len(rows) == 2
    assert {row.actor_id for row in rows} == {"user-admin"}


@pytest.mark.asyncio
async def test_score_without_metrics_is_not_found() -> None:
    tenant_id = await create_tenant()
    account_id = await create_account(tenant_id)
    async with _client() as client:
        response = await client.get(f"/v1/scoring/accounts/{account_id}", headers=_headers(tenant_id))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ACCOUNT_METRICS_NOT_FOUND"


@pytest.mark.asyncio
async def test_tier_management_and_fee_calculation() -> None:
    tenant_id = await create_tenant()
    async with _client() as client:
        low = await client.post(
            "/v1/fees/tiers",
            headers=_headers(tenant_id),
            json={"min_revenue": 0, "max_revenue": 10000, "share_rate": 15, "display_order": 1},
        )
        high = await client.post(
            "/v1/fees/tiers",
            headers=_headers(tenant_id),
            json={"min_revenue": 10000, "max_revenue": None, "share_rate": 10, "display_order": 2},
        )
        overlap = await client.post(
            "/v1/fees/tiers",
            headers=_headers(tenant_id),
            json={"min_revenue": 5000, "max_revenue": 20000, "share_rate": 12},
        )
        fee = await client.post(
            "/v1/fees/calculate",
            headers=_headers(tenant_id, "reader"),
            json={"incremental_revenue": 15000},
        )
        negative = await client.post(
            "/v1/fees/calculate",
            headers=_headers(tenant_id, "reader"),
            json={"incremental_revenue": -1},
        )
        tiers = await client.get("/v1/fees/tiers", headers=_headers(tenant_id, "reader"))

    assert low.status_code == 201
    assert low.json()["data"]["label"] == "$0 - $10,000"
    assert high.json()["data"]["label"] == "$10,000 - Unlimited"
    assert overlap.status_code == 422
    assert overlap.json()["error"]["code"] == "INVALID_TIER"
    data = fee.json()["data"]
    assert data["total_fee"] == 2000.0
    assert [item["fee"] for item in data["breakdown"]] == [1500.0, 500.0]
    assert negative.status_code == 422
    assert len(tiers.json()["data"]) == 2


@pytest.mark.asyncio
async def test_deactivated_tier_is_excluded_and_default_seeded() -> None:
    tenant_id = await create_tenant()
    async with _client() as client:
        seeded = await client.post("/v1/fees/tiers/seed-default", headers=_headers(tenant_id))
        tier_id = seeded.json()["data"][0]["id"]
        patched = await client.patch(
            f"/v1/fees/tiers/{tier_id}", headers=_headers(tenant_id), json={"share_rate": 20}
        )
        fee = await client.post(
            "/v1/fees/calculate", headers=_headers(tenant_id), json={"incremental_revenue": 1000}
        )
        deleted = await client.delete(f"/v1/fees/tiers/{tier_id}", headers=_headers(tenant_id))
        active = await client.get("/v1/fees/tiers", headers=_headers(tenant_id))
        missing = await client.delete("/v1/fees/tiers/nope", headers=_headers(tenant_id))

    assert seeded.json()["data"][0]["label"] == "$0 - Unlimited"
    assert patched.json()["data"]["share_rate"] == 20.0
    assert fee.json()["data"]["total_fee"] == 200.0
    assert deleted.json()["data"]["is_active"] is False
    assert active.json()["data"] == []
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "TIER_NOT_FOUND"


@pytest.mark.asyncio
async def test_credit_exhaustion_returns_402() -> None:
    tenant_id = await create_tenant(plan_type="free")
    async with _client() as client:
        first = await client.post(
            "/v1/credits/reserve", headers=_headers(tenant_id, "reader"), json={"action_type": "icp_analysis"}
        )
        second = await client.post(
            "/v1/credits/reserve", headers=_headers(tenant_id, "reader"), json={"action_type": "icp_analysis"}
        )
        unknown = await client.post(
            "/v1/credits/reserve", headers=_headers(tenant_id, "reader"), json={"action_type": "divination"}
        )

    assert first.status_code == 200
    assert first.json()["data"]["remaining"] == 10
    assert second.status_code == 402
    error = second.json()["error"]
    assert error["code"] == "CREDIT_LIMIT_EXCEEDED"
    assert error["details"]["credits_required"] == 15
    assert error["details"]["credits_remaining"] == 10
    assert error["details"]["total_allowance"] == 25
    assert unknown.status_code == 422
    assert unknown.json()["error"]["code"] == "UNKNOWN_ACTION"


@pytest.mark.asyncio
async def test_credit_reserve_commit_and_usage() -> None:
    tenant_id = await create_tenant(plan_type="professional")
    async with _client() as client:
        reserved = await client.post(
            "/v1/credits/reserve", headers=_headers(tenant_id, "reader"), json={"action_type": "account_dossier"}
        )
        reservation_id = reserved.json()["data"]["reservation_id"]
        committed = await client.post(
            "/v1/credits/commit",
            headers=_headers(tenant_id, "reader"),
            json={"reservation_id": reservation_id, "account_id": "acct-9"},
        )
        replay = await client.post(
            "/v1/credits/commit",
            headers=_headers(tenant_id, "reader"),
            json={"reservation_id": reservation_id},
        )
        released = await client.post(
            "/v1/credits/release",
            headers=_headers(tenant_id, "reader"),
            json={"reservation_id": reservation_id},
        )
        usage = await client.get("/v1/credits/usage", headers=_headers(tenant_id, "reader"))
        bad_period = await client.get(
            "/v1/credits/usage", params={"billing_period": "2025-13"}, headers=_headers(tenant_id, "reader")
        )
        costs = await client.get("/v1/credits/costs", headers=_headers(tenant_id, "reader"))

    assert committed.status_code == 200
    assert replay.json()["data"]["id"] == committed.json()["data"]["id"]
    assert released.status_code == 409
    assert released.json()["error"]["code"] == "RESERVATION_NOT_PENDING"
    data = usage.json()["data"]
    assert data["credits_used"] == 8
    assert data["credits_remaining"] == 492
    assert data["breakdown"]["account_dossier"]["count"] == 1
    assert data["recent_transactions"][0]["account_id"] == "acct-9"
    assert bad_period.status_code == 422
    assert {item["action_type"]: item["cost"] for item in costs.json()["data"]}["icp_analysis"] == 15


@pytest.mark.asyncio
async def test_program_enrollment_flow() -> None:
    tenant_id = await create_tenant()
    account_id = await create_account(tenant_id)
    async with _client() as client:
        enrolled = await client.post(
            "/v1/program/enroll",
            headers=_headers(tenant_id, "editor"),
            json={"account_id": account_id, "target_incremental_revenue": 50000, "notes": "pilot"},
        )
        duplicate = await client.post(
            "/v1/program/enroll",
            headers=_headers(tenant_id, "editor"),
            json={"account_id": account_id},
        )
        program_id = enrolled.json()["data"]["id"]
        fetched = await client.get(f"/v1/program/accounts/{program_id}", headers=_headers(tenant_id, "reader"))
        progress = await client.get(
            f"/v1/program/accounts/{program_id}/graduation-progress", headers=_headers(tenant_id, "reader")
        )
        paused = await client.post(
            f"/v1/program/accounts/{program_id}/pause", headers=_headers(tenant_id, "editor")
        )
        paused_again = await client.post(
            f"/v1/program/accounts/{program_id}/pause", headers=_headers(tenant_id, "editor")
        )
        resumed = await client.post(
            f"/v1/program/accounts/{program_id}/resume", headers=_headers(tenant_id, "editor")
        )
        at_risk = await client.post(
            f"/v1/program/at-risk/{account_id}",
            headers=_headers(tenant_id, "editor"),
            json={"reason": "budget freeze"},
        )
        recovered = await client.post(
            f"/v1/program/recover/{account_id}", headers=_headers(tenant_id, "editor")
        )
        graduated = await client.post(
            f"/v1/program/accounts/{program_id}/graduate",
            headers=_headers(tenant_id, "editor"),
            json={"notes": "exec sponsor sign-off"},
        )
        graduated_again = await client.post(
            f"/v1/program/accounts/{program_id}/graduate",
            headers=_headers(tenant_id, "editor"),
            json={},
        )

    assert enrolled.status_code == 201
    assert enrolled.json()["data"]["status"] == "active"
    assert enrolled.json()["data"]["target_incremental_revenue"] == 50000.0
    # Omitted targets fall back to configured defaults.
    assert enrolled.json()["data"]["target_duration_months"] == 12
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "ALREADY_ENROLLED"
    assert duplicate.json()["error"]["details"]["program_account_id"] == program_id
    assert fetched.json()["data"]["account_id"] == account_id
    assert progress.json()["data"]["decision"]["graduate"] is False
    assert paused.json()["data"]["status"] == "paused"
    assert paused_again.status_code == 409
    assert paused_again.json()["error"]["code"] == "INVALID_TRANSITION"
    assert resumed.json()["data"]["status"] == "active"
    assert at_risk.json()["data"]["enrollment_status"] == "at_risk"
    assert at_risk.json()["data"]["at_risk_reason"] == "budget freeze"
    assert recovered.json()["data"]["enrollment_status"] == "enrolled"
    assert graduated.status_code == 200
    assert graduated.json()["data"]["status"] == "graduated"
    assert graduated.json()["data"]["graduation_notes"] == "exec sponsor sign-off"
    assert graduated_again.status_code == 409
    assert graduated_again.json()["error"]["code"] == "ALREADY_GRADUATED"


@pytest.mark.asyncio
async def test_program_snapshot_endpoints() -> None:
    tenant_id = await create_tenant()
    account_id = await create_account(tenant_id)
    async with _client() as client:
        enrolled = await client.post(
            "/v1/program/enroll", headers=_headers(tenant_id, "editor"), json={"account_id": account_id}
        )
        program_id = enrolled.json()["data"]["id"]
        enrolled_at = enrolled.json()["data"]["enrolled_at"]
        window = {"period_start": enrolled_at, "period_end": "2999-01-01T00:00:00+00:00"}
        recorded = await client.post(
            f"/v1/program/accounts/{program_id}/snapshots", headers=_headers(tenant_id, "editor"), json=window
        )
        replayed = await client.post(
            f"/v1/program/accounts/{program_id}/snapshots", headers=_headers(tenant_id, "editor"), json=window
        )
        listed = await client.get(
            f"/v1/program/accounts/{program_id}/snapshots", headers=_headers(tenant_id, "reader")
        )
        reversed_window = await client.post(
            f"/v1/program/accounts/{program_id}/snapshots",
            headers=_headers(tenant_id, "editor"),
            json={"period_start": "2999-02-01T00:00:00+00:00", "period_end": "2999-01-15T00:00:00+00:00"},
        )
        ready = await client.get("/v1/program/graduation-ready", headers=_headers(tenant_id, "reader"))
        unknown = await client.get("/v1/program/accounts/missing", headers=_headers(tenant_id, "reader"))

    assert recorded.status_code == 200
    assert recorded.json()["data"]["created"] is True
    assert recorded.json()["data"]["incremental_revenue"] == 0.0
    assert replayed.json()["data"]["created"] is False
    assert replayed.json()["data"]["id"] == recorded.json()["data"]["id"]
    assert len(listed.json()["data"]) == 1
    assert reversed_window.status_code == 422
    assert reversed_window.json()["error"]["code"] == "INVALID_PERIOD"
    assert ready.json()["data"] == []
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "PROGRAM_ACCOUNT_NOT_FOUND"


@pytest.mark.asyncio
async def test_program_list_reports_snapshot_totals() -> None:
    tenant_id = await create_tenant()
    account_id = await create_account(tenant_id, name="Listed Co")
    async with _client() as client:
        enrolled = await client.post(
            "/v1/program/enroll", headers=_headers(tenant_id, "editor"), json={"account_id": account_id}
        )
        program_id = enrolled.json()["data"]["id"]
        window = {"period_start": enrolled.json()["data"]["enrolled_at"], "period_end": "2999-01-01T00:00:00+00:00"}
        recorded = await client.post(
            f"/v1/program/accounts/{program_id}/snapshots", headers=_headers(tenant_id, "editor"), json=window
        )
        listed = await client.get("/v1/program/accounts", headers=_headers(tenant_id, "reader"))
        graduated = await client.get(
            "/v1/program/accounts", headers=_headers(tenant_id, "reader"), params={"status": "graduated"}
        )
        bad_status = await client.get(
            "/v1/program/accounts", headers=_headers(tenant_id, "reader"), params={"status": "archived"}
        )

    assert recorded.json()["data"]["sequence"] == 1
    assert listed.status_code == 200
    rows = listed.json()["data"]
    assert [row["id"] for row in rows] == [program_id]
    assert rows[0]["account_name"] == "Listed Co"
    assert rows[0]["status"] == "active"
    assert rows[0]["snapshot_count"] == 1
    assert rows[0]["incremental_revenue"] == 0.0
    assert rows[0]["fee_amount"] == 0.0
    assert graduated.json()["data"] == []
    assert bad_status.status_code == 422
    assert bad_status.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
