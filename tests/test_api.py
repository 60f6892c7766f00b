from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from credit_metering.api.middleware import CreditGateMiddleware, FeatureRoute
from credit_metering.app import build_services, create_app
from credit_metering.billing.memory import InMemoryBillingSource
from credit_metering.cache.memory import InMemoryAsyncCache
from credit_metering.config import Settings
from credit_metering.db.memory import InMemoryDBManager
from credit_metering.models.plans import PlanCatalog


ADMIN = {"X-Admin-Token": "admin-secret"}
WEBHOOK_SECRET = "whsec_test"

FEATURES = [
    FeatureRoute(path="/features/resume", action="resume_generation"),
    FeatureRoute(path="/features/fail", action="cover_letter_generation"),
    FeatureRoute(path="/features/boom", action="mock_interview"),
    FeatureRoute(path="/features/drain", action="resume_generation"),
    FeatureRoute(path="/features/free", action="ai_suggestions", skip_credits_check=True),
    FeatureRoute(path="/features/docs/{doc_id}/export", action="job_tailoring", methods=("GET",)),
]


def _make_app(tmp_path, **overrides) -> FastAPI:
    settings = Settings(
        _env_file=None,
        USAGE_LOG_PATH=tmp_path / "usage.log",
        ADMIN_API_TOKEN="admin-secret",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        **overrides,
    )
    cache = InMemoryAsyncCache()
    billing = InMemoryBillingSource(PlanCatalog.default(), cache=cache)
    services = build_services(settings, db=InMemoryDBManager(), billing=billing, cache=cache)
    app = create_app(settings, services=services, features=FEATURES)

    @app.post("/features/resume")
    async def resume() -> dict:
        return {"document": "resume"}

    @app.post("/features/fail")
    async def fail() -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": "model provider down"})

    @app.post("/features/boom")
    async def boom() -> dict:
        raise RuntimeError("provider crashed")

    @app.post("/features/drain")
    async def drain(request: Request) -> dict:
        # Simulates a concurrent request spending the credits mid-flight
        credits = request.app.state.services.credit_service
        user_id = request.headers["X-User-Id"]
        await credits.consume(user_id, "resume_generation")
        await credits.consume(user_id, "resume_generation")
        return {"document": "resume"}

    @app.post("/features/free")
    async def free() -> dict:
        return {"suggestions": []}

    @app.get("/features/docs/{doc_id}/export")
    async def export(doc_id: str, request: Request) -> dict:
        return {"doc_id": doc_id, "action": request.state.credit_action}

    return app


def _user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def _set_plan(client: TestClient, user_id: str, plan: str) -> None:
    response = client.post(f"/credits/admin/{user_id}/plan", json={"plan": plan}, headers=ADMIN)
    assert response.status_code == 200, response.text


def test_gate_requires_identity(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        response = client.post("/features/resume")
        assert response.status_code == 401
        assert response.json()["code"] == "NOT_AUTHENTICATED"

        # Ungated routes are untouched
        assert client.get("/credits/plans").status_code == 200


def test_gate_charges_successful_feature(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        _set_plan(client, "user-1", "basic")

        response = client.post("/features/resume", headers=_user("user-1"))
        assert response.status_code == 200
        assert response.json() == {"document": "resume"}
        assert response.headers["X-Remaining-Credits"] == "5"
        assert response.headers["X-Credits-Used"] == "5"
        assert response.headers["X-Credits-Action"] == "resume_generation"

        history = client.get("/credits/history", headers=_user("user-1")).json()
        assert [item["action"] for item in history] == ["resume_generation"]
        assert history[0]["metadata"] == {"path": "/features/resume", "method": "POST"}

        summary = client.get("/credits/summary", headers=_user("user-1")).json()
        assert summary["used_credits"] == 5
        assert summary["logged_credits"] == 5
        assert summary["consistent"] is True
        assert summary["by_action"] == {"resume_generation": 5}
        assert summary["calls_by_action"] == {"resume_generation": 1}


def test_gate_rejects_insufficient_credits_with_upgrade_details(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        response = client.post("/features/resume", headers=_user("user-2"))

        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "INSUFFICIENT_CREDITS"
        assert body["currentCredits"] == 3
        assert body["requiredCredits"] == 5
        assert body["action"] == "resume_generation"
        assert body["plan"] == "free"
        assert body["error"]


def test_gate_distinguishes_inactive_subscription(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        _set_plan(client, "user-1", "basic")
        response = client.post(
            "/credits/admin/user-1/status", json={"status": "past_due"}, headers=ADMIN
        )
        assert response.json()["status"] == "past_due"

        response = client.post("/features/resume", headers=_user("user-1"))
        assert response.status_code == 402
        assert response.json()["code"] == "INACTIVE_SUBSCRIPTION"
        assert response.json()["status"] == "past_due"


def test_failed_feature_is_never_charged(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        response = client.post("/features/fail", headers=_user("user-1"))
        assert response.status_code == 500
        assert "X-Credits-Used" not in response.headers

        balance = client.get("/credits/balance", headers=_user("user-1")).json()
        assert balance["used"] == 0
        assert client.get("/credits/history", headers=_user("user-1")).json() == []


def test_raising_feature_is_never_charged(tmp_path):
    with TestClient(_make_app(tmp_path), raise_server_exceptions=False) as client:
        _set_plan(client, "user-1", "basic")

        response = client.post("/features/boom", headers=_user("user-1"))
        assert response.status_code == 500

        balance = client.get("/credits/balance", headers=_user("user-1")).json()
        assert balance["used"] == 0
        assert balance["remaining"] == 10


def test_exempt_feature_skips_credit_check(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        response = client.post("/features/free", headers=_user("user-1"))
        assert response.status_code == 200
        assert "X-Credits-Used" not in response.headers

        # Identity is still required
        assert client.post("/features/free").status_code == 401


def test_gate_matches_path_parameters(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        response = client.get("/features/docs/abc/export", headers=_user("user-1"))
        assert response.status_code == 200
        assert response.json() == {"doc_id": "abc", "action": "job_tailoring"}
        assert response.headers["X-Credits-Used"] == "3"
        assert response.headers["X-Remaining-Credits"] == "0"


def test_lost_charge_is_returned_and_flagged(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        _set_plan(client, "user-1", "basic")

        response = client.post("/features/drain", headers=_user("user-1"))
        assert response.status_code == 200
        assert response.json() == {"document": "resume"}
        assert "X-Remaining-Credits" not in response.headers

        report = client.get("/credits/consistency", headers=_user("user-1")).json()
        assert report["is_consistent"] is False
        assert "unsettled charges: 1" in report["issues"]


def test_gate_rejects_unmapped_feature_action(tmp_path):
    app = _make_app(tmp_path)
    credit_service = app.state.services.credit_service

    with pytest.raises(ValueError):
        CreditGateMiddleware(
            app, credit_service, [FeatureRoute(path="/features/x", action="teleportation")]
        )


def test_balance_and_check_routes(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        assert client.get("/credits/balance").status_code == 401

        balance = client.get(
            "/credits/balance",
            headers={"X-User-Id": "user-1", "X-User-Email": "u1@example.com"},
        ).json()
        assert balance == {
            "user_id": "user-1",
            "total": 3,
            "used": 0,
            "remaining": 3,
            "plan": "free",
            "status": "active",
        }
        assert client.app.state.services.db._subscriptions["user-1"].email == "u1@example.com"

        check = client.get("/credits/check/resume_generation", headers=_user("user-1")).json()
        assert check["sufficient"] is False
        assert check["required"] == 5

        unknown = client.get("/credits/check/teleportation", headers=_user("user-1"))
        assert unknown.status_code == 400
        assert unknown.json()["code"] == "UNKNOWN_ACTION"


def test_accounts_are_provisioned_on_first_use_by_default(tmp_path):
    assert Settings(_env_file=None).AUTO_PROVISION is True

    with TestClient(_make_app(tmp_path)) as client:
        assert client.get("/credits/balance", headers=_user("new-user")).status_code == 200

    with TestClient(_make_app(tmp_path, AUTO_PROVISION=False)) as client:
        response = client.get("/credits/balance", headers=_user("new-user"))
        assert response.status_code == 402
        assert response.json()["code"] == "NO_SUBSCRIPTION"


def test_plans_route(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        body = client.get("/credits/plans").json()
        assert [p["name"] for p in body["plans"]] == ["free", "basic", "standard", "pro"]
        assert [p["credit_allotment"] for p in body["plans"]] == [3, 10, 50, 200]
        assert body["feature_costs"]["resume_generation"] == 5


def test_sync_recover_and_consistency_routes(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        client.get("/credits/balance", headers=_user("user-1"))

        sync = client.post("/credits/sync", headers=_user("user-1"))
        assert sync.status_code == 200
        assert sync.json()["message"] == "No external customer linked; ledger unchanged"

        forced = client.post("/credits/sync", json={"force": True}, headers=_user("user-1"))
        assert forced.status_code == 200

        recovered = client.post("/credits/recover", headers=_user("user-1")).json()
        assert recovered["source"] == "ledger"
        assert recovered["recovered_credits"] == 3

        report = client.get("/credits/consistency", headers=_user("user-1")).json()
        assert report["is_consistent"] is True


def test_admin_routes_require_token(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        assert client.get("/credits/admin/analytics").status_code == 401
        wrong = client.get("/credits/admin/analytics", headers={"X-Admin-Token": "nope"})
        assert wrong.status_code == 401


def test_admin_plan_refresh_and_analytics(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        _set_plan(client, "user-1", "standard")
        _set_plan(client, "user-2", "pro")
        client.get("/features/docs/d1/export", headers=_user("user-1"))

        refreshed = client.post("/credits/admin/user-1/refresh", headers=ADMIN).json()
        assert refreshed == {"user_id": "user-1", "refreshed": True}

        analytics = client.get("/credits/admin/analytics", headers=ADMIN).json()
        assert analytics["total_subscriptions"] == 2
        assert analytics["active_subscriptions"] == 2
        assert analytics["plan_distribution"] == {"standard": 1, "pro": 1}
        assert analytics["total_credits_used"] == 0
        assert analytics["revenue_by_plan"]["pro"] == 49.99

        diverged = client.get("/credits/admin/user-1/consistency", headers=ADMIN)
        assert diverged.status_code == 409
        assert diverged.json()["code"] == "DIVERGENCE"

        unknown = client.post("/credits/admin/user-1/plan", json={"plan": "platinum"}, headers=ADMIN)
        assert unknown.status_code == 422


def test_admin_renewals(tmp_path):
    with TestClient(_make_app(tmp_path)) as client:
        _set_plan(client, "user-1", "basic")
        client.post("/features/resume", headers=_user("user-1"))

        response = client.post(
            "/credits/admin/renewals", json={"as_of": "2100-01-01T00:00:00"}, headers=ADMIN
        )
        assert response.status_code == 200
        assert response.json()["renewed"] == ["user-1"]

        balance = client.get("/credits/balance", headers=_user("user-1")).json()
        assert balance["used"] == 0


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def test_stripe_webhook_route(tmp_path):
    event = {
        "id": "evt_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "object": "checkout.session",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"user_id": "web-1", "plan": "standard"},
            }
        },
    }
    payload = json.dumps(event).encode()

    with TestClient(_make_app(tmp_path)) as client:
        unsigned = client.post("/webhooks/stripe", content=payload)
        assert unsigned.status_code == 400
        assert unsigned.json()["code"] == "WEBHOOK_ERROR"

        forged = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _signed(payload, "whsec_other")},
        )
        assert forged.status_code == 400

        response = client.post(
            "/webhooks/stripe", content=payload, headers={"stripe-signature": _signed(payload)}
        )
        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "event_type": "checkout.session.completed",
            "handled": True,
        }

        again = client.post(
            "/webhooks/stripe", content=payload, headers={"stripe-signature": _signed(payload)}
        )
        assert again.json()["handled"] is False

        balance = client.get("/credits/balance", headers=_user("web-1")).json()
        assert (balance["plan"], balance["total"]) == ("standard", 50)
