import asyncio
import hashlib
import hmac
import json
import time
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from api.deps import create_access_token
from api.main import app
from api.routers import webhooks
from api.services import stripe_gateway
from database import get_db
from database.models import Base, Payment, Plan, Subscription, User

WEBHOOK_SECRET = "whsec_test_secret"


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": "evt_test",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


def _payment_intent(pi_id: str, cents: int, metadata: dict, status: str = "succeeded") -> dict:
    return {
        "id": pi_id,
        "object": "payment_intent",
        "amount": cents,
        "amount_received": cents if status == "succeeded" else 0,
        "currency": "brl",
        "status": status,
        "metadata": metadata,
    }


@pytest.fixture
def api(tmp_path, monkeypatch):
    """App wired to a throwaway database; NullPool keeps connections loop-local."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _setup():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with factory() as s:
            user = User(email="api@example.com")
            plan = Plan(name="Básico", slug="basico", price=Decimal("49.90"), duration_days=30)
            s.add_all([user, plan])
            await s.commit()
            return user.id, plan.id

    user_id, plan_id = asyncio.run(_setup())

    async def _get_db():
        async with factory() as s:
            yield s

    def query(stmt):
        async def _run():
            async with factory() as s:
                return (await s.execute(stmt)).scalar_one_or_none()
        return asyncio.run(_run())

    monkeypatch.setattr(stripe_gateway, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    app.dependency_overrides[get_db] = _get_db
    client = TestClient(app)
    yield client, user_id, plan_id, query
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def _post(client, payload: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature:
        headers["Stripe-Signature"] = signature
    return client.post("/api/webhooks/stripe", content=payload, headers=headers)


def test_invalid_signature_is_rejected(api):
    client, user_id, plan_id, query = api
    payload = _event("payment_intent.succeeded", _payment_intent("pi_x", 4990, {"kind": "plan", "user_id": user_id}))

    resp = _post(client, payload, _sign(payload, secret="whsec_wrong"))

    assert resp.status_code == 400
    assert query(select(func.count()).select_from(Payment)) == 0


def test_missing_secret_is_a_server_error(api, monkeypatch):
    client, user_id, plan_id, query = api
    monkeypatch.setattr(stripe_gateway, "STRIPE_WEBHOOK_SECRET", "")
    payload = _event("payment_intent.succeeded", {})

    assert _post(client, payload, "t=1,v1=abc").status_code == 500


def test_succeeded_event_activates_plan_once(api):
    client, user_id, plan_id, query = api
    pi = _payment_intent("pi_hook", 4990, {"kind": "plan", "user_id": user_id, "plan_id": plan_id})
    payload = _event("payment_intent.succeeded", pi)

    first = _post(client, payload, _sign(payload))
    second = _post(client, payload, _sign(payload))

    assert first.status_code == 200
    assert first.json()["ok"] is True
    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert query(select(func.count()).select_from(Payment)) == 1
    assert query(select(Subscription.plan_status).where(Subscription.user_id == user_id)) == "active"


def test_partial_failure_is_acknowledged(api):
    client, user_id, plan_id, query = api
    pi = _payment_intent("pi_broken", 4990, {"kind": "plan", "user_id": user_id, "plan_id": "missing"})
    payload = _event("payment_intent.succeeded", pi)

    resp = _post(client, payload, _sign(payload))

    assert resp.status_code == 200
    assert resp.json()["ok"] is False
    assert resp.json()["warnings"] == ["payment processed, contact support"]
    assert query(select(Payment.fulfillment_status).where(Payment.external_transaction_id == "pi_broken")) == "failed"


def test_transient_store_error_asks_for_redelivery(api, monkeypatch):
    client, user_id, plan_id, query = api

    async def _flaky(db, confirmation):
        raise OperationalError("UPDATE payments", {}, Exception("database is locked"))

    monkeypatch.setattr(webhooks, "reconcile", _flaky)
    pi = _payment_intent("pi_flaky", 4990, {"kind": "plan", "user_id": user_id, "plan_id": plan_id})
    payload = _event("payment_intent.succeeded", pi)

    assert _post(client, payload, _sign(payload)).status_code == 500


def test_failed_then_refunded_events(api):
    client, user_id, plan_id, query = api
    meta = {"kind": "plan", "user_id": user_id, "plan_id": plan_id}

    failed = _event("payment_intent.payment_failed", _payment_intent("pi_card", 4990, meta, status="requires_payment_method"))
    assert _post(client, failed, _sign(failed)).status_code == 200
    assert query(select(Payment.status).where(Payment.external_transaction_id == "pi_card")) == "failed"

    ok = _event("payment_intent.succeeded", _payment_intent("pi_card", 4990, meta))
    assert _post(client, ok, _sign(ok)).json()["ok"] is True
    assert query(select(Payment.status).where(Payment.external_transaction_id == "pi_card")) == "completed"

    refund = _event("charge.refunded", {"id": "ch_1", "object": "charge", "payment_intent": "pi_card"})
    assert _post(client, refund, _sign(refund)).json()["handled"] is True
    assert query(select(Payment.status).where(Payment.external_transaction_id == "pi_card")) == "refunded"


def test_unhandled_event_is_acknowledged(api):
    client, user_id, plan_id, query = api
    payload = _event("customer.created", {"id": "cus_1"})

    resp = _post(client, payload, _sign(payload))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "type": "customer.created"}


def test_client_confirm_uses_server_side_payment_intent(api, monkeypatch):
    client, user_id, plan_id, query = api
    pi = _payment_intent("pi_client", 4990, {"kind": "plan", "user_id": user_id, "plan_id": plan_id})

    async def _retrieve(payment_intent_id):
        assert payment_intent_id == "pi_client"
        return pi

    monkeypatch.setattr(stripe_gateway, "retrieve_payment_intent", _retrieve)
    token = create_access_token(user_id, "api@example.com", "user")

    resp = client.post(
        "/api/payments/confirm",
        json={"payment_intent_id": "pi_client"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert query(select(Subscription.plan_status).where(Subscription.user_id == user_id)) == "active"


def test_client_confirm_rejects_unfinished_payment(api, monkeypatch):
    client, user_id, plan_id, query = api

    async def _retrieve(payment_intent_id):
        return _payment_intent(payment_intent_id, 4990, {"user_id": user_id}, status="processing")

    monkeypatch.setattr(stripe_gateway, "retrieve_payment_intent", _retrieve)
    token = create_access_token(user_id, "api@example.com", "user")

    resp = client.post(
        "/api/payments/confirm",
        json={"payment_intent_id": "pi_wait"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert resp.status_code == 409
    assert query(select(func.count()).select_from(Payment)) == 0


def test_checkout_then_webhook_settles_the_intent(api, monkeypatch):
    client, user_id, plan_id, query = api
    created = {}

    async def _create(amount, metadata, currency="brl", idempotency_key=None):
        created.update(amount=amount, metadata=metadata, key=idempotency_key)
        return {"id": "pi_checkout", "client_secret": "pi_checkout_secret"}

    monkeypatch.setattr(stripe_gateway, "create_payment_intent", _create)
    token = create_access_token(user_id, "api@example.com", "user")

    resp = client.post(
        "/api/checkout/intents",
        json={"kind": "plan", "plan_id": plan_id},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["client_secret"] == "pi_checkout_secret"
    assert created["amount"] == Decimal("49.90")
    assert created["key"] == f"intent-{body['intent_id']}"
    assert created["metadata"]["intent_id"] == body["intent_id"]

    pi = _payment_intent("pi_checkout", 4990, {k: str(v) for k, v in created["metadata"].items()})
    payload = _event("payment_intent.succeeded", pi)
    assert _post(client, payload, _sign(payload)).json()["ok"] is True
    assert query(select(Subscription.plan_status).where(Subscription.user_id == user_id)) == "active"


def test_underpaid_intent_is_not_granted(api, monkeypatch):
    client, user_id, plan_id, query = api
    created = {}

    async def _create(amount, metadata, currency="brl", idempotency_key=None):
        created.update(metadata=metadata)
        return {"id": "pi_short", "client_secret": "s"}

    monkeypatch.setattr(stripe_gateway, "create_payment_intent", _create)
    token = create_access_token(user_id, "api@example.com", "user")
    client.post(
        "/api/checkout/intents",
        json={"kind": "plan", "plan_id": plan_id},
        headers={"Authorization": f"Bearer {token}"},
    )

    pi = _payment_intent("pi_short", 100, {k: str(v) for k, v in created["metadata"].items()})
    payload = _event("payment_intent.succeeded", pi)
    resp = _post(client, payload, _sign(payload))

    assert resp.status_code == 200
    assert resp.json()["error"] == "amount_mismatch"
    assert query(select(Payment.fulfillment_status).where(Payment.external_transaction_id == "pi_short")) == "failed"
    assert query(select(func.count()).select_from(Subscription)) == 0


def test_checkout_with_unknown_coupon_is_rejected(api):
    client, user_id, plan_id, query = api
    token = create_access_token(user_id, "api@example.com", "user")

    resp = client.post(
        "/api/checkout/intents",
        json={"kind": "plan", "plan_id": plan_id, "coupon_code": "NOPE"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert resp.status_code == 400
    assert resp.json()["reason"] == "not_found"


def test_checkout_requires_a_token(api):
    client, user_id, plan_id, query = api
    resp = client.post("/api/checkout/intents", json={"kind": "plan", "plan_id": plan_id})
    assert resp.status_code == 401
