import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.future import select

from config import settings
from database import get_db
from main import app
from models.payment_order import PaymentOrder
from routers.dependencies import get_credit_ledger
from services.credits import CreditLedger
from services.crypto import sign_payment, verify_payment_signature
from services.session_token import create_session_token


BILLING_USER_ID = "billing-user"
BILLING_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(BILLING_USER_ID, 'billing@example.com')['token']}"}
PAYMENT_SECRET = "test-payment-secret"


@pytest_asyncio.fixture
async def billing_client(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_KEY_SECRET", PAYMENT_SECRET)
    monkeypatch.setattr(settings, "PAYMENT_KEY_ID", "key_test")
    ledger = CreditLedger(session_maker)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_credit_ledger] = lambda: ledger
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_credit_ledger, None)


async def _create_order(client, kind, item_id):
    response = await client.post(
        "/billing/orders",
        json={"kind": kind, "item_id": item_id},
        headers=BILLING_AUTH_HEADER,
    )
    return response


def test_payment_signature_round_trip_and_tamper():
    signature = sign_payment("order_1", "pay_1", secret="s3cret")

    assert verify_payment_signature("order_1", "pay_1", signature, secret="s3cret")
    assert not verify_payment_signature("order_1", "pay_2", signature, secret="s3cret")
    assert not verify_payment_signature("order_1", "pay_1", "not-hex", secret="s3cret")


@pytest.mark.asyncio
async def test_plan_order_then_verify_upgrades_and_grants(billing_client):
    client, session_maker = billing_client

    created = await _create_order(client, "plan", "starter")
    assert created.status_code == 200
    order = created.json()
    assert order["amount"] == 39500
    assert order["credits"] == 35000
    assert order["status"] == "pending"
    assert order["key_id"] == "key_test"

    signature = sign_payment(order["order_id"], "pay_123")
    verified = await client.post(
        "/billing/verify",
        json={"order_id": order["order_id"], "payment_id": "pay_123", "signature": signature},
        headers=BILLING_AUTH_HEADER,
    )
    assert verified.status_code == 200
    payload = verified.json()
    assert payload["credits_added"] == 35000
    assert payload["remaining_credits"] == 40000
    assert payload["order"]["status"] == "completed"

    snapshot = await client.get("/account/snapshot", headers=BILLING_AUTH_HEADER)
    profile = snapshot.json()["profile"]
    assert profile["plan"] == "starter"
    assert profile["total_credits"] == 40000
    assert profile["version"] == 2

    async with session_maker() as session:
        result = await session.execute(select(PaymentOrder).where(PaymentOrder.order_id == order["order_id"]))
        stored = result.scalar_one()
        assert stored.payment_id == "pay_123"
        assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_verify_is_idempotent_per_order(billing_client):
    client, _ = billing_client
    order = (await _create_order(client, "plan", "creator")).json()
    body = {
        "order_id": order["order_id"],
        "payment_id": "pay_dup",
        "signature": sign_payment(order["order_id"], "pay_dup"),
    }

    first = await client.post("/billing/verify", json=body, headers=BILLING_AUTH_HEADER)
    second = await client.post("/billing/verify", json=body, headers=BILLING_AUTH_HEADER)

    assert first.json()["credits_added"] == 150000
    assert second.status_code == 200
    assert second.json()["already_processed"] is True
    assert second.json()["credits_added"] == 0
    assert second.json()["remaining_credits"] == first.json()["remaining_credits"]


@pytest.mark.asyncio
async def test_verify_rejects_bad_signature(billing_client):
    client, _ = billing_client
    order = (await _create_order(client, "plan", "pro")).json()

    response = await client.post(
        "/billing/verify",
        json={"order_id": order["order_id"], "payment_id": "pay_x", "signature": "00" * 32},
        headers=BILLING_AUTH_HEADER,
    )

    assert response.status_code == 400
    credits = await client.get("/account/credits", headers=BILLING_AUTH_HEADER)
    assert credits.json()["balance"]["plan"] == "free"


@pytest.mark.asyncio
async def test_topup_refused_on_free_tier(billing_client):
    client, _ = billing_client

    response = await _create_order(client, "topup", "topup_10k")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_topup_priced_by_tier_after_upgrade(billing_client, make_account):
    client, _ = billing_client
    await make_account(BILLING_USER_ID, remaining=1000, plan="pro")

    created = await _create_order(client, "topup", "topup_25k")
    assert created.status_code == 200
    order = created.json()
    assert order["amount"] == 24750

    verified = await client.post(
        "/billing/verify",
        json={
            "order_id": order["order_id"],
            "payment_id": "pay_top",
            "signature": sign_payment(order["order_id"], "pay_top"),
        },
        headers=BILLING_AUTH_HEADER,
    )
    assert verified.json()["remaining_credits"] == 26000

    credits = await client.get("/account/credits?history=true", headers=BILLING_AUTH_HEADER)
    body = credits.json()
    assert body["balance"]["plan"] == "pro"
    assert body["history"][0]["type"] == "topup"
    assert body["total"] == 1


@pytest.mark.asyncio
async def test_unknown_items_are_404(billing_client):
    client, _ = billing_client

    assert (await _create_order(client, "plan", "platinum")).status_code == 404
    assert (await _create_order(client, "topup", "topup_1m")).status_code == 404


@pytest.mark.asyncio
async def test_payments_unconfigured_returns_503(billing_client, monkeypatch):
    client, _ = billing_client
    monkeypatch.setattr(settings, "PAYMENT_KEY_SECRET", "")

    response = await _create_order(client, "plan", "starter")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_snapshot_shape_for_cache(billing_client):
    client, _ = billing_client

    response = await client.get("/account/snapshot", headers=BILLING_AUTH_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert set(payload) == {"profile", "transactions", "plans"}
    assert payload["profile"]["remaining_credits"] == 5000
    assert payload["transactions"][0]["type"] == "grant"
    assert [plan["id"] for plan in payload["plans"]] == ["free", "starter", "creator", "pro", "advanced"]


@pytest.mark.asyncio
async def test_account_endpoints_require_auth(billing_client):
    client, _ = billing_client

    response = await client.get("/account/snapshot")

    assert response.status_code == 401
    assert response.json()["kind"] == "Unauthenticated"


@pytest.mark.asyncio
async def test_first_request_seeds_account_from_token_identity(billing_client):
    client, _ = billing_client
    token = create_session_token("named-user", "Named@Example.com", name="Named Person")["token"]

    response = await client.get("/account/snapshot", headers={"Authorization": f"Bearer {token}"})

    profile = response.json()["profile"]
    assert profile["id"] == "named-user"
    assert profile["email"] == "named@example.com"
    assert profile["name"] == "Named Person"
