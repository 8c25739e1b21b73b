"""
Integration tests for /billing/checkout and /billing/notify
"""
import asyncio
from urllib.parse import urlencode

from database import get_service_sessionmaker
from main import app
from routers.billing_router import get_payfast_service
from services.payfast_service import PayFastService, generate_signature
from tests.conftest import PASSPHRASE, SITE_URL, auth_headers, insert_account, load_account, make_payfast_service

FORM = {"Content-Type": "application/x-www-form-urlencoded"}


def notification_for(fields, payment_status="COMPLETE"):
    itn = {
        "m_payment_id": fields["m_payment_id"],
        "pf_payment_id": "1089250",
        "payment_status": payment_status,
        "item_name": fields["item_name"],
        "amount_gross": fields["amount"],
        "custom_str1": fields["custom_str1"],
        "merchant_id": fields["merchant_id"],
    }
    itn["signature"] = generate_signature(itn, PASSPHRASE)
    return urlencode(itn)


def test_checkout_then_notify_upgrades_account(client):
    """
    End to end: a free account checks out, PayFast posts a COMPLETE ITN and
    the account ends up premium with no trial.
    """
    asyncio.run(insert_account(client.session_factory, "u1"))

    checkout = client.post("/billing/checkout", headers=auth_headers("u1"))

    assert checkout.status_code == 200
    data = checkout.json()
    assert data["ok"] is True
    assert data["actionUrl"] == "https://sandbox.payfast.co.za/eng/process"
    fields = data["fields"]
    assert fields["custom_str1"] == "u1"
    assert fields["notify_url"] == f"{SITE_URL}/billing/notify"
    assert fields["signature"] == generate_signature(fields, PASSPHRASE)

    body = notification_for(fields)
    response = client.post("/billing/notify", content=body, headers=FORM)

    assert response.status_code == 200
    assert response.text == "OK"
    assert client.provider_calls[0].content == body.encode("utf-8")
    account = asyncio.run(load_account(client.session_factory, "u1"))
    assert account.plan == "premium"
    assert account.trial_until is None


def test_redelivered_notification_is_still_ok(client):
    asyncio.run(insert_account(client.session_factory, "u1"))
    fields = make_payfast_service().build_checkout("u1")["data"]["fields"]
    body = notification_for(fields)

    first = client.post("/billing/notify", content=body, headers=FORM)
    second = client.post("/billing/notify", content=body, headers=FORM)

    assert (first.status_code, first.text) == (200, "OK")
    assert (second.status_code, second.text) == (200, "OK")


def test_pending_notification_is_ignored_without_changes(client):
    asyncio.run(insert_account(client.session_factory, "u1"))
    fields = make_payfast_service().build_checkout("u1")["data"]["fields"]

    response = client.post("/billing/notify", content=notification_for(fields, "PENDING"), headers=FORM)

    assert (response.status_code, response.text) == (200, "IGNORED")
    assert asyncio.run(load_account(client.session_factory, "u1")).plan == "free"


def test_tampered_notification_is_rejected(client):
    asyncio.run(insert_account(client.session_factory, "u1"))
    asyncio.run(insert_account(client.session_factory, "u2"))
    fields = make_payfast_service().build_checkout("u1")["data"]["fields"]
    body = notification_for(fields).replace("custom_str1=u1", "custom_str1=u2")

    response = client.post("/billing/notify", content=body, headers=FORM)

    assert (response.status_code, response.text) == (400, "INVALID_SIGNATURE")
    assert client.provider_calls == []
    assert asyncio.run(load_account(client.session_factory, "u2")).plan == "free"


def test_unconfirmed_notification_is_rejected(client):
    asyncio.run(insert_account(client.session_factory, "u1"))
    app.dependency_overrides[get_payfast_service] = lambda: make_payfast_service(validate_answer="INVALID")
    fields = make_payfast_service().build_checkout("u1")["data"]["fields"]

    response = client.post("/billing/notify", content=notification_for(fields), headers=FORM)

    assert (response.status_code, response.text) == (400, "INVALID")
    assert asyncio.run(load_account(client.session_factory, "u1")).plan == "free"


def test_notification_for_unknown_account(client):
    fields = make_payfast_service().build_checkout("ghost")["data"]["fields"]

    response = client.post("/billing/notify", content=notification_for(fields), headers=FORM)

    assert (response.status_code, response.text) == (400, "MISSING_USER")


def test_missing_service_credential_is_server_misconfig(client):
    asyncio.run(insert_account(client.session_factory, "u1"))
    app.dependency_overrides[get_service_sessionmaker] = lambda: None
    fields = make_payfast_service().build_checkout("u1")["data"]["fields"]

    response = client.post("/billing/notify", content=notification_for(fields), headers=FORM)

    assert (response.status_code, response.text) == (500, "SERVER_MISCONFIG")
    assert asyncio.run(load_account(client.session_factory, "u1")).plan == "free"


def test_store_failure_is_db_error(client, monkeypatch):
    from services.entitlement_service import EntitlementUpdater, UpgradeResult

    async def failing_upgrade(self, account_id):
        return UpgradeResult(UpgradeResult.STORE_ERROR, account_id, "boom")

    monkeypatch.setattr(EntitlementUpdater, "apply_upgrade", failing_upgrade)
    fields = make_payfast_service().build_checkout("u1")["data"]["fields"]

    response = client.post("/billing/notify", content=notification_for(fields), headers=FORM)

    assert (response.status_code, response.text) == (500, "DB_ERROR")


def test_checkout_requires_session(client):
    missing = client.post("/billing/checkout")
    unknown = client.post("/billing/checkout", headers=auth_headers("nobody"))

    for response in (missing, unknown):
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "Not signed in."}


def test_checkout_without_merchant_credentials_is_500(client):
    asyncio.run(insert_account(client.session_factory, "u1"))
    app.dependency_overrides[get_payfast_service] = lambda: PayFastService(
        merchant_id="", merchant_key="", site_url=SITE_URL
    )

    response = client.post("/billing/checkout", headers=auth_headers("u1"))

    assert response.status_code == 500
    assert response.json()["ok"] is False
    assert "PAYFAST_MERCHANT_ID" in response.json()["error"]
