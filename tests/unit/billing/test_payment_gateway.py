"""
Tests for the httpx-backed off-session charge gateway.
"""

import json
import re

import httpx
import pytest
import pytest_asyncio
import respx

from chainsync.modules.billing.domain.billing.billing_shared import Provider
from chainsync.modules.billing.domain.billing.payment_gateway import (
    HttpPaymentGateway,
    StoredCredential,
    generate_reference,
)
from chainsync.shared.core.http import close_http_client

PAYSTACK_CHARGE_URL = "https://api.paystack.co/transaction/charge_authorization"
FLUTTERWAVE_CHARGE_URL = "https://api.flutterwave.com/v3/tokenized-charges"


@pytest_asyncio.fixture(autouse=True)
async def _fresh_http_client():
    yield
    await close_http_client()


def test_generate_reference_format():
    reference = generate_reference(Provider.PAYSTACK)
    assert re.fullmatch(r"PAYSTACK_\d{13}_[A-Z0-9]{6}", reference)
    assert generate_reference(Provider.FLUTTERWAVE).startswith("FLUTTERWAVE_")
    assert generate_reference(Provider.PAYSTACK) != generate_reference(Provider.PAYSTACK)


@respx.mock
@pytest.mark.asyncio
async def test_paystack_charge_success():
    route = respx.post(PAYSTACK_CHARGE_URL).respond(
        json={"status": True, "data": {"status": "success", "reference": "PAYSTACK_ref"}}
    )
    gateway = HttpPaymentGateway()
    credential = StoredCredential(Provider.PAYSTACK, "AUTH_abc123", "billing@example.com")

    result = await gateway.charge_by_stored_credential(
        credential, 3_000_000, "NGN", {"orgId": "org-1"}
    )

    assert result.success is True
    assert result.reference == "PAYSTACK_ref"
    sent = json.loads(route.calls.last.request.content)
    assert sent["amount"] == 3_000_000
    assert sent["authorization_code"] == "AUTH_abc123"
    assert sent["email"] == "billing@example.com"
    assert sent["metadata"] == {"orgId": "org-1"}
    assert route.calls.last.request.headers["Authorization"] == "Bearer sk_test_paystack_secret"


@respx.mock
@pytest.mark.asyncio
async def test_paystack_decline_is_failure():
    respx.post(PAYSTACK_CHARGE_URL).respond(
        json={"status": True, "data": {"status": "failed", "gateway_response": "Insufficient Funds"}}
    )
    result = await HttpPaymentGateway().charge_by_stored_credential(
        StoredCredential(Provider.PAYSTACK, "AUTH_abc123", "billing@example.com"), 100, "NGN", {}
    )

    assert result.success is False
    assert result.message == "Insufficient Funds"
    assert result.reference.startswith("PAYSTACK_")


@respx.mock
@pytest.mark.asyncio
async def test_paystack_http_error_is_failure_not_exception():
    respx.post(PAYSTACK_CHARGE_URL).respond(status_code=500, json={"status": False})

    result = await HttpPaymentGateway().charge_by_stored_credential(
        StoredCredential(Provider.PAYSTACK, "AUTH_abc123", "billing@example.com"), 100, "NGN", {}
    )

    assert result.success is False


@respx.mock
@pytest.mark.asyncio
async def test_paystack_transport_error_is_failure():
    respx.post(PAYSTACK_CHARGE_URL).mock(side_effect=httpx.ConnectError("boom"))

    result = await HttpPaymentGateway().charge_by_stored_credential(
        StoredCredential(Provider.PAYSTACK, "AUTH_abc123", "billing@example.com"), 100, "NGN", {}
    )

    assert result.success is False
    assert "boom" in (result.message or "")


@pytest.mark.asyncio
async def test_paystack_without_email_never_calls_provider():
    with respx.mock(assert_all_called=False) as router:
        route = router.post(PAYSTACK_CHARGE_URL)
        result = await HttpPaymentGateway().charge_by_stored_credential(
            StoredCredential(Provider.PAYSTACK, "AUTH_abc123", None), 100, "NGN", {}
        )

    assert result.success is False
    assert result.message == "missing_email"
    assert route.call_count == 0


@respx.mock
@pytest.mark.asyncio
async def test_flutterwave_token_charge_uses_major_units():
    route = respx.post(FLUTTERWAVE_CHARGE_URL).respond(
        json={"status": "success", "data": {"status": "successful", "tx_ref": "FLUTTERWAVE_ref"}}
    )

    result = await HttpPaymentGateway().charge_by_stored_credential(
        StoredCredential(Provider.FLUTTERWAVE, "flw-t1-token", "billing@example.com"),
        3_000_000,
        "ngn",
        {},
    )

    assert result.success is True
    assert result.reference == "FLUTTERWAVE_ref"
    sent = json.loads(route.calls.last.request.content)
    assert sent["amount"] == "30000.00"
    assert sent["currency"] == "NGN"
    assert sent["token"] == "flw-t1-token"


@respx.mock
@pytest.mark.asyncio
async def test_fetch_paystack_autopay_details():
    respx.get("https://api.paystack.co/transaction/verify/PAYSTACK_first").respond(
        json={
            "status": True,
            "data": {
                "status": "success",
                "customer": {"email": "billing@example.com"},
                "authorization": {
                    "authorization_code": "AUTH_reusable",
                    "reusable": True,
                    "last4": "4081",
                    "card_type": "visa",
                    "exp_month": "12",
                    "exp_year": "2030",
                },
            },
        }
    )

    details = await HttpPaymentGateway().fetch_autopay_details(Provider.PAYSTACK, "PAYSTACK_first")

    assert details.autopay_reference == "AUTH_reusable"
    assert details.email == "billing@example.com"
    assert details.last4 == "4081"


@respx.mock
@pytest.mark.asyncio
async def test_fetch_flutterwave_autopay_details_splits_expiry():
    respx.get("https://api.flutterwave.com/v3/transactions/777/verify").respond(
        json={
            "status": "success",
            "data": {
                "customer": {"email": "billing@example.com"},
                "card": {"token": "flw-t1-token", "last_4digits": "5678", "expiry": "09/31"},
            },
        }
    )

    details = await HttpPaymentGateway().fetch_autopay_details(Provider.FLUTTERWAVE, "777")

    assert details.autopay_reference == "flw-t1-token"
    assert (details.exp_month, details.exp_year) == ("09", "31")
