"""
Off-session charge contract and its httpx-backed provider implementations.

The sweep and the ledger only see ``PaymentGatewayAdapter``; transport
errors and declines both come back as ``ChargeResult(success=False)``.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from chainsync.shared.core.exceptions import ConfigurationError
from chainsync.shared.core.http import get_http_client

from .billing_shared import Provider, logger, settings, to_major_units


@dataclass(frozen=True)
class StoredCredential:
    """Provider-issued reusable credential (authorization code or card token)."""

    provider: Provider
    reference: str
    email: Optional[str] = None


@dataclass
class ChargeResult:
    success: bool
    reference: str
    raw: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None


@dataclass(frozen=True)
class AutopayDetails:
    provider: Provider
    autopay_reference: Optional[str]
    email: Optional[str]
    last4: Optional[str] = None
    card_type: Optional[str] = None
    bank: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None


class PaymentGatewayAdapter(Protocol):
    async def charge_by_stored_credential(
        self,
        credential: StoredCredential,
        amount_minor: int,
        currency: str,
        metadata: dict[str, Any],
    ) -> ChargeResult: ...

    def generate_reference(self, provider: Provider) -> str: ...


_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference(provider: Provider) -> str:
    """``PAYSTACK_<epoch-ms>_<6 random upper alnum>``."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{provider.value.upper()}_{int(time.time() * 1000)}_{suffix}"


class _ProviderClient:
    provider: Provider
    secret_setting: str
    base_url_setting: str

    def __init__(self) -> None:
        secret_key = getattr(settings, self.secret_setting)
        if not secret_key:
            raise ConfigurationError(f"{self.secret_setting} not configured")
        self.base_url = str(getattr(settings, self.base_url_setting)).rstrip("/")
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = get_http_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{endpoint}",
                headers=self.headers,
                json=data,
                timeout=30.0,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError(f"Invalid {self.provider.value} response payload type")
            return payload
        except httpx.HTTPError as exc:
            logger.error(
                "payment_provider_api_error",
                provider=self.provider.value,
                endpoint=endpoint,
                error=str(exc),
            )
            raise


class PaystackGatewayClient(_ProviderClient):
    provider = Provider.PAYSTACK
    secret_setting = "PAYSTACK_SECRET_KEY"
    base_url_setting = "PAYSTACK_BASE_URL"

    async def charge_authorization(
        self,
        email: str,
        amount_kobo: int,
        authorization_code: str,
        reference: str,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        """Charge a stored authorization code (recurring billing)."""
        data = {
            "email": email,
            "amount": amount_kobo,
            "authorization_code": authorization_code,
            "reference": reference,
            "metadata": metadata,
        }
        return await self._request("POST", "transaction/charge_authorization", data)

    async def verify_transaction(self, reference: str) -> dict[str, Any]:
        return await self._request("GET", f"transaction/verify/{reference}")


class FlutterwaveGatewayClient(_ProviderClient):
    provider = Provider.FLUTTERWAVE
    secret_setting = "FLUTTERWAVE_SECRET_KEY"
    base_url_setting = "FLUTTERWAVE_BASE_URL"

    async def charge_token(
        self,
        email: Optional[str],
        amount: str,
        currency: str,
        token: str,
        tx_ref: str,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        """Charge a tokenized card; Flutterwave takes major units."""
        data = {
            "token": token,
            "email": email,
            "currency": currency,
            "amount": amount,
            "tx_ref": tx_ref,
            "meta": metadata,
        }
        return await self._request("POST", "tokenized-charges", data)

    async def verify_transaction(self, transaction_id: str) -> dict[str, Any]:
        return await self._request("GET", f"transactions/{transaction_id}/verify")


class HttpPaymentGateway:
    """Routes off-session charges to the credential's provider."""

    def __init__(
        self,
        paystack: Optional[PaystackGatewayClient] = None,
        flutterwave: Optional[FlutterwaveGatewayClient] = None,
    ):
        self._paystack = paystack
        self._flutterwave = flutterwave

    def generate_reference(self, provider: Provider) -> str:
        return generate_reference(provider)

    def _paystack_client(self) -> PaystackGatewayClient:
        if self._paystack is None:
            self._paystack = PaystackGatewayClient()
        return self._paystack

    def _flutterwave_client(self) -> FlutterwaveGatewayClient:
        if self._flutterwave is None:
            self._flutterwave = FlutterwaveGatewayClient()
        return self._flutterwave

    async def charge_by_stored_credential(
        self,
        credential: StoredCredential,
        amount_minor: int,
        currency: str,
        metadata: dict[str, Any],
    ) -> ChargeResult:
        reference = self.generate_reference(credential.provider)
        try:
            if credential.provider is Provider.PAYSTACK:
                if not credential.email:
                    return ChargeResult(
                        success=False, reference=reference, message="missing_email"
                    )
                response = await self._paystack_client().charge_authorization(
                    email=credential.email,
                    amount_kobo=amount_minor,
                    authorization_code=credential.reference,
                    reference=reference,
                    metadata=metadata,
                )
                data = response.get("data") or {}
                success = data.get("status") == "success"
            else:
                response = await self._flutterwave_client().charge_token(
                    email=credential.email,
                    amount=str(to_major_units(amount_minor)),
                    currency=currency.upper(),
                    token=credential.reference,
                    tx_ref=reference,
                    metadata=metadata,
                )
                data = response.get("data") or {}
                success = data.get("status") == "successful"
        except (httpx.HTTPError, ValueError, ConfigurationError) as exc:
            logger.warning(
                "off_session_charge_errored",
                provider=credential.provider.value,
                reference=reference,
                error=str(exc),
            )
            return ChargeResult(success=False, reference=reference, message=str(exc))

        return ChargeResult(
            success=success,
            reference=str(data.get("reference") or data.get("tx_ref") or reference),
            raw=response,
            message=None if success else str(data.get("gateway_response") or data.get("status")),
        )

    async def fetch_autopay_details(
        self, provider: Provider, reference: str
    ) -> AutopayDetails:
        """Extract the reusable credential from a verified first payment."""
        if provider is Provider.PAYSTACK:
            response = await self._paystack_client().verify_transaction(reference)
            data = response.get("data") or {}
            authorization = data.get("authorization") or {}
            customer = data.get("customer") or {}
            reusable = bool(authorization.get("reusable"))
            return AutopayDetails(
                provider=provider,
                autopay_reference=authorization.get("authorization_code") if reusable else None,
                email=customer.get("email"),
                last4=authorization.get("last4"),
                card_type=authorization.get("card_type"),
                bank=authorization.get("bank"),
                exp_month=authorization.get("exp_month"),
                exp_year=authorization.get("exp_year"),
            )

        response = await self._flutterwave_client().verify_transaction(reference)
        data = response.get("data") or {}
        card = data.get("card") or {}
        customer = data.get("customer") or {}
        expiry = str(card.get("expiry") or "")
        exp_month, _, exp_year = expiry.partition("/")
        return AutopayDetails(
            provider=provider,
            autopay_reference=card.get("token"),
            email=customer.get("email"),
            last4=card.get("last_4digits"),
            card_type=card.get("type"),
            bank=card.get("issuer"),
            exp_month=exp_month or None,
            exp_year=exp_year or None,
        )
