"""Stripe payment processor client.

Uses the real Stripe API when a valid key is configured, otherwise falls
back to mock responses for development. Every mutating call carries an
idempotency key so retries never double-move funds.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx

from escrowguard.common.exceptions import PaymentError
from escrowguard.common.money import to_cents
from escrowguard.config import settings
from escrowguard.integrations.base import BaseIntegration


def _is_mock() -> bool:
    key = getattr(settings, "STRIPE_SECRET_KEY", "mock_stripe_key")
    return key.startswith("mock_")


class PaymentProcessor(ABC):
    """Fund custody and transfer primitives, idempotent per operation key."""

    @abstractmethod
    async def hold_funds(
        self, amount: Decimal, currency: str, customer_ref: str | None, idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def release_funds(
        self, payment_ref: str | None, customer_amount: Decimal, vendor_amount: Decimal,
        currency: str, vendor_account: str | None, idempotency_key: str,
    ) -> dict[str, Any]:
        """Refund the customer share and pay out the vendor share.

        Returns ``{"refund_id": ..., "transfer_id": ...}``; an id is None when
        its share is zero.
        """
        ...

    @abstractmethod
    async def refund(
        self, payment_ref: str | None, amount: Decimal, idempotency_key: str, reason: str = "",
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def charge_saved_method(
        self, customer_ref: str | None, payment_method: str | None, amount: Decimal,
        currency: str, idempotency_key: str, metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Off-session charge. Returns the payment intent; ``status`` is
        ``succeeded`` or ``processing`` (confirmed later by webhook)."""
        ...


class StripeClient(BaseIntegration, PaymentProcessor):
    """Payment processor with real Stripe API and mock fallback."""

    BASE_URL = "https://api.stripe.com/v1"

    def __init__(self) -> None:
        super().__init__("stripe")

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {settings.STRIPE_SECRET_KEY}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, path: str, data: dict[str, Any], idempotency_key: str, operation: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=30) as client:
                resp = await client.post(
                    f"{self.BASE_URL}{path}",
                    headers=self._headers(idempotency_key),
                    data=data,
                )
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:300]
            self.logger.error("Stripe %s failed (%d): %s", operation, e.response.status_code, detail)
            raise PaymentError(operation, detail) from e
        except httpx.HTTPError as e:
            self.logger.error("Stripe %s failed: %s", operation, e)
            raise PaymentError(operation, str(e)) from e

    async def health_check(self) -> bool:
        if _is_mock():
            self.logger.info("Stripe health check: OK (mock)")
            return True
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"{self.BASE_URL}/balance", headers=self._headers())
                return resp.status_code == 200
        except Exception as e:
            self.logger.error("Stripe health check failed: %s", e)
            return False

    # ------------------------------------------------------------------
    # Escrow hold
    # ------------------------------------------------------------------

    async def hold_funds(
        self, amount: Decimal, currency: str, customer_ref: str | None, idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if not _is_mock():
            payload: dict[str, Any] = {
                "amount": to_cents(amount),
                "currency": currency,
                "capture_method": "automatic",
            }
            if customer_ref:
                payload["customer"] = customer_ref
            for k, v in (metadata or {}).items():
                payload[f"metadata[{k}]"] = v
            data = await self._post("/payment_intents", payload, idempotency_key, "hold_funds")
            self.logger.info("Created escrow payment intent: %s (%s %s)", data["id"], amount, currency)
            return data

        pi_id = f"pi_{uuid.uuid4().hex[:24]}"
        self.logger.info("Mock escrow hold: %s (%s %s)", pi_id, amount, currency)
        return {
            "id": pi_id,
            "object": "payment_intent",
            "amount": to_cents(amount),
            "currency": currency,
            "status": "succeeded",
            "customer": customer_ref,
            "created": int(datetime.now(timezone.utc).timestamp()),
        }

    # ------------------------------------------------------------------
    # Release / refund
    # ------------------------------------------------------------------

    async def release_funds(
        self, payment_ref: str | None, customer_amount: Decimal, vendor_amount: Decimal,
        currency: str, vendor_account: str | None, idempotency_key: str,
    ) -> dict[str, Any]:
        refund_id = None
        transfer_id = None

        if customer_amount > 0:
            refund = await self.refund(
                payment_ref, customer_amount, f"{idempotency_key}:refund", reason="requested_by_customer"
            )
            refund_id = refund["id"]

        if vendor_amount > 0:
            if not _is_mock():
                if not vendor_account:
                    raise PaymentError("release_funds", "vendor has no connected payout account")
                payload: dict[str, Any] = {
                    "amount": to_cents(vendor_amount),
                    "currency": currency,
                    "destination": vendor_account,
                }
                if payment_ref:
                    payload["metadata[payment_intent]"] = payment_ref
                data = await self._post("/transfers", payload, f"{idempotency_key}:transfer", "release_funds")
                transfer_id = data["id"]
                self.logger.info("Created vendor transfer: %s (%s %s)", transfer_id, vendor_amount, currency)
            else:
                transfer_id = f"tr_{uuid.uuid4().hex[:24]}"
                self.logger.info("Mock vendor transfer: %s (%s %s)", transfer_id, vendor_amount, currency)

        return {"refund_id": refund_id, "transfer_id": transfer_id}

    async def refund(
        self, payment_ref: str | None, amount: Decimal, idempotency_key: str, reason: str = "",
    ) -> dict[str, Any]:
        if not _is_mock():
            if not payment_ref:
                raise PaymentError("refund", "escrow has no payment reference")
            payload: dict[str, Any] = {"payment_intent": payment_ref, "amount": to_cents(amount)}
            if reason:
                payload["reason"] = reason
            data = await self._post("/refunds", payload, idempotency_key, "refund")
            self.logger.info("Created refund: %s", data["id"])
            return data

        ref_id = f"re_{uuid.uuid4().hex[:24]}"
        self.logger.info("Mock refund: %s (%s)", ref_id, amount)
        return {
            "id": ref_id,
            "object": "refund",
            "amount": to_cents(amount),
            "payment_intent": payment_ref,
            "status": "succeeded",
            "reason": reason,
            "created": int(datetime.now(timezone.utc).timestamp()),
        }

    # ------------------------------------------------------------------
    # Off-session fee charges
    # ------------------------------------------------------------------

    async def charge_saved_method(
        self, customer_ref: str | None, payment_method: str | None, amount: Decimal,
        currency: str, idempotency_key: str, metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if not customer_ref or not payment_method:
            raise PaymentError("charge_saved_method", "no saved payment method on file")

        if not _is_mock():
            payload: dict[str, Any] = {
                "amount": to_cents(amount),
                "currency": currency,
                "customer": customer_ref,
                "payment_method": payment_method,
                "off_session": "true",
                "confirm": "true",
            }
            for k, v in (metadata or {}).items():
                payload[f"metadata[{k}]"] = v
            data = await self._post("/payment_intents", payload, idempotency_key, "charge_saved_method")
            self.logger.info("Off-session charge %s status=%s", data["id"], data.get("status"))
            return data

        pi_id = f"pi_{uuid.uuid4().hex[:24]}"
        self.logger.info("Mock off-session charge: %s (%s %s)", pi_id, amount, currency)
        return {
            "id": pi_id,
            "object": "payment_intent",
            "amount": to_cents(amount),
            "currency": currency,
            "status": "succeeded",
            "customer": customer_ref,
            "metadata": metadata or {},
        }

    # ------------------------------------------------------------------
    # Webhook signature verification
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a Stripe webhook signature. Returns the parsed event."""
        webhook_secret = settings.STRIPE_WEBHOOK_SECRET

        if _is_mock() or not webhook_secret:
            return json.loads(payload)

        parts = dict(item.split("=", 1) for item in sig_header.split(",") if "=" in item)
        timestamp = parts.get("t", "")
        signature = parts.get("v1", "")

        signed_payload = f"{timestamp}.{payload.decode()}"
        expected = hmac.new(
            webhook_secret.encode(), signed_payload.encode(), hashlib.sha256
        ).hexdigest()

        if not hmac.compare_digest(expected, signature):
            raise ValueError("Invalid Stripe webhook signature")

        # Check timestamp is within 5 minutes
        if abs(time.time() - int(timestamp)) > 300:
            raise ValueError("Stripe webhook timestamp too old")

        return json.loads(payload)
