"""Payment provider adapters: Mock (development) and RaksmeyPay/Bakong KHQR.

Every provider exposes the same four operations:
  - initiate_payment: returns a correlation ref immediately, never waits on the payer
  - verify_payment:   read-only status lookup; unknown/unreachable degrades to pending
  - parse_webhook:    HMAC-verified push notification
  - validate_callback: signed browser redirect (KHQR only)

The provider is chosen once at startup by `create_payment_provider(config)` and
injected into the reconciliation service; there is no runtime switch.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Mapping, Optional
from urllib.parse import urlencode

import httpx
from bakong_khqr import KHQR

from src.models.payment import PaymentStatus
from src.services.errors import (
    CallbackValidationError,
    PaymentProviderError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MOCK_SESSION_TTL = 30 * 60
KHQR_SESSION_TTL = 10 * 60
CALLBACK_MAX_AGE_SECONDS = 180

# KHQR field limits; bakong_khqr rejects longer values instead of truncating
KHQR_NAME_MAX = 25
KHQR_CITY_MAX = 15
KHQR_LABEL_MAX = 25

CALLBACK_PARAMS = ("success_time", "success_amount", "bakong_hash", "success_hash", "transaction_id")

_PROVIDER_STATUS_MAP = {
    "SUCCESS": PaymentStatus.COMPLETED,
    "COMPLETED": PaymentStatus.COMPLETED,
    "PENDING": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
}


def _now() -> float:
    return time.time()


def format_amount(amount: float) -> str:
    """Render an amount the way the provider hashes it: no trailing zeros."""
    text = f"{amount:.2f}".rstrip("0").rstrip(".")
    return text or "0"


def _sha1(text: str) -> str:
    return hashlib.sha1(text.encode()).hexdigest()


def _map_status(raw) -> PaymentStatus:
    if raw is None:
        return PaymentStatus.PENDING
    return _PROVIDER_STATUS_MAP.get(str(raw).upper(), PaymentStatus.PENDING)


# ── Data types ───────────────────────────────────────────────────────────────

@dataclass
class PaymentInitiation:
    payment_ref: str
    expires_at: int
    checkout_url: Optional[str] = None
    khqr_string: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class PaymentVerification:
    payment_ref: str
    status: PaymentStatus
    amount: float = 0.0
    currency: str = "USD"
    transaction_id: Optional[str] = None
    paid_at: Optional[int] = None


@dataclass(frozen=True)
class CallbackValidation:
    payment_ref: str
    success_time: int
    success_amount: float
    bakong_hash: str


@dataclass
class PaymentProviderConfig:
    profile_id: str = ""
    profile_key: str = ""
    bakong_account_id: str = ""
    merchant_name: str = "ReelVault"
    merchant_city: str = "Phnom Penh"
    base_url: str = "https://raksmeypay.com"
    mock_webhook_secret: str = "mock-secret"

    @classmethod
    def from_settings(cls, settings) -> "PaymentProviderConfig":
        return cls(
            profile_id=settings.RAKSMEYPAY_PROFILE_ID,
            profile_key=settings.RAKSMEYPAY_PROFILE_KEY,
            bakong_account_id=settings.BAKONG_ACCOUNT_ID,
            merchant_name=settings.BAKONG_MERCHANT_NAME,
            merchant_city=settings.BAKONG_MERCHANT_CITY,
            base_url=settings.RAKSMEYPAY_BASE_URL,
            mock_webhook_secret=settings.MOCK_WEBHOOK_SECRET,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.profile_id and self.profile_key)


# ── Provider interface ───────────────────────────────────────────────────────

class PaymentProvider(ABC):
    name: str = "provider"
    payment_method: str = "unknown"

    @abstractmethod
    async def initiate_payment(
        self,
        user_id: str,
        plan_id: Optional[str],
        amount: float,
        currency: str,
        callback_url: str,
    ) -> PaymentInitiation:
        ...

    @abstractmethod
    async def verify_payment(self, payment_ref: str) -> PaymentVerification:
        ...

    @abstractmethod
    def webhook_secret(self) -> str:
        ...

    def parse_webhook(self, body: bytes, signature: str) -> PaymentVerification:
        """Verify HMAC-SHA256(secret, raw body) before trusting any field."""
        secret = self.webhook_secret()
        if not secret:
            raise WebhookSignatureError("Webhooks are not configured")
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if not signature or not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
            logger.warning(f"{self.name}: webhook signature mismatch")
            raise WebhookSignatureError()

        try:
            payload = json.loads(body)
        except ValueError:
            raise WebhookSignatureError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise WebhookSignatureError("Webhook body is not a JSON object")

        payment_ref = payload.get("paymentRef") or payload.get("transaction_id")
        if not payment_ref:
            raise CallbackValidationError("Webhook payload missing paymentRef")

        raw_paid_at = payload.get("paidAt")
        try:
            amount = float(payload.get("amount") or 0)
            paid_at = int(raw_paid_at) if raw_paid_at else int(_now())
        except (TypeError, ValueError):
            logger.warning(f"{self.name}: malformed amount/paidAt in webhook for {payment_ref}")
            raise CallbackValidationError("Webhook payload has a malformed amount or paidAt")

        verification = PaymentVerification(
            payment_ref=str(payment_ref),
            status=_map_status(payload.get("status")),
            amount=amount,
            currency=payload.get("currency") or "USD",
            transaction_id=payload.get("transactionId"),
            paid_at=paid_at,
        )
        self._on_webhook(verification)
        return verification

    def _on_webhook(self, verification: PaymentVerification) -> None:
        pass

    def validate_callback(self, params: Mapping[str, str]) -> CallbackValidation:
        raise PaymentProviderError(f"{self.name} does not use redirect callbacks")


# ── Mock provider ────────────────────────────────────────────────────────────

class MockPaymentProvider(PaymentProvider):
    """In-memory simulator. No checkout URL: the client auto-completes via the dev endpoint."""

    name = "mock"
    payment_method = "mock"

    def __init__(self, webhook_secret: str = "mock-secret"):
        self._webhook_secret = webhook_secret
        self._payments: dict[str, PaymentVerification] = {}

    def webhook_secret(self) -> str:
        return self._webhook_secret

    async def initiate_payment(self, user_id, plan_id, amount, currency, callback_url) -> PaymentInitiation:
        payment_ref = f"MOCK_{secrets.token_hex(8)}"
        self._payments[payment_ref] = PaymentVerification(
            payment_ref=payment_ref,
            status=PaymentStatus.PENDING,
            amount=amount,
            currency=currency,
        )
        logger.info(f"mock: created payment {payment_ref} for user {user_id} ({amount} {currency})")
        return PaymentInitiation(
            payment_ref=payment_ref,
            session_id=f"SESSION_{payment_ref}",
            expires_at=int(_now()) + MOCK_SESSION_TTL,
        )

    async def verify_payment(self, payment_ref: str) -> PaymentVerification:
        payment = self._payments.get(payment_ref)
        if payment is None:
            # Lost on restart or never issued here
            return PaymentVerification(payment_ref=payment_ref, status=PaymentStatus.PENDING)
        return replace(payment)

    def _on_webhook(self, verification: PaymentVerification) -> None:
        payment = self._payments.get(verification.payment_ref)
        if payment is not None:
            payment.status = verification.status
            payment.transaction_id = verification.transaction_id
            payment.paid_at = verification.paid_at

    def simulate_success(self, payment_ref: str) -> None:
        payment = self._payments.get(payment_ref)
        if payment is not None:
            payment.status = PaymentStatus.COMPLETED
            payment.transaction_id = f"TXN_{secrets.token_hex(8)}"
            payment.paid_at = int(_now())

    def simulate_failure(self, payment_ref: str) -> None:
        payment = self._payments.get(payment_ref)
        if payment is not None:
            payment.status = PaymentStatus.FAILED

    def sign(self, body: bytes) -> str:
        """Signature a well-behaved mock webhook sender would attach."""
        return hmac.new(self._webhook_secret.encode(), body, hashlib.sha256).hexdigest()


# ── RaksmeyPay / Bakong KHQR provider ────────────────────────────────────────

class KhqrPaymentProvider(PaymentProvider):
    """Bakong KHQR via RaksmeyPay. Confirmation comes from the signed redirect or polling."""

    name = "khqr"
    payment_method = "khqr"

    def __init__(self, config: PaymentProviderConfig, transport: httpx.AsyncBaseTransport | None = None):
        if not config.has_credentials:
            raise ValueError("RaksmeyPay credentials not configured (RAKSMEYPAY_PROFILE_ID / RAKSMEYPAY_PROFILE_KEY)")
        if not config.bakong_account_id:
            raise ValueError("Bakong account not configured (BAKONG_ACCOUNT_ID)")
        self.config = config
        self._transport = transport
        self._khqr = KHQR()  # local generation, no Bakong API token needed
        self._last_txn_id = 0

    def webhook_secret(self) -> str:
        return self.config.profile_key

    def _next_transaction_id(self) -> int:
        # Millisecond clock, bumped so two payments in the same ms never collide
        txn_id = max(int(_now() * 1000), self._last_txn_id + 1)
        self._last_txn_id = txn_id
        return txn_id

    def checkout_url(self, amount: float, transaction_id: str, return_url: str) -> str:
        amount_text = format_amount(amount)
        query = urlencode({
            "amount": amount_text,
            "transaction_id": transaction_id,
            "return_url": return_url,
            "hash": _sha1(f"{self.config.profile_key}{amount_text}{transaction_id}"),
        })
        return f"{self.config.base_url}/payment/request/{self.config.profile_id}?{query}"

    async def initiate_payment(self, user_id, plan_id, amount, currency, callback_url) -> PaymentInitiation:
        txn_id = str(self._next_transaction_id())

        khqr_string = None
        try:
            qr = self._khqr.create_qr(
                account_id=self.config.bakong_account_id,
                merchant_name=self.config.merchant_name[:KHQR_NAME_MAX],
                merchant_city=self.config.merchant_city[:KHQR_CITY_MAX],
                amount=amount,
                currency=currency,
                store_label=self.config.merchant_name[:KHQR_LABEL_MAX],
                bill_number=txn_id,
                terminal_label=f"TXN{txn_id}"[:KHQR_LABEL_MAX],
            )
            khqr_string = str(qr)
        except ValueError as e:
            logger.error(f"khqr: could not build KHQR for {txn_id}: {e}")

        logger.info(
            f"khqr: created payment {txn_id} for user {user_id} "
            f"({amount} {currency}, khqr={'yes' if khqr_string else 'no'})"
        )
        return PaymentInitiation(
            payment_ref=txn_id,
            khqr_string=khqr_string,
            # Checkout URL is only the fallback when no QR could be built
            checkout_url=None if khqr_string else self.checkout_url(amount, txn_id, callback_url),
            session_id=txn_id,
            expires_at=int(_now()) + KHQR_SESSION_TTL,
        )

    async def verify_payment(self, payment_ref: str) -> PaymentVerification:
        pending = PaymentVerification(payment_ref=payment_ref, status=PaymentStatus.PENDING)
        url = f"{self.config.base_url}/api/payment/verify/{self.config.profile_id}"
        form = {
            "transaction_id": payment_ref,
            "hash": _sha1(f"{self.config.profile_key}{payment_ref}"),
        }

        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                resp = await client.post(url, data=form)
            if resp.status_code != 200:
                logger.warning(f"khqr: verify API returned {resp.status_code} for {payment_ref}")
                return pending
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"khqr: verify failed for {payment_ref}: {e}")
            return pending

        if not isinstance(data, dict):
            logger.warning(f"khqr: unexpected verify response shape for {payment_ref}")
            return pending
        # status 0 = not (yet) visible to the provider's API
        if data.get("status") == 0 or not data.get("payment_status"):
            return pending

        status = _map_status(data["payment_status"])
        if str(data["payment_status"]).upper() not in _PROVIDER_STATUS_MAP:
            logger.warning(f"khqr: unknown payment_status {data['payment_status']!r} for {payment_ref}")

        try:
            amount = float(data.get("payment_amount") or 0)
        except (TypeError, ValueError):
            amount = 0.0

        return PaymentVerification(
            payment_ref=payment_ref,
            status=status,
            amount=amount,
            currency=data.get("payment_currency") or "USD",
            transaction_id=payment_ref,
            paid_at=int(_now()) if status is PaymentStatus.COMPLETED else None,
        )

    def validate_callback(self, params: Mapping[str, str]) -> CallbackValidation:
        missing = [p for p in CALLBACK_PARAMS if not params.get(p)]
        if missing:
            raise CallbackValidationError("Missing required parameters")

        try:
            success_time = int(params["success_time"])
        except ValueError:
            raise CallbackValidationError("Invalid success_time")
        if _now() - success_time > CALLBACK_MAX_AGE_SECONDS:
            logger.warning(f"khqr: stale callback for {params['transaction_id']}")
            raise CallbackValidationError(f"Callback expired (>{CALLBACK_MAX_AGE_SECONDS} seconds)")

        expected = _sha1(
            f"{self.config.profile_key}{params['success_time']}{params['success_amount']}"
            f"{params['bakong_hash']}{params['transaction_id']}"
        )
        if not hmac.compare_digest(expected.encode(), params["success_hash"].lower().encode()):
            logger.warning(f"khqr: callback hash mismatch for {params['transaction_id']}")
            raise CallbackValidationError("Invalid hash signature")

        try:
            success_amount = float(params["success_amount"])
        except ValueError:
            raise CallbackValidationError("Invalid success_amount")

        return CallbackValidation(
            payment_ref=params["transaction_id"],
            success_time=success_time,
            success_amount=success_amount,
            bakong_hash=params["bakong_hash"],
        )


# ── Factory ──────────────────────────────────────────────────────────────────

def create_payment_provider(
    config: PaymentProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentProvider:
    """Credentials present → KHQR, otherwise the mock. Decided once, at bootstrap."""
    if config.has_credentials:
        logger.info("Payments: using KHQR provider (credentials configured)")
        return KhqrPaymentProvider(config, transport=transport)
    logger.info("Payments: using MOCK provider (no credentials: development mode)")
    return MockPaymentProvider(webhook_secret=config.mock_webhook_secret)
