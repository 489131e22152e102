"""Tests for the payment provider adapters: mock and RaksmeyPay/Bakong KHQR."""
from __future__ import annotations

import hashlib
import hmac
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from bakong_khqr.sdk.crc import CRC
from bakong_khqr.sdk.emv_parser import EMVParser

from src.models.payment import PaymentStatus
from src.payments import provider as provider_mod
from src.payments.provider import (
    KhqrPaymentProvider,
    MockPaymentProvider,
    PaymentProviderConfig,
    create_payment_provider,
    format_amount,
)
from src.services.errors import (
    CallbackValidationError,
    PaymentProviderError,
    WebhookSignatureError,
)

PROFILE_KEY = "profile-key-123"
NOW = 1_760_000_000


def _config(**overrides) -> PaymentProviderConfig:
    base = dict(
        profile_id="P-42",
        profile_key=PROFILE_KEY,
        bakong_account_id="reelvault@aclb",
        base_url="https://pay.test",
    )
    base.update(overrides)
    return PaymentProviderConfig(**base)


def _sha1(text: str) -> str:
    return hashlib.sha1(text.encode()).hexdigest()


def _callback(txn_id="1760000000123", amount="4.99", success_time=NOW, bakong_hash="bk-hash-1", key=PROFILE_KEY):
    return {
        "transaction_id": txn_id,
        "success_time": str(success_time),
        "success_amount": amount,
        "bakong_hash": bakong_hash,
        "success_hash": _sha1(f"{key}{success_time}{amount}{bakong_hash}{txn_id}"),
    }


def _verify_transport(payload, status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, str):
            return httpx.Response(status_code, text=payload)
        return httpx.Response(status_code, json=payload)
    return httpx.MockTransport(handler)


@pytest.fixture
def frozen_clock(monkeypatch):
    monkeypatch.setattr(provider_mod, "_now", lambda: float(NOW))


# ── Helpers / factory ────────────────────────────────────────────────────────

def test_format_amount_strips_trailing_zeros():
    assert format_amount(1.0) == "1"
    assert format_amount(4.50) == "4.5"
    assert format_amount(4.99) == "4.99"
    assert format_amount(0) == "0"


def test_factory_without_credentials_is_mock():
    p = create_payment_provider(PaymentProviderConfig())
    assert isinstance(p, MockPaymentProvider)
    assert p.name == "mock"


def test_factory_with_credentials_is_khqr():
    p = create_payment_provider(_config())
    assert isinstance(p, KhqrPaymentProvider)
    assert p.payment_method == "khqr"


def test_khqr_requires_bakong_account():
    with pytest.raises(ValueError):
        KhqrPaymentProvider(_config(bakong_account_id=""))


# ── Mock provider ────────────────────────────────────────────────────────────

class TestMockProvider:
    @pytest.mark.asyncio
    async def test_initiate_returns_ref_without_checkout(self):
        p = MockPaymentProvider()
        init = await p.initiate_payment("user-1", "plan-monthly", 4.99, "USD", "http://cb")
        assert init.payment_ref.startswith("MOCK_")
        assert init.checkout_url is None
        assert init.session_id == f"SESSION_{init.payment_ref}"

    @pytest.mark.asyncio
    async def test_verify_pending_then_completed(self):
        p = MockPaymentProvider()
        init = await p.initiate_payment("user-1", None, 1.0, "USD", "http://cb")
        assert (await p.verify_payment(init.payment_ref)).status is PaymentStatus.PENDING

        p.simulate_success(init.payment_ref)
        v = await p.verify_payment(init.payment_ref)
        assert v.status is PaymentStatus.COMPLETED
        assert v.amount == 1.0
        assert v.transaction_id.startswith("TXN_")

    @pytest.mark.asyncio
    async def test_verify_unknown_ref_is_pending(self):
        v = await MockPaymentProvider().verify_payment("MOCK_unknown")
        assert v.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_verify_returns_a_copy(self):
        p = MockPaymentProvider()
        init = await p.initiate_payment("user-1", None, 1.0, "USD", "http://cb")
        v = await p.verify_payment(init.payment_ref)
        v.status = PaymentStatus.COMPLETED
        assert (await p.verify_payment(init.payment_ref)).status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_simulate_failure(self):
        p = MockPaymentProvider()
        init = await p.initiate_payment("user-1", None, 1.0, "USD", "http://cb")
        p.simulate_failure(init.payment_ref)
        assert (await p.verify_payment(init.payment_ref)).status is PaymentStatus.FAILED

    def test_callbacks_not_supported(self):
        with pytest.raises(PaymentProviderError):
            MockPaymentProvider().validate_callback(_callback())


class TestWebhookSignature:
    def test_valid_signature_parsed(self):
        p = MockPaymentProvider(webhook_secret="s3cret")
        body = json.dumps({"paymentRef": "MOCK_abc", "status": "SUCCESS", "amount": 4.99}).encode()
        v = p.parse_webhook(body, p.sign(body))
        assert v.payment_ref == "MOCK_abc"
        assert v.status is PaymentStatus.COMPLETED
        assert v.amount == 4.99

    def test_signature_over_raw_bytes(self):
        p = MockPaymentProvider(webhook_secret="s3cret")
        body = b'{"paymentRef": "MOCK_abc", "status": "completed"}'
        sig = p.sign(body)
        # Same JSON, different bytes
        reformatted = b'{"paymentRef":"MOCK_abc","status":"completed"}'
        with pytest.raises(WebhookSignatureError):
            p.parse_webhook(reformatted, sig)

    def test_wrong_secret_rejected(self):
        body = b'{"paymentRef": "MOCK_abc", "status": "completed"}'
        forged = hmac.new(b"guess", body, hashlib.sha256).hexdigest()
        with pytest.raises(WebhookSignatureError):
            MockPaymentProvider(webhook_secret="s3cret").parse_webhook(body, forged)

    def test_missing_signature_rejected(self):
        with pytest.raises(WebhookSignatureError):
            MockPaymentProvider().parse_webhook(b"{}", "")

    def test_non_ascii_signature_rejected(self):
        body = b'{"paymentRef": "MOCK_abc", "status": "SUCCESS"}'
        with pytest.raises(WebhookSignatureError):
            MockPaymentProvider().parse_webhook(body, "\xe9" * 64)

    @pytest.mark.parametrize("fields", [{"paidAt": "now"}, {"amount": "lots"}, {"amount": [4.99]}])
    def test_malformed_signed_fields_rejected(self, fields):
        p = MockPaymentProvider()
        body = json.dumps({"paymentRef": "MOCK_abc", "status": "SUCCESS", **fields}).encode()
        with pytest.raises(CallbackValidationError, match="malformed"):
            p.parse_webhook(body, p.sign(body))

    def test_unknown_status_maps_to_pending(self):
        p = MockPaymentProvider()
        body = b'{"paymentRef": "MOCK_abc", "status": "PROCESSING"}'
        assert p.parse_webhook(body, p.sign(body)).status is PaymentStatus.PENDING

    def test_cancelled_maps_to_failed(self):
        p = MockPaymentProvider()
        body = b'{"paymentRef": "MOCK_abc", "status": "CANCELLED"}'
        assert p.parse_webhook(body, p.sign(body)).status is PaymentStatus.FAILED

    def test_missing_ref_rejected(self):
        p = MockPaymentProvider()
        body = b'{"status": "SUCCESS"}'
        with pytest.raises(CallbackValidationError):
            p.parse_webhook(body, p.sign(body))

    @pytest.mark.asyncio
    async def test_webhook_updates_mock_book(self):
        p = MockPaymentProvider()
        init = await p.initiate_payment("user-1", None, 1.0, "USD", "http://cb")
        body = json.dumps({"paymentRef": init.payment_ref, "status": "SUCCESS"}).encode()
        p.parse_webhook(body, p.sign(body))
        assert (await p.verify_payment(init.payment_ref)).status is PaymentStatus.COMPLETED

    def test_khqr_webhook_uses_profile_key(self):
        p = KhqrPaymentProvider(_config())
        body = b'{"transaction_id": "1760000000123", "status": "SUCCESS"}'
        sig = hmac.new(PROFILE_KEY.encode(), body, hashlib.sha256).hexdigest()
        assert p.parse_webhook(body, sig).payment_ref == "1760000000123"


# ── KHQR provider ────────────────────────────────────────────────────────────

class TestKhqrInitiate:
    @pytest.mark.asyncio
    async def test_initiate_builds_khqr(self, frozen_clock):
        p = KhqrPaymentProvider(_config())
        init = await p.initiate_payment("user-1", "plan-monthly", 4.99, "USD", "http://api/callback")

        assert init.payment_ref == str(NOW * 1000)
        assert init.checkout_url is None
        assert init.expires_at == NOW + provider_mod.KHQR_SESSION_TTL

        qr = init.khqr_string
        assert type(qr) is str
        assert qr.startswith("000201010212")  # dynamic: amount present
        assert CRC().value(qr[:-8]) == qr[-8:]

        fields = EMVParser(qr).parsed
        assert fields["29"] == "0014reelvault@aclb"
        assert fields["53"] == "840"
        assert fields["54"] == "4.99"
        assert fields["58"] == "KH"
        assert fields["59"] == "ReelVault"
        assert fields["60"] == "Phnom Penh"
        assert EMVParser(fields["62"]).parsed == {
            "01": init.payment_ref,
            "03": "ReelVault",
            "07": f"TXN{init.payment_ref}",
        }

    @pytest.mark.asyncio
    async def test_khr_currency(self, frozen_clock):
        p = KhqrPaymentProvider(_config())
        init = await p.initiate_payment("user-1", None, 20000, "KHR", "http://cb")
        fields = EMVParser(init.khqr_string).parsed
        assert fields["53"] == "116"
        assert fields["54"] == "20000"

    @pytest.mark.asyncio
    async def test_long_merchant_fields_truncated(self, frozen_clock):
        p = KhqrPaymentProvider(_config(
            merchant_name="An Unreasonably Long Cinema Name Ltd",
            merchant_city="Sihanoukville Province",
        ))
        init = await p.initiate_payment("user-1", None, 1.0, "USD", "http://cb")
        assert init.khqr_string is not None
        fields = EMVParser(init.khqr_string).parsed
        assert fields["59"] == "An Unreasonably Long Cine"
        assert fields["60"] == "Sihanoukville P"

    @pytest.mark.asyncio
    async def test_transaction_ids_unique_within_same_ms(self, frozen_clock):
        p = KhqrPaymentProvider(_config())
        refs = {(await p.initiate_payment("user-1", None, 1.0, "USD", "http://cb")).payment_ref for _ in range(5)}
        assert len(refs) == 5

    @pytest.mark.asyncio
    async def test_falls_back_to_checkout_url(self, frozen_clock):
        p = KhqrPaymentProvider(_config())
        init = await p.initiate_payment("user-1", None, 4.99, "EUR", "http://api/callback")

        assert init.khqr_string is None
        url = urlparse(init.checkout_url)
        assert url.path == "/payment/request/P-42"
        query = parse_qs(url.query)
        assert query["amount"] == ["4.99"]
        assert query["return_url"] == ["http://api/callback"]
        assert query["hash"] == [_sha1(f"{PROFILE_KEY}4.99{init.payment_ref}")]


class TestKhqrVerify:
    @pytest.mark.asyncio
    async def test_success_maps_to_completed(self):
        seen = []
        p = KhqrPaymentProvider(_config(), transport=_verify_transport(
            {"status": 1, "payment_status": "SUCCESS", "payment_amount": "4.99", "payment_currency": "USD"},
            seen=seen,
        ))
        v = await p.verify_payment("1760000000123")

        assert v.status is PaymentStatus.COMPLETED
        assert v.amount == 4.99
        assert v.paid_at is not None
        req = seen[0]
        assert req.url.path == "/api/payment/verify/P-42"
        form = parse_qs(req.content.decode())
        assert form["transaction_id"] == ["1760000000123"]
        assert form["hash"] == [_sha1(f"{PROFILE_KEY}1760000000123")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload,status_code", [
        ({"status": 0}, 200),
        ({"status": 1}, 200),
        ({"status": 1, "payment_status": "WEIRD"}, 200),
        ({"payment_status": "SUCCESS"}, 500),
        ("<html>oops</html>", 200),
        (["not", "a", "dict"], 200),
    ])
    async def test_unusable_responses_are_pending(self, payload, status_code):
        p = KhqrPaymentProvider(_config(), transport=_verify_transport(payload, status_code))
        assert (await p.verify_payment("1760000000123")).status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_network_error_is_pending(self):
        p = KhqrPaymentProvider(_config(), transport=_verify_transport(httpx.ConnectError("down")))
        assert (await p.verify_payment("1760000000123")).status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_status(self):
        p = KhqrPaymentProvider(_config(), transport=_verify_transport({"status": 1, "payment_status": "FAILED"}))
        assert (await p.verify_payment("1760000000123")).status is PaymentStatus.FAILED


class TestKhqrCallback:
    def test_valid_callback(self, frozen_clock):
        cb = KhqrPaymentProvider(_config()).validate_callback(_callback(success_time=NOW - 10))
        assert cb.payment_ref == "1760000000123"
        assert cb.success_amount == 4.99
        assert cb.success_time == NOW - 10
        assert cb.bakong_hash == "bk-hash-1"

    def test_missing_params(self, frozen_clock):
        params = _callback()
        del params["bakong_hash"]
        with pytest.raises(CallbackValidationError, match="Missing required parameters"):
            KhqrPaymentProvider(_config()).validate_callback(params)

    def test_replayed_callback_rejected(self, frozen_clock):
        params = _callback(success_time=NOW - 181)
        with pytest.raises(CallbackValidationError, match="expired"):
            KhqrPaymentProvider(_config()).validate_callback(params)

    def test_callback_at_window_edge_accepted(self, frozen_clock):
        KhqrPaymentProvider(_config()).validate_callback(_callback(success_time=NOW - 180))

    def test_tampered_amount_rejected(self, frozen_clock):
        params = _callback()
        params["success_amount"] = "0.01"
        with pytest.raises(CallbackValidationError, match="Invalid hash signature"):
            KhqrPaymentProvider(_config()).validate_callback(params)

    def test_wrong_key_rejected(self, frozen_clock):
        params = _callback(key="not-the-key")
        with pytest.raises(CallbackValidationError, match="Invalid hash signature"):
            KhqrPaymentProvider(_config()).validate_callback(params)

    def test_non_ascii_hash_rejected(self, frozen_clock):
        params = _callback()
        params["success_hash"] = "é" * 40
        with pytest.raises(CallbackValidationError, match="Invalid hash signature"):
            KhqrPaymentProvider(_config()).validate_callback(params)

    def test_non_numeric_time_rejected(self, frozen_clock):
        params = _callback()
        params["success_time"] = "yesterday"
        with pytest.raises(CallbackValidationError):
            KhqrPaymentProvider(_config()).validate_callback(params)
