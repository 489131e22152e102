"""Domain errors raised by the payment, video-access and security services.

Each carries the HTTP status and error code the API layer renders into the
standard `{"error": ..., "message": ...}` envelope.
"""
from __future__ import annotations


class ServiceError(Exception):
    status_code = 400
    error = "bad_request"
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ── Payments ─────────────────────────────────────────────────────────────────

class PaymentError(ServiceError):
    pass


class AlreadySubscribedError(PaymentError):
    status_code = 409
    error = "already_subscribed"
    default_message = "You already have an active subscription"


class PlanNotFoundError(PaymentError):
    status_code = 404
    error = "plan_not_found"
    default_message = "Subscription plan not found"


class AlreadyPurchasedError(PaymentError):
    status_code = 409
    error = "already_purchased"
    default_message = "You have already purchased this video"


class TransactionNotFoundError(PaymentError):
    status_code = 404
    error = "transaction_not_found"
    default_message = "Transaction not found"


class TransactionOwnershipError(PaymentError):
    status_code = 403
    error = "forbidden"
    default_message = "Transaction does not belong to this user"


class PaymentProviderError(PaymentError):
    status_code = 502
    error = "payment_provider_error"
    default_message = "Payment provider unavailable"


class WebhookSignatureError(PaymentError):
    status_code = 401
    error = "invalid_signature"
    default_message = "Invalid webhook signature"


class CallbackValidationError(PaymentError):
    status_code = 400
    error = "invalid_callback"
    default_message = "Invalid payment callback"


class AmountMismatchError(CallbackValidationError):
    error = "amount_mismatch"
    default_message = "Payment amount does not match the transaction"


# ── Catalog / entitlement ────────────────────────────────────────────────────

class MovieNotFoundError(ServiceError):
    status_code = 404
    error = "movie_not_found"
    default_message = "Movie not found"


class NotEntitledError(ServiceError):
    status_code = 403
    error = "not_entitled"
    default_message = "Video not purchased. Please purchase to watch."


# ── Video tokens ─────────────────────────────────────────────────────────────

class VideoTokenError(ServiceError):
    status_code = 403
    error = "invalid_token"
    default_message = "Invalid token"


class MalformedTokenError(VideoTokenError):
    pass


class TokenExpiredError(VideoTokenError):
    error = "token_expired"
    default_message = "Token expired"


class TokenSignatureError(VideoTokenError):
    error = "invalid_signature"
    default_message = "Invalid signature"


# ── Security ─────────────────────────────────────────────────────────────────

class UserBannedError(ServiceError):
    status_code = 403
    error = "user_banned"
    default_message = "Your account is temporarily suspended"

    def __init__(self, message: str | None = None, expires_at: int | None = None):
        super().__init__(message)
        self.expires_at = expires_at


class QuotaExceededError(ServiceError):
    status_code = 429
    error = "quota_exceeded"
    default_message = "Daily viewing limit reached"
