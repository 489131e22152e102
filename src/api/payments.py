"""Payments API: subscription checkout, provider confirmations, polling, admin/dev completion.

Every confirmation channel (webhook, redirect callback, poll, admin) goes
through PaymentService; no route touches transaction or entitlement state itself.
"""
from __future__ import annotations

import hmac
import logging
import time
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.auth import require_admin, require_user
from src.db.engine import get_session
from src.db.tables import UserRow
from src.payments.provider import MockPaymentProvider
from src.services.entitlements import get_current_subscription
from src.services.errors import ServiceError
from src.services.payments import PaymentService

logger = logging.getLogger(__name__)
router = APIRouter(tags=["payments"])


def get_payment_service(request: Request) -> PaymentService:
    """The service is built once at startup (see src.api.main)."""
    return request.app.state.payment_service


@router.post("/api/v1/payments/initiate", status_code=201)
async def initiate_payment(
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Start a monthly subscription payment."""
    return await service.initiate_subscription_payment(session, user.id)


@router.post("/api/v1/payments/webhook")
async def payment_webhook(
    request: Request,
    x_payment_signature: str = Header(""),
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Provider push notification. Signature is checked over the raw body."""
    body = await request.body()
    return await service.handle_webhook(session, body, x_payment_signature)


def _result_redirect(service: PaymentService, status: str, **params) -> RedirectResponse:
    query = urlencode({"status": status, **{k: v for k, v in params.items() if v is not None}})
    return RedirectResponse(f"{service.result_path}?{query}", status_code=302)


@router.get("/api/v1/payments/callback")
async def payment_callback(
    request: Request,
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Browser redirect back from the provider. Always answers with a redirect."""
    params = dict(request.query_params)
    try:
        result = await service.handle_callback(session, params)
    except ServiceError as e:
        logger.warning(f"Payment callback rejected ({e.error}) for ref {params.get('transaction_id')}")
        return _result_redirect(service, "error", message=e.message)

    if result.status == "completed":
        return _result_redirect(
            service,
            "success",
            type=result.purpose,
            paymentId=result.payment_id,
            movieId=result.movie_id,
        )
    if result.status == "pending":
        return _result_redirect(service, "pending", paymentId=result.payment_id)
    return _result_redirect(service, "error", message="Payment failed", paymentId=result.payment_id)


@router.post("/api/v1/payments/verify/{payment_ref}")
async def verify_payment(
    payment_ref: str,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Client poll: covers the case where neither webhook nor redirect arrives."""
    return await service.verify_payment(session, payment_ref, user.id)


@router.get("/api/v1/subscription/status")
async def subscription_status(
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    sub = await get_current_subscription(session, user.id)
    if sub is None:
        return {"isSubscribed": False, "subscription": None}
    return {
        "isSubscribed": sub.is_active(int(time.time())),
        "subscription": {
            "id": sub.id,
            "planId": sub.plan_id,
            "status": sub.status,
            "startDate": sub.start_date,
            "endDate": sub.end_date,
            "autoRenew": sub.auto_renew,
        },
    }


@router.post("/api/v1/admin/payments/{payment_ref}/confirm", dependencies=[Depends(require_admin)])
async def admin_confirm_payment(
    payment_ref: str,
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Manually confirm a payment the provider cannot (e.g. a direct KHQR transfer)."""
    return await service.confirm_manually(session, payment_ref)


@router.post("/api/v1/payments/mock/complete/{payment_ref}")
async def complete_mock_payment(
    payment_ref: str,
    user: Annotated[UserRow, Depends(require_user)],
    x_dev_secret: str = Header(""),
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Development only: mark a mock payment paid and reconcile it."""
    if settings.is_production or not isinstance(service.provider, MockPaymentProvider):
        raise HTTPException(404, "Not found")
    if not x_dev_secret or not hmac.compare_digest(x_dev_secret.encode(), settings.MOCK_PAYMENT_SECRET.encode()):
        raise HTTPException(403, "Invalid dev secret")
    return await service.complete_mock_payment(session, payment_ref, user.id)
