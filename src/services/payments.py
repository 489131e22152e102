"""Payment reconciliation: the only code path that turns a provider confirmation
into entitlement.

Confirmations arrive through four independent channels (webhook, redirect
callback, client poll, admin) in any order, any number of times, possibly
concurrently. All of them funnel into `PaymentService.confirm_payment`, which:

  1. serializes per payment reference (in-process asyncio lock)
  2. moves the transaction out of `pending` with a compare-and-swap UPDATE
     (`... WHERE status = 'pending'`); only the caller whose UPDATE hit exactly
     one row applies side effects
  3. applies the side effect inside a per-user critical section that re-reads
     the user's current subscription / purchase state before writing

so each completed payment yields exactly one subscription extension or one
video-purchase row.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.payment_tables import PaymentTransactionRow, UserSubscriptionRow, VideoPurchaseRow
from src.db.tables import MovieRow, SavedMovieRow, SubscriptionPlanRow
from src.models.payment import ConfirmationSource, PaymentPurpose, PaymentStatus, SubscriptionStatus
from src.payments.provider import MockPaymentProvider, PaymentProvider, PaymentVerification
from src.services.entitlements import (
    get_current_subscription,
    has_user_purchased_video,
    is_user_subscribed,
)
from src.services.errors import (
    AlreadyPurchasedError,
    AlreadySubscribedError,
    AmountMismatchError,
    CallbackValidationError,
    MovieNotFoundError,
    PaymentError,
    PaymentProviderError,
    PlanNotFoundError,
    TransactionNotFoundError,
    TransactionOwnershipError,
)
from src.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

SUBSCRIPTION_PLAN_NAME = "monthly"
SUBSCRIPTION_PERIOD_DAYS = 30
DEFAULT_VIDEO_PRICE = 1.00
VIDEO_CURRENCY = "USD"
AMOUNT_TOLERANCE = 0.01


def _now() -> int:
    return int(time.time())


def amounts_match(expected: float, actual: float) -> bool:
    return abs(float(expected) - float(actual)) <= AMOUNT_TOLERANCE + 1e-9


@dataclass
class ConfirmationResult:
    status: str
    payment_id: str
    purpose: str
    applied: bool  # True only for the call that moved the transaction out of pending
    movie_id: Optional[str] = None


class PaymentService:
    def __init__(
        self,
        provider: PaymentProvider,
        base_url: str,
        result_path: str = "/payments/result",
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.result_path = result_path
        self._payment_locks = KeyedLocks()
        self._user_locks = KeyedLocks()

    @property
    def callback_url(self) -> str:
        return f"{self.base_url}/api/v1/payments/callback"

    # ── Initiation ───────────────────────────────────────────────────────────

    async def initiate_subscription_payment(self, session: AsyncSession, user_id: str) -> dict:
        if await is_user_subscribed(session, user_id):
            raise AlreadySubscribedError()

        result = await session.execute(
            select(SubscriptionPlanRow).where(
                SubscriptionPlanRow.name == SUBSCRIPTION_PLAN_NAME,
                SubscriptionPlanRow.is_active.is_(True),
            )
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            logger.error(f"No active '{SUBSCRIPTION_PLAN_NAME}' plan configured")
            raise PlanNotFoundError()

        tx = PaymentTransactionRow(
            user_id=user_id,
            purpose=PaymentPurpose.SUBSCRIPTION.value,
            plan_id=plan.id,
            amount=plan.price,
            currency=plan.currency,
        )
        return await self._start(session, tx)

    async def initiate_video_purchase(self, session: AsyncSession, user_id: str, movie_id: str) -> dict:
        movie = await session.get(MovieRow, movie_id)
        if movie is None:
            raise MovieNotFoundError()
        if movie.is_free:
            raise PaymentError("This movie is free to watch")
        if await has_user_purchased_video(session, user_id, movie_id):
            raise AlreadyPurchasedError()

        tx = PaymentTransactionRow(
            user_id=user_id,
            purpose=PaymentPurpose.VIDEO_PURCHASE.value,
            movie_id=movie.id,
            amount=movie.price if movie.price is not None else DEFAULT_VIDEO_PRICE,
            currency=VIDEO_CURRENCY,
        )
        out = await self._start(session, tx)
        out.update({"movieId": movie.id, "movieTitle": movie.title})
        return out

    async def _start(self, session: AsyncSession, tx: PaymentTransactionRow) -> dict:
        """Persist a pending transaction under a local ref, then swap in the provider's ref."""
        tx.transaction_ref = secrets.token_hex(16)
        tx.status = PaymentStatus.PENDING.value
        tx.payment_method = self.provider.payment_method
        tx.created_at = _now()
        session.add(tx)
        await session.commit()

        try:
            initiation = await self.provider.initiate_payment(
                user_id=tx.user_id,
                plan_id=tx.plan_id,
                amount=tx.amount,
                currency=tx.currency,
                callback_url=self.callback_url,
            )
        except Exception as e:
            logger.exception(f"Provider initiation failed for transaction {tx.id}")
            tx.status = PaymentStatus.FAILED.value
            tx.completed_at = _now()
            await session.commit()
            raise PaymentProviderError() from e

        tx.transaction_ref = initiation.payment_ref
        await session.commit()
        logger.info(
            f"Payment initiated: tx={tx.id} ref={tx.transaction_ref} "
            f"purpose={tx.purpose} user={tx.user_id} amount={tx.amount} {tx.currency}"
        )

        return {
            "paymentId": tx.id,
            "paymentRef": tx.transaction_ref,
            "checkoutUrl": initiation.checkout_url,
            "khqrString": initiation.khqr_string,
            "amount": tx.amount,
            "currency": tx.currency,
            "expiresAt": initiation.expires_at,
        }

    # ── Lookup ───────────────────────────────────────────────────────────────

    async def find_transaction(self, session: AsyncSession, payment_ref: str) -> Optional[PaymentTransactionRow]:
        """Resolve by provider ref, falling back to the local transaction id."""
        for column in (PaymentTransactionRow.transaction_ref, PaymentTransactionRow.id):
            result = await session.execute(
                select(PaymentTransactionRow)
                .where(column == payment_ref)
                .execution_options(populate_existing=True)
            )
            tx = result.scalar_one_or_none()
            if tx is not None:
                return tx
        return None

    async def _owned_transaction(self, session: AsyncSession, payment_ref: str, user_id: str) -> PaymentTransactionRow:
        tx = await self.find_transaction(session, payment_ref)
        if tx is None:
            raise TransactionNotFoundError()
        if tx.user_id != user_id:
            logger.warning(f"User {user_id} tried to access transaction {tx.id} owned by {tx.user_id}")
            raise TransactionOwnershipError()
        return tx

    # ── Confirmation (idempotency gate) ──────────────────────────────────────

    async def confirm_payment(
        self,
        session: AsyncSession,
        payment_ref: str,
        outcome: PaymentStatus,
        source: ConfirmationSource,
        completed_at: Optional[int] = None,
        provider_txn_id: Optional[str] = None,
    ) -> ConfirmationResult:
        """Apply a provider outcome to a transaction at most once.

        Terminal transactions and `pending` outcomes are no-ops that report the
        stored status. Raises TransactionNotFoundError when the ref resolves to
        nothing, which means provider and local state disagree.
        """
        async with self._payment_locks.hold(payment_ref):
            tx = await self.find_transaction(session, payment_ref)
            if tx is None:
                logger.error(f"Confirmation via {source.value} for unknown payment ref {payment_ref}")
                raise TransactionNotFoundError()

            if tx.status != PaymentStatus.PENDING.value or outcome is PaymentStatus.PENDING:
                return self._result(tx, applied=False)

            if outcome is PaymentStatus.COMPLETED:
                new_status = PaymentStatus.COMPLETED
            elif outcome is PaymentStatus.REFUNDED:
                new_status = PaymentStatus.REFUNDED
            else:
                new_status = PaymentStatus.FAILED

            values = {
                "status": new_status.value,
                "confirmation_source": source.value,
                "completed_at": completed_at or _now(),
            }
            if provider_txn_id:
                values["provider_txn_id"] = provider_txn_id

            cas = await session.execute(
                update(PaymentTransactionRow)
                .where(
                    PaymentTransactionRow.id == tx.id,
                    PaymentTransactionRow.status == PaymentStatus.PENDING.value,
                )
                .values(**values)
            )
            if cas.rowcount != 1:
                # Another worker won the race
                await session.rollback()
                tx = await self.find_transaction(session, payment_ref)
                return self._result(tx, applied=False)

            if new_status is PaymentStatus.COMPLETED:
                async with self._user_locks.hold(tx.user_id):
                    if tx.purpose == PaymentPurpose.VIDEO_PURCHASE.value:
                        await self._record_video_purchase(session, tx)
                    else:
                        await self._activate_subscription(session, tx)
                    await session.commit()
            else:
                await session.commit()

            logger.info(f"Payment {tx.id} ({tx.transaction_ref}) -> {new_status.value} via {source.value}")
            return self._result(tx, applied=True)

    @staticmethod
    def _result(tx: PaymentTransactionRow, applied: bool) -> ConfirmationResult:
        return ConfirmationResult(
            status=tx.status,
            payment_id=tx.id,
            purpose=tx.purpose,
            applied=applied,
            movie_id=tx.movie_id,
        )

    async def _activate_subscription(self, session: AsyncSession, tx: PaymentTransactionRow) -> None:
        now = _now()
        current = await get_current_subscription(session, tx.user_id, for_update=True)
        if current is not None and current.is_active(now):
            logger.info(f"Subscription {current.id} already active for user {tx.user_id}; not extending")
            return

        days = SUBSCRIPTION_PERIOD_DAYS
        if tx.plan_id:
            plan = await session.get(SubscriptionPlanRow, tx.plan_id)
            if plan is not None and plan.duration_days:
                days = plan.duration_days
        period = days * 86400

        if current is not None:
            current.end_date = max(current.end_date or now, now) + period
            current.status = SubscriptionStatus.ACTIVE.value
            current.plan_id = tx.plan_id or current.plan_id
            logger.info(f"Renewed subscription {current.id} for user {tx.user_id} until {current.end_date}")
        else:
            sub = UserSubscriptionRow(
                user_id=tx.user_id,
                plan_id=tx.plan_id,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=now,
                end_date=now + period,
                auto_renew=False,
            )
            session.add(sub)
            logger.info(f"Activated subscription for user {tx.user_id} until {sub.end_date}")

    async def _record_video_purchase(self, session: AsyncSession, tx: PaymentTransactionRow) -> None:
        if tx.movie_id is None:
            logger.error(f"Video purchase transaction {tx.id} has no movie")
            return

        if await has_user_purchased_video(session, tx.user_id, tx.movie_id):
            logger.info(f"User {tx.user_id} already owns movie {tx.movie_id}; skipping duplicate purchase")
        else:
            session.add(VideoPurchaseRow(
                user_id=tx.user_id,
                movie_id=tx.movie_id,
                amount=tx.amount,
                currency=tx.currency,
                transaction_ref=tx.transaction_ref,
                purchased_at=_now(),
            ))
            logger.info(f"Recorded purchase of movie {tx.movie_id} by user {tx.user_id}")

        saved = await session.execute(
            select(SavedMovieRow.id).where(
                SavedMovieRow.user_id == tx.user_id,
                SavedMovieRow.movie_id == tx.movie_id,
            )
        )
        if saved.scalar_one_or_none() is None:
            session.add(SavedMovieRow(user_id=tx.user_id, movie_id=tx.movie_id, added_at=_now()))

    # ── Confirmation channels ────────────────────────────────────────────────

    def _check_reported_amount(self, tx: PaymentTransactionRow, verification: PaymentVerification) -> None:
        # Providers that omit the amount report 0
        if verification.amount and not amounts_match(tx.amount, verification.amount):
            logger.error(
                f"Amount mismatch on {tx.transaction_ref}: expected {tx.amount}, "
                f"provider reported {verification.amount}"
            )
            raise AmountMismatchError()

    async def verify_payment(self, session: AsyncSession, payment_ref: str, user_id: str) -> dict:
        """Client poll: ask the provider, then reconcile."""
        tx = await self._owned_transaction(session, payment_ref, user_id)
        if tx.status != PaymentStatus.PENDING.value:
            return {"status": tx.status, "paymentId": tx.id}

        verification = await self.provider.verify_payment(tx.transaction_ref)
        if verification.status is PaymentStatus.COMPLETED:
            self._check_reported_amount(tx, verification)

        result = await self.confirm_payment(
            session,
            tx.transaction_ref,
            verification.status,
            ConfirmationSource.POLL,
            completed_at=verification.paid_at,
            provider_txn_id=verification.transaction_id,
        )
        return {"status": result.status, "paymentId": result.payment_id}

    async def verify_video_purchase(
        self, session: AsyncSession, user_id: str, movie_id: str, payment_ref: str,
    ) -> dict:
        if await has_user_purchased_video(session, user_id, movie_id):
            return {"isPurchased": True, "status": PaymentStatus.COMPLETED.value}

        tx = await self._owned_transaction(session, payment_ref, user_id)
        if tx.movie_id != movie_id:
            raise PaymentError("Payment does not belong to this movie")

        polled = await self.verify_payment(session, payment_ref, user_id)
        purchased = await has_user_purchased_video(session, user_id, movie_id)
        return {"isPurchased": purchased, "status": polled["status"]}

    async def handle_webhook(self, session: AsyncSession, body: bytes, signature: str) -> dict:
        verification = self.provider.parse_webhook(body, signature)

        tx = await self.find_transaction(session, verification.payment_ref)
        if tx is None:
            logger.error(f"Webhook for unknown payment ref {verification.payment_ref}")
            raise TransactionNotFoundError()
        if verification.status is PaymentStatus.COMPLETED:
            self._check_reported_amount(tx, verification)

        result = await self.confirm_payment(
            session,
            tx.transaction_ref,
            verification.status,
            ConfirmationSource.WEBHOOK,
            completed_at=verification.paid_at,
            provider_txn_id=verification.transaction_id,
        )
        return {"status": result.status}

    async def handle_callback(self, session: AsyncSession, params: Mapping[str, str]) -> ConfirmationResult:
        """Signed browser redirect from the provider's hosted page."""
        callback = self.provider.validate_callback(params)

        tx = await self.find_transaction(session, callback.payment_ref)
        if tx is None:
            logger.error(f"Callback for unknown payment ref {callback.payment_ref}")
            raise TransactionNotFoundError()

        if not amounts_match(tx.amount, callback.success_amount):
            logger.error(
                f"Callback amount mismatch on {tx.transaction_ref}: "
                f"expected {tx.amount}, got {callback.success_amount}"
            )
            raise AmountMismatchError()

        # Second opinion from the provider; pending/unknown is not a veto
        verification = await self.provider.verify_payment(tx.transaction_ref)
        if verification.status is PaymentStatus.FAILED:
            logger.warning(f"Provider reports {tx.transaction_ref} failed despite a valid callback")
            raise CallbackValidationError("Payment was not successful")
        if verification.status is PaymentStatus.COMPLETED:
            self._check_reported_amount(tx, verification)

        return await self.confirm_payment(
            session,
            tx.transaction_ref,
            PaymentStatus.COMPLETED,
            ConfirmationSource.CALLBACK,
            completed_at=callback.success_time,
            provider_txn_id=callback.bakong_hash,
        )

    async def confirm_manually(self, session: AsyncSession, payment_ref: str) -> dict:
        """Admin path for payments the provider cannot confirm (e.g. direct KHQR transfer)."""
        result = await self.confirm_payment(session, payment_ref, PaymentStatus.COMPLETED, ConfirmationSource.ADMIN)
        logger.info(f"Admin confirmation for {payment_ref}: status={result.status} applied={result.applied}")
        return {"status": result.status, "paymentId": result.payment_id, "applied": result.applied}

    async def complete_mock_payment(self, session: AsyncSession, payment_ref: str, user_id: str) -> dict:
        if not isinstance(self.provider, MockPaymentProvider):
            raise PaymentProviderError("Mock completion requires the mock provider")
        tx = await self._owned_transaction(session, payment_ref, user_id)
        self.provider.simulate_success(tx.transaction_ref)
        return await self.verify_payment(session, tx.transaction_ref, user_id)
