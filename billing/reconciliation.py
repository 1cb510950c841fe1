"""Applies canonical payment events to payment attempts and grants entitlements.

A payment moves ``pending -> succeeded`` or ``pending -> failed`` and never
leaves a terminal state. The move is a single conditional ``UPDATE ... WHERE
status = 'pending'``; whoever updates the row wins, everyone else sees a
terminal status and does nothing.

Granting is claimed separately with ``entitled_at`` inside the grant's own
transaction. A succeeded attempt with ``entitled_at IS NULL`` therefore means
the grant has not committed yet, and the next event for that reference (a
webhook retry or a client confirmation) finishes it.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing.entitlement_store import EntitlementStore
from billing.errors import InvalidPaymentKind, StoreUnavailable, Unauthenticated, UnknownPayment
from billing.models import PaymentAttempt, PaymentStatus, utcnow
from billing.payment_store import PaymentStore
from billing.schemas import (
    ApplyResult,
    CanonicalEvent,
    CourseItem,
    PaymentOutcome,
    PurchaseItem,
    SubscriptionItem,
    purchase_item_for,
)

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_PERIOD = timedelta(days=30)


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        subscription_period: timedelta = DEFAULT_SUBSCRIPTION_PERIOD,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.subscription_period = subscription_period
        self.clock = clock

    def apply(self, event: CanonicalEvent) -> ApplyResult:
        if not event.authenticated:
            logger.warning(
                "Refusing unauthenticated event",
                extra={"provider": event.provider, "provider_reference": event.provider_reference},
            )
            raise Unauthenticated("Event is not authenticated")

        db: Session = self.session_factory()
        try:
            return self._apply(db, event)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Store failure while applying event",
                extra={"provider_reference": event.provider_reference},
                exc_info=True,
            )
            raise StoreUnavailable("Payment store unavailable") from exc
        finally:
            db.close()

    def _apply(self, db: Session, event: CanonicalEvent) -> ApplyResult:
        payments = PaymentStore(db)
        attempt = payments.get_by_reference(event.provider_reference)
        if attempt is None:
            logger.warning(
                "Event for unknown payment",
                extra={"provider": event.provider, "provider_reference": event.provider_reference},
            )
            raise UnknownPayment(event.provider_reference)

        # Resolved before any transition: a succeeded attempt must always be grantable.
        try:
            item = purchase_item_for(attempt)
        except InvalidPaymentKind:
            logger.error(
                "Payment attempt has no grantable item",
                extra={"provider_reference": attempt.provider_reference, "kind": attempt.kind},
            )
            raise
        self._check_consistency(attempt, item, event)

        transitioned = False
        already_terminal = attempt.is_terminal
        if not already_terminal:
            target = (
                PaymentStatus.SUCCEEDED
                if event.outcome == PaymentOutcome.SUCCEEDED
                else PaymentStatus.FAILED
            )
            metadata = dict(attempt.extra or {})
            metadata.update(event.details)
            transitioned = payments.transition_if_pending(
                attempt.provider_reference, target, metadata=metadata, now=self.clock()
            )
            db.commit()
            db.refresh(attempt)
            if transitioned:
                logger.info(
                    "Payment transitioned",
                    extra={"provider_reference": attempt.provider_reference, "status": attempt.status},
                )
            else:
                already_terminal = True

        if already_terminal and attempt.status != event.outcome.value:
            logger.warning(
                "Ignoring event that contradicts terminal status",
                extra={
                    "provider_reference": attempt.provider_reference,
                    "status": attempt.status,
                    "event_outcome": event.outcome.value,
                },
            )

        granted = False
        if attempt.status == PaymentStatus.SUCCEEDED.value and attempt.entitled_at is None:
            granted = self._grant(db, attempt, item)

        return ApplyResult(
            provider_reference=attempt.provider_reference,
            status=attempt.status,
            transitioned=transitioned,
            granted=granted,
            already_terminal=already_terminal,
        )

    def _grant(self, db: Session, attempt: PaymentAttempt, item: PurchaseItem) -> bool:
        now = self.clock()
        payments = PaymentStore(db)
        entitlements = EntitlementStore(db)

        if not payments.claim_grant(attempt.id, now):
            db.rollback()
            return False

        if isinstance(item, SubscriptionItem):
            subscription = entitlements.grant_subscription(
                user_id=attempt.user_id,
                tier=item.tier,
                start=now,
                end=now + self.subscription_period,
            )
            payments.link_subscription(attempt.id, subscription.id)
            logger.info(
                "Subscription granted",
                extra={"user_id": attempt.user_id, "tier": item.tier, "end_date": str(subscription.end_date)},
            )
        elif isinstance(item, CourseItem):
            inserted = entitlements.grant_course(
                user_id=attempt.user_id,
                course_id=item.course_id,
                price_paid=attempt.amount,
                payment_attempt_id=attempt.id,
                now=now,
            )
            logger.info(
                "Course purchase granted" if inserted else "Course already owned",
                extra={"user_id": attempt.user_id, "course_id": item.course_id},
            )

        db.commit()
        return True

    def _check_consistency(
        self, attempt: PaymentAttempt, item: PurchaseItem, event: CanonicalEvent
    ) -> None:
        # Logged for monitoring only; never blocks the transition.
        mismatches = []
        if event.amount is not None and event.amount != attempt.amount:
            mismatches.append("amount")
        if event.currency and event.currency.upper() != (attempt.currency or "").upper():
            mismatches.append("currency")
        if event.item is not None and event.item != item:
            mismatches.append("item")
        if attempt.provider != event.provider:
            mismatches.append("provider")

        if mismatches:
            logger.warning(
                "Suspicious payment event",
                extra={
                    "provider_reference": attempt.provider_reference,
                    "mismatches": mismatches,
                    "stored_amount": str(attempt.amount),
                    "event_amount": str(event.amount),
                    "stored_currency": attempt.currency,
                    "event_currency": event.currency,
                },
            )
