import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.models import CoursePurchase, Subscription, utcnow

logger = logging.getLogger(__name__)


class EntitlementStore:
    """Subscriptions and course purchases. The reconciliation engine is the only writer."""

    def __init__(self, db: Session):
        self.db = db

    def get_active_subscription(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        # Expiry is checked at read time, nothing sweeps old rows.
        current = now or utcnow()
        return self.db.scalar(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.is_active.is_(True),
                Subscription.end_date > current,
            )
        )

    def _active_row(self, user_id: str) -> Optional[Subscription]:
        return self.db.scalar(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.is_active.is_(True),
            )
        )

    def grant_subscription(
        self, *, user_id: str, tier: str, start: datetime, end: datetime
    ) -> Subscription:
        """Extend/replace the user's active subscription or create one."""
        existing = self._active_row(user_id)
        if existing is None:
            subscription = Subscription(
                user_id=user_id, tier=tier, start_date=start, end_date=end, is_active=True
            )
            try:
                with self.db.begin_nested():
                    self.db.add(subscription)
                return subscription
            except IntegrityError:
                # Another payment for this user inserted the active row first.
                logger.info("Active subscription appeared concurrently", extra={"user_id": user_id})
                existing = self._active_row(user_id)
                if existing is None:
                    raise

        existing.tier = tier
        existing.end_date = end
        existing.updated_at = start
        self.db.flush()
        return existing

    def has_course(self, user_id: str, course_id: str) -> bool:
        return (
            self.db.scalar(
                select(CoursePurchase.id).where(
                    CoursePurchase.user_id == user_id,
                    CoursePurchase.course_id == course_id,
                )
            )
            is not None
        )

    def grant_course(
        self,
        *,
        user_id: str,
        course_id: str,
        price_paid: Decimal,
        payment_attempt_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Insert a course purchase. Returns False when it already existed."""
        if self.has_course(user_id, course_id):
            return False

        purchase = CoursePurchase(
            user_id=user_id,
            course_id=course_id,
            price_paid=price_paid,
            purchased_at=now or utcnow(),
            payment_attempt_id=payment_attempt_id,
        )
        try:
            with self.db.begin_nested():
                self.db.add(purchase)
        except IntegrityError:
            logger.info(
                "Course purchase already granted",
                extra={"user_id": user_id, "course_id": course_id},
            )
            return False
        return True

    def course_ids(self, user_id: str) -> List[str]:
        return list(
            self.db.scalars(
                select(CoursePurchase.course_id)
                .where(CoursePurchase.user_id == user_id)
                .order_by(CoursePurchase.purchased_at)
            )
        )
