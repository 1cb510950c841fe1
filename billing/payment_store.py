from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing.models import PaymentAttempt, PaymentStatus, utcnow
from billing.schemas import parse_purchase_item


class PaymentStore:
    """Durable record of payment attempts.

    Status changes only ever go through conditional updates, so two callers on
    different processes racing on one reference cannot both win.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        *,
        provider: str,
        provider_reference: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        kind: str,
        tier: Optional[str] = None,
        course_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentAttempt:
        # Contract for checkout initiation: the row exists before the gateway can report.
        # An item the engine could not grant is refused here, before any money moves.
        parse_purchase_item({"kind": kind, "tier": tier, "course_id": course_id})
        attempt = PaymentAttempt(
            provider=provider,
            provider_reference=provider_reference,
            user_id=user_id,
            amount=amount,
            currency=currency.upper(),
            kind=kind,
            tier=tier,
            course_id=course_id,
            status=PaymentStatus.PENDING.value,
            extra=dict(metadata or {}),
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def get_by_reference(self, provider_reference: str) -> Optional[PaymentAttempt]:
        return self.db.scalar(
            select(PaymentAttempt).where(PaymentAttempt.provider_reference == provider_reference)
        )

    def get_for_user(self, provider_reference: str, user_id: str) -> Optional[PaymentAttempt]:
        return self.db.scalar(
            select(PaymentAttempt).where(
                PaymentAttempt.provider_reference == provider_reference,
                PaymentAttempt.user_id == user_id,
            )
        )

    def list_pending(self, user_id: str) -> List[PaymentAttempt]:
        return list(
            self.db.scalars(
                select(PaymentAttempt)
                .where(
                    PaymentAttempt.user_id == user_id,
                    PaymentAttempt.status == PaymentStatus.PENDING.value,
                )
                .order_by(PaymentAttempt.created_at.desc())
            )
        )

    def transition_if_pending(
        self,
        provider_reference: str,
        status: PaymentStatus,
        *,
        metadata: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """Move a pending attempt to a terminal status. True only for the winner."""
        result = self.db.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.provider_reference == provider_reference,
                PaymentAttempt.status == PaymentStatus.PENDING.value,
            )
            .values(status=status.value, completed_at=now or utcnow(), extra=metadata)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def claim_grant(self, attempt_id: str, now: Optional[datetime] = None) -> bool:
        """Mark a succeeded attempt as entitled. True only for the single claimer."""
        result = self.db.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.status == PaymentStatus.SUCCEEDED.value,
                PaymentAttempt.entitled_at.is_(None),
            )
            .values(entitled_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def link_subscription(self, attempt_id: str, subscription_id: str) -> None:
        self.db.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .values(subscription_id=subscription_id)
            .execution_options(synchronize_session=False)
        )
