import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    text,
)

from billing.database import Base


def utcnow() -> datetime:
    # Naive UTC, identical on SQLite and PostgreSQL.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentKind(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    COURSE = "course"


class Provider(str, enum.Enum):
    YOOKASSA = "yookassa"
    CLOUDPAYMENTS = "cloudpayments"
    STRIPE = "stripe"


TERMINAL_STATUSES = (PaymentStatus.SUCCEEDED.value, PaymentStatus.FAILED.value)


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed')", name="ck_payment_attempts_status"
        ),
        CheckConstraint("kind IN ('subscription', 'course')", name="ck_payment_attempts_kind"),
        CheckConstraint(
            "(kind = 'subscription' AND tier IS NOT NULL) OR (kind = 'course' AND course_id IS NOT NULL)",
            name="ck_payment_attempts_target",
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    provider = Column(String, nullable=False)                   # yookassa | cloudpayments | stripe
    provider_reference = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    kind = Column(String, nullable=False)                       # subscription | course
    tier = Column(String)
    course_id = Column(String)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    # NULL on a succeeded attempt means the grant has not committed yet.
    entitled_at = Column(DateTime)
    subscription_id = Column(String, ForeignKey("user_subscriptions.id"))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_settled(self) -> bool:
        if self.status == PaymentStatus.FAILED.value:
            return True
        return self.status == PaymentStatus.SUCCEEDED.value and self.entitled_at is not None


class Subscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index(
            "uq_user_subscriptions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    tier = Column(String, nullable=False)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def is_current(self, now: datetime) -> bool:
        return bool(self.is_active) and self.end_date > now


class CoursePurchase(Base):
    __tablename__ = "course_purchases"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_course_purchases_user_course"),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    course_id = Column(String, nullable=False)
    price_paid = Column(Numeric(12, 2), nullable=False)
    purchased_at = Column(DateTime, nullable=False, default=utcnow)
    payment_attempt_id = Column(String, ForeignKey("payment_attempts.id"))
