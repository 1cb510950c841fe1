import enum
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from billing.errors import InvalidPaymentKind
from billing.models import PaymentAttempt


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SubscriptionItem(BaseModel):
    kind: Literal["subscription"] = "subscription"
    tier: Literal["basic", "premium"]


class CourseItem(BaseModel):
    kind: Literal["course"] = "course"
    course_id: str = Field(min_length=1)


PurchaseItem = Annotated[Union[SubscriptionItem, CourseItem], Field(discriminator="kind")]

_purchase_item = TypeAdapter(PurchaseItem)


def parse_purchase_item(raw: Dict[str, Any]) -> Union[SubscriptionItem, CourseItem]:
    """Parse provider metadata (``payment_type``/``tier``/``course_id``) into an item.

    Raises ``InvalidPaymentKind`` for unknown kinds or missing fields.
    """
    data = {
        "kind": raw.get("payment_type") or raw.get("kind"),
        "tier": raw.get("tier"),
        "course_id": raw.get("course_id"),
    }
    try:
        return _purchase_item.validate_python({k: v for k, v in data.items() if v is not None})
    except ValidationError as exc:
        raise InvalidPaymentKind(f"Invalid purchase metadata: {data['kind']!r}") from exc


def purchase_item_for(attempt: PaymentAttempt) -> Union[SubscriptionItem, CourseItem]:
    return parse_purchase_item(
        {"kind": attempt.kind, "tier": attempt.tier, "course_id": attempt.course_id}
    )


class CanonicalEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    provider_reference: str
    outcome: PaymentOutcome
    raw_provider_status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    authenticated: bool = False
    item: Optional[PurchaseItem] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ApplyResult(BaseModel):
    provider_reference: str
    status: str
    transitioned: bool = False
    granted: bool = False
    already_terminal: bool = False


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_reference: str = Field(alias="providerReference", min_length=1)


class ConfirmResponse(BaseModel):
    success: bool
    status: str


class PendingPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    provider_reference: str
    amount: Decimal
    currency: str
    kind: str
    tier: Optional[str] = None
    course_id: Optional[str] = None
    created_at: datetime


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tier: str
    start_date: datetime
    end_date: datetime
    is_active: bool


class EntitlementsOut(BaseModel):
    subscription: Optional[SubscriptionOut] = None
    course_ids: List[str] = Field(default_factory=list)
