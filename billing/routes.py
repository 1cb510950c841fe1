import logging
from datetime import timedelta
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from billing.auth import verify_token
from billing.config import get_settings
from billing.database import SessionLocal
from billing.entitlement_store import EntitlementStore
from billing.errors import PaymentError, StoreUnavailable, Unauthenticated, UnknownPayment
from billing.models import PaymentStatus, Provider
from billing.payment_store import PaymentStore
from billing.providers import ProviderAdapter, build_adapters
from billing.reconciliation import ReconciliationEngine
from billing.schemas import (
    CanonicalEvent,
    ConfirmRequest,
    ConfirmResponse,
    EntitlementsOut,
    PaymentOutcome,
    PendingPaymentOut,
    SubscriptionOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()

CONFIRM_FAILED = "Could not confirm payment, please retry"


def get_adapters() -> Dict[str, ProviderAdapter]:
    return build_adapters(get_settings())


def get_engine() -> ReconciliationEngine:
    period = timedelta(days=get_settings().subscription_period_days)
    return ReconciliationEngine(SessionLocal, subscription_period=period)


def _handle_notification(
    adapter: ProviderAdapter, engine: ReconciliationEngine, body: bytes, headers, client_host
):
    try:
        event = adapter.parse_notification(body, headers, client_host)
    except Unauthenticated:
        logger.warning(
            "Dropping unauthenticated notification",
            extra={"provider": adapter.name, "client_host": client_host},
        )
        raise

    if event is None:
        return adapter.acknowledgement()

    try:
        result = engine.apply(event)
    except UnknownPayment:
        # Acknowledge so the provider stops retrying; logged by the engine.
        return adapter.acknowledgement()

    logger.info(
        "Notification applied",
        extra={
            "provider": adapter.name,
            "provider_reference": result.provider_reference,
            "status": result.status,
            "transitioned": result.transitioned,
            "granted": result.granted,
        },
    )
    return adapter.acknowledgement()


async def _receive(provider: Provider, request: Request, adapters, engine):
    body = await request.body()
    client_host = request.client.host if request.client else None
    return await run_in_threadpool(
        _handle_notification, adapters[provider.value], engine, body, request.headers, client_host
    )


@router.post("/webhooks/yookassa")
async def yookassa_webhook(
    request: Request,
    adapters: Dict[str, ProviderAdapter] = Depends(get_adapters),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return await _receive(Provider.YOOKASSA, request, adapters, engine)


@router.post("/webhooks/cloudpayments")
async def cloudpayments_webhook(
    request: Request,
    adapters: Dict[str, ProviderAdapter] = Depends(get_adapters),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return await _receive(Provider.CLOUDPAYMENTS, request, adapters, engine)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    adapters: Dict[str, ProviderAdapter] = Depends(get_adapters),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return await _receive(Provider.STRIPE, request, adapters, engine)


@router.post("/payments/confirm", response_model=ConfirmResponse)
def confirm_payment(
    request: ConfirmRequest,
    user_id: str = Depends(verify_token),
    adapters: Dict[str, ProviderAdapter] = Depends(get_adapters),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Re-check a payment after the embedded checkout reported success.

    The client only triggers a re-check: the outcome comes from the gateway,
    or from the stored status when only the grant is missing, and goes
    through the same ``apply`` path as webhooks.
    """
    db = SessionLocal()
    try:
        attempt = PaymentStore(db).get_for_user(request.provider_reference, user_id)
        if attempt is None:
            raise HTTPException(status_code=404, detail="Payment not found")
        provider, status, settled = attempt.provider, attempt.status, attempt.is_settled
    except SQLAlchemyError:
        logger.error("Store failure while confirming payment", exc_info=True)
        raise HTTPException(status_code=503, detail=CONFIRM_FAILED)
    finally:
        db.close()

    if settled:
        return ConfirmResponse(success=status == "succeeded", status=status)

    try:
        if status == PaymentStatus.SUCCEEDED.value:
            # Outcome already stored, only the grant is missing: no gateway round trip.
            event = CanonicalEvent(
                provider=provider,
                provider_reference=request.provider_reference,
                outcome=PaymentOutcome.SUCCEEDED,
                raw_provider_status=status,
                authenticated=True,
            )
        else:
            event = adapters[provider].fetch_event(request.provider_reference)
            if event is None:
                return ConfirmResponse(success=False, status=status)
        result = engine.apply(event)
    except (KeyError, PaymentError):
        logger.error(
            "Could not confirm payment",
            extra={"provider": provider, "provider_reference": request.provider_reference},
            exc_info=True,
        )
        raise HTTPException(status_code=503, detail=CONFIRM_FAILED)

    return ConfirmResponse(success=result.status == "succeeded", status=result.status)


@router.get("/entitlements", response_model=EntitlementsOut)
def list_entitlements(user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        store = EntitlementStore(db)
        subscription = store.get_active_subscription(user_id)
        return EntitlementsOut(
            subscription=SubscriptionOut.model_validate(subscription) if subscription else None,
            course_ids=store.course_ids(user_id),
        )
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Entitlement store unavailable") from exc
    finally:
        db.close()


@router.get("/payments/pending", response_model=List[PendingPaymentOut])
def list_pending_payments(user_id: str = Depends(verify_token)):
    """The caller's attempts still waiting for an outcome, newest first."""
    db = SessionLocal()
    try:
        return [PendingPaymentOut.model_validate(a) for a in PaymentStore(db).list_pending(user_id)]
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Payment store unavailable") from exc
    finally:
        db.close()
