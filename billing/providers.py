"""Gateway adapters.

Each adapter turns one gateway's notification format into a ``CanonicalEvent``
and proves the notification is authentic before anything in it is trusted.
Adapters also know how to ask their gateway for the current outcome of a
payment, which is what the client confirmation path relies on. Credentials are
handed in at construction time.
"""
import base64
import hashlib
import hmac
import ipaddress
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional
from urllib.parse import parse_qsl, unquote_plus

import httpx
import stripe

from billing import stripe_service
from billing.config import Settings
from billing.errors import (
    InvalidPaymentKind,
    ProviderUnavailable,
    Unauthenticated,
    Unparseable,
)
from billing.models import Provider
from billing.schemas import CanonicalEvent, PaymentOutcome, parse_purchase_item

logger = logging.getLogger(__name__)


def _lower_keys(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise Unparseable(f"Invalid amount {value!r}") from exc


def _load_json(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body or b"")
    except ValueError as exc:
        raise Unparseable("Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise Unparseable("Body is not a JSON object")
    return payload


def _item_from_metadata(metadata: Any):
    if not isinstance(metadata, dict) or not (metadata.get("payment_type") or metadata.get("kind")):
        return None
    try:
        return parse_purchase_item(metadata)
    except InvalidPaymentKind as exc:
        raise Unparseable(str(exc)) from exc


class ProviderAdapter:
    name = ""

    def __init__(self, timeout: float = 10.0, http_client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self._http = http_client

    def parse_notification(
        self, body: bytes, headers: Mapping[str, str], client_host: Optional[str] = None
    ) -> Optional[CanonicalEvent]:
        """Return the canonical event, or None for notifications without a terminal outcome."""
        raise NotImplementedError

    def fetch_event(self, provider_reference: str) -> Optional[CanonicalEvent]:
        raise NotImplementedError

    def acknowledgement(self) -> Dict[str, Any]:
        return {"ok": True}

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._http is not None:
                return self._http.request(method, url, timeout=self.timeout, **kwargs)
            with httpx.Client(timeout=self.timeout) as client:
                return client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"{self.name} API request failed") from exc


class YooKassaAdapter(ProviderAdapter):
    """JSON object notifications, trusted at the network level."""

    name = Provider.YOOKASSA.value
    API_URL = "https://api.yookassa.ru/v3"

    EVENT_OUTCOMES = {
        "payment.succeeded": PaymentOutcome.SUCCEEDED,
        "payment.canceled": PaymentOutcome.FAILED,
    }
    STATUS_OUTCOMES = {
        "succeeded": PaymentOutcome.SUCCEEDED,
        "canceled": PaymentOutcome.FAILED,
    }

    def __init__(
        self,
        shop_id: Optional[str],
        secret_key: Optional[str],
        trusted_networks: Iterable[str] = (),
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.trusted_networks = [ipaddress.ip_network(net, strict=False) for net in trusted_networks]

    def is_trusted(self, client_host: Optional[str]) -> bool:
        if not self.trusted_networks:
            return True
        if not client_host:
            return False
        try:
            address = ipaddress.ip_address(client_host)
        except ValueError:
            return False
        return any(address in network for network in self.trusted_networks)

    def parse_notification(self, body, headers, client_host=None):
        if not self.is_trusted(client_host):
            raise Unauthenticated(f"Notification from untrusted address {client_host}")

        payload = _load_json(body)
        obj = payload.get("object")
        if not isinstance(obj, dict) or not obj.get("id"):
            raise Unparseable("Notification has no payment object")

        outcome = self.EVENT_OUTCOMES.get(payload.get("event"))
        if outcome is None:
            logger.info(
                "Ignoring YooKassa event",
                extra={"event": payload.get("event"), "provider_reference": obj.get("id")},
            )
            return None
        return self._event(obj, outcome)

    def fetch_event(self, provider_reference):
        if not (self.shop_id and self.secret_key):
            raise ProviderUnavailable("YooKassa credentials not configured")

        response = self._send(
            "GET",
            f"{self.API_URL}/payments/{provider_reference}",
            auth=(self.shop_id, self.secret_key),
        )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderUnavailable(f"YooKassa responded {response.status_code}")

        obj = response.json()
        outcome = self.STATUS_OUTCOMES.get(obj.get("status"))
        if outcome is None:
            return None
        return self._event(obj, outcome)

    def acknowledgement(self):
        return {"message": "Webhook processed successfully"}

    def _event(self, obj: Dict[str, Any], outcome: PaymentOutcome) -> CanonicalEvent:
        amount = obj.get("amount") if isinstance(obj.get("amount"), dict) else {}
        details = {"yookassa_status": obj.get("status")}
        cancellation = obj.get("cancellation_details")
        if isinstance(cancellation, dict) and cancellation.get("reason"):
            details["cancellation_reason"] = cancellation["reason"]

        return CanonicalEvent(
            provider=self.name,
            provider_reference=str(obj["id"]),
            outcome=outcome,
            raw_provider_status=str(obj.get("status") or ""),
            amount=_decimal(amount.get("value")),
            currency=amount.get("currency"),
            authenticated=True,
            item=_item_from_metadata(obj.get("metadata")),
            details=details,
        )


class CloudPaymentsAdapter(ProviderAdapter):
    """Flat-field notifications signed with ``Content-HMAC``."""

    name = Provider.CLOUDPAYMENTS.value
    API_URL = "https://api.cloudpayments.ru"

    STATUS_OUTCOMES = {
        "Completed": PaymentOutcome.SUCCEEDED,
        "Authorized": PaymentOutcome.SUCCEEDED,
        "Declined": PaymentOutcome.FAILED,
        "Cancelled": PaymentOutcome.FAILED,
    }

    def __init__(self, public_id: Optional[str], api_secret: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.public_id = public_id
        self.api_secret = api_secret

    def sign(self, message: bytes) -> str:
        digest = hmac.new(self.api_secret.encode(), message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.api_secret:
            return False
        lowered = _lower_keys(headers)

        signature = lowered.get("content-hmac")
        if signature and hmac.compare_digest(signature.strip(), self.sign(body)):
            return True

        # X-Content-HMAC is computed over the URL-decoded body.
        decoded_signature = lowered.get("x-content-hmac")
        if decoded_signature:
            decoded = unquote_plus(body.decode("utf-8", errors="replace")).encode()
            return hmac.compare_digest(decoded_signature.strip(), self.sign(decoded))
        return False

    def parse_notification(self, body, headers, client_host=None):
        if not self.verify_signature(body, headers):
            raise Unauthenticated("CloudPayments signature verification failed")

        content_type = _lower_keys(headers).get("content-type", "")
        if "json" in content_type:
            fields = _load_json(body)
        else:
            try:
                fields = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
            except UnicodeDecodeError as exc:
                raise Unparseable("Body is not UTF-8 form data") from exc

        if not fields.get("InvoiceId"):
            logger.info(
                "CloudPayments notification without InvoiceId",
                extra={"transaction_id": fields.get("TransactionId")},
            )
            return None
        return self._event(fields)

    def fetch_event(self, provider_reference):
        if not (self.public_id and self.api_secret):
            raise ProviderUnavailable("CloudPayments credentials not configured")

        response = self._send(
            "POST",
            f"{self.API_URL}/payments/find",
            json={"InvoiceId": provider_reference},
            auth=(self.public_id, self.api_secret),
        )
        if response.status_code >= 400:
            raise ProviderUnavailable(f"CloudPayments responded {response.status_code}")

        payload = response.json()
        model = payload.get("Model")
        if not payload.get("Success") or not isinstance(model, dict):
            return None
        model.setdefault("InvoiceId", provider_reference)
        return self._event(model)

    def acknowledgement(self):
        return {"code": 0}

    def _event(self, fields: Dict[str, Any]) -> Optional[CanonicalEvent]:
        status = fields.get("Status")
        outcome = self.STATUS_OUTCOMES.get(status)
        if outcome is None:
            logger.info(
                "Ignoring CloudPayments status",
                extra={"status": status, "provider_reference": fields.get("InvoiceId")},
            )
            return None

        data = fields.get("Data")
        if isinstance(data, str) and data:
            try:
                data = json.loads(data)
            except ValueError:
                logger.warning(
                    "CloudPayments Data is not JSON",
                    extra={"provider_reference": fields.get("InvoiceId")},
                )
                data = None

        details = {
            "cloudpayments_transaction_id": fields.get("TransactionId"),
            "cloudpayments_status": status,
            "card_first_six": fields.get("CardFirstSix"),
            "card_last_four": fields.get("CardLastFour"),
            "card_type": fields.get("CardType"),
        }
        return CanonicalEvent(
            provider=self.name,
            provider_reference=str(fields["InvoiceId"]),
            outcome=outcome,
            raw_provider_status=str(status),
            amount=_decimal(fields.get("Amount")),
            currency=fields.get("Currency"),
            authenticated=True,
            item=_item_from_metadata(data),
            details={key: value for key, value in details.items() if value not in (None, "")},
        )


class StripeAdapter(ProviderAdapter):
    name = Provider.STRIPE.value

    EVENT_OUTCOMES = {
        "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
        "payment_intent.payment_failed": PaymentOutcome.FAILED,
        "payment_intent.canceled": PaymentOutcome.FAILED,
    }
    STATUS_OUTCOMES = {
        "succeeded": PaymentOutcome.SUCCEEDED,
        "canceled": PaymentOutcome.FAILED,
    }

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def parse_notification(self, body, headers, client_host=None):
        signature = _lower_keys(headers).get("stripe-signature")
        if not (self.webhook_secret and signature):
            raise Unauthenticated("Missing Stripe signature or webhook secret")

        try:
            event = stripe_service.construct_event(body, signature, self.webhook_secret)
        except ValueError as exc:
            raise Unparseable("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise Unauthenticated("Invalid signature") from exc

        outcome = self.EVENT_OUTCOMES.get(event["type"])
        if outcome is None:
            logger.info("Ignoring Stripe event", extra={"event": event["type"]})
            return None
        intent = stripe_service.as_dict(event["data"]["object"])
        return self._event(intent, outcome)

    def fetch_event(self, provider_reference):
        if not self.secret_key:
            raise ProviderUnavailable("Stripe credentials not configured")
        try:
            intent = stripe_service.retrieve_payment_intent(provider_reference, self.secret_key)
        except stripe.InvalidRequestError:
            return None
        except stripe.StripeError as exc:
            raise ProviderUnavailable("Stripe API request failed") from exc

        intent = stripe_service.as_dict(intent)
        outcome = self.STATUS_OUTCOMES.get(intent.get("status"))
        if outcome is None:
            return None
        return self._event(intent, outcome)

    def _event(self, intent: Dict[str, Any], outcome: PaymentOutcome) -> CanonicalEvent:
        if not intent.get("id"):
            raise Unparseable("Payment intent has no id")
        minor = intent.get("amount_received") or intent.get("amount")
        currency = intent.get("currency")
        return CanonicalEvent(
            provider=self.name,
            provider_reference=str(intent["id"]),
            outcome=outcome,
            raw_provider_status=str(intent.get("status") or ""),
            amount=Decimal(minor) / 100 if minor is not None else None,
            currency=currency.upper() if currency else None,
            authenticated=True,
            item=_item_from_metadata(stripe_service.as_dict(intent.get("metadata"))),
            details={"stripe_status": intent.get("status")},
        )


def build_adapters(
    settings: Settings, http_client: Optional[httpx.Client] = None
) -> Dict[str, ProviderAdapter]:
    common = {"timeout": settings.provider_timeout_seconds, "http_client": http_client}
    adapters = [
        YooKassaAdapter(
            settings.yookassa_shop_id,
            settings.yookassa_secret_key,
            settings.yookassa_trusted_networks,
            **common,
        ),
        CloudPaymentsAdapter(
            settings.cloudpayments_public_id, settings.cloudpayments_api_secret, **common
        ),
        StripeAdapter(settings.stripe_secret_key, settings.stripe_webhook_secret, **common),
    ]
    return {adapter.name: adapter for adapter in adapters}
