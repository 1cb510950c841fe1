import stripe


def construct_event(payload: bytes, signature: str, webhook_secret: str):
    return stripe.Webhook.construct_event(payload, signature, webhook_secret)


def retrieve_payment_intent(payment_intent_id: str, api_key: str):
    return stripe.PaymentIntent.retrieve(payment_intent_id, api_key=api_key)


def as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)
