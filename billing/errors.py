class PaymentError(Exception):
    """Base class for everything the reconciliation path can raise."""

    retryable = False


class Unauthenticated(PaymentError):
    """The notification failed its authenticity check and must not be applied."""


class Unparseable(PaymentError):
    """The notification body could not be turned into a canonical event."""


class UnknownPayment(PaymentError):
    """No payment attempt matches the provider reference."""

    def __init__(self, provider_reference: str):
        super().__init__(f"No payment attempt for reference {provider_reference}")
        self.provider_reference = provider_reference


class InvalidPaymentKind(PaymentError):
    pass


class StoreUnavailable(PaymentError):
    """A store call failed or timed out; the outcome is unknown and safe to retry."""

    retryable = True


class ProviderUnavailable(PaymentError):
    """The gateway API could not be reached while re-deriving an outcome."""

    retryable = True
