class PaymentError(Exception):
    """Base class for payment intent errors."""


class PaymentValidationError(PaymentError):
    """Bad amount, phone or request shape; nothing was written."""


class GatewayError(PaymentError):
    """The charge request failed or was rejected; the intent is FAILED."""

    def __init__(self, message: str, intent_id: str | None = None) -> None:
        super().__init__(message)
        self.intent_id = intent_id


class IntentNotFoundError(PaymentError):
    pass


class CallbackPayloadError(PaymentError):
    """Callback body cannot be processed at all (no stkCallback, no ids, no ResultCode)."""
