"""
Callback simulator for local/test environments without a reachable callback URL.
Builds a synthetic successful Daraja callback for an aged PENDING intent; the
payload goes through the normal reconciler.
"""
import secrets
import string
from datetime import datetime, timedelta, timezone

from stkpay.models.payment_intent import IntentStatus, PaymentIntent
from stkpay.services.mpesa.utils import daraja_timestamp

_RECEIPT_ALPHABET = string.ascii_uppercase + string.digits


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CallbackSimulator:
    def __init__(self, after_seconds: int = 30) -> None:
        self.after = timedelta(seconds=after_seconds)

    def is_due(self, intent: PaymentIntent, now: datetime | None = None) -> bool:
        if intent.status != IntentStatus.PENDING.value or not intent.checkout_request_id:
            return False
        now = now or datetime.now(timezone.utc)
        return now - as_utc(intent.created_at) >= self.after

    def build_payload(self, intent: PaymentIntent) -> dict:
        receipt = "SIM" + "".join(secrets.choice(_RECEIPT_ALPHABET) for _ in range(7))
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": intent.merchant_request_id,
                    "CheckoutRequestID": intent.checkout_request_id,
                    "ResultCode": 0,
                    "ResultDesc": "The service request is processed successfully. (simulated)",
                    "CallbackMetadata": {
                        "Item": [
                            {"Name": "Amount", "Value": intent.amount},
                            {"Name": "MpesaReceiptNumber", "Value": receipt},
                            {"Name": "TransactionDate", "Value": int(daraja_timestamp())},
                            {"Name": "PhoneNumber", "Value": int(intent.payer_phone)},
                        ]
                    },
                }
            }
        }
