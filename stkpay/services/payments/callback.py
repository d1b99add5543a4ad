"""
Parsing of the Daraja STK callback body:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1}, ...]}}}}
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stkpay.services.mpesa.utils import parse_daraja_timestamp
from stkpay.services.payments.errors import CallbackPayloadError


@dataclass
class StkCallback:
    merchant_request_id: str | None
    checkout_request_id: str | None
    result_code: int | None  # None when Daraja sent no readable code
    result_desc: str | None
    amount: int | None = None
    phone: str | None = None
    receipt: str | None = None
    transaction_date: datetime | None = None
    raw_result_code: Any = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_result_code(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return None


def _metadata(cb: dict) -> dict[str, Any]:
    meta = cb.get("CallbackMetadata")
    items = meta.get("Item") if isinstance(meta, dict) else None
    if not isinstance(items, list):
        return {}
    out: dict[str, Any] = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            out[str(item["Name"])] = item.get("Value")
    return out


def _parse_amount(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def parse_stk_callback(payload: Any) -> StkCallback:
    """Raises CallbackPayloadError only when the body carries no correlation id."""
    if not isinstance(payload, dict):
        raise CallbackPayloadError("Callback body must be a JSON object")
    body = payload.get("Body")
    cb = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(cb, dict):
        raise CallbackPayloadError("Malformed callback (no Body.stkCallback)")

    merchant_id = _clean(cb.get("MerchantRequestID"))
    checkout_id = _clean(cb.get("CheckoutRequestID"))
    if not merchant_id and not checkout_id:
        raise CallbackPayloadError("Callback carries no correlation id")

    meta = _metadata(cb)
    return StkCallback(
        merchant_request_id=merchant_id,
        checkout_request_id=checkout_id,
        result_code=_parse_result_code(cb.get("ResultCode")),
        result_desc=_clean(cb.get("ResultDesc")),
        amount=_parse_amount(meta.get("Amount")),
        phone=_clean(meta.get("PhoneNumber")),
        receipt=_clean(meta.get("MpesaReceiptNumber")),
        transaction_date=parse_daraja_timestamp(meta.get("TransactionDate")),
        raw_result_code=cb.get("ResultCode"),
    )
