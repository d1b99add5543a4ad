"""
Daraja helpers: MSISDN normalization, STK password and timestamps.
"""
import base64
import re
from datetime import datetime, timedelta, timezone

# Safaricom reports times in East Africa Time (UTC+3, no DST)
EAT = timezone(timedelta(hours=3), name="EAT")

MSISDN_RE = re.compile(r"^254(7|1)\d{8}$")
_NON_DIGITS = re.compile(r"\D+")
_LOCAL_RE = re.compile(r"^0[71]\d{8}$")
_SHORT_RE = re.compile(r"^[71]\d{8}$")
_TIMESTAMP_RE = re.compile(r"^\d{14}$")


def normalize_msisdn(raw: str | None) -> str:
    """Normalize Kenyan numbers to 2547XXXXXXXX / 2541XXXXXXXX (07…, 01…, +254…, 7…)."""
    digits = _NON_DIGITS.sub("", (raw or "").strip())
    if digits.startswith("254"):
        return digits[:12]
    if _LOCAL_RE.match(digits):
        return "254" + digits[1:]
    if _SHORT_RE.match(digits):
        return "254" + digits
    return digits[:12]


def is_valid_msisdn(msisdn: str) -> bool:
    return bool(MSISDN_RE.match(msisdn or ""))


def mask_msisdn(msisdn: str | None) -> str:
    """254712345678 -> 254712***678 (for logs)."""
    value = msisdn or ""
    if len(value) == 12 and value.isdigit():
        return f"{value[:6]}***{value[9:]}"
    return "***"


def daraja_timestamp(now: datetime | None = None) -> str:
    """YYYYMMDDHHmmss in East Africa Time, as Daraja expects."""
    moment = (now or datetime.now(timezone.utc)).astimezone(EAT)
    return moment.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(ShortCode + Passkey + Timestamp)"""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def parse_daraja_timestamp(value) -> datetime | None:
    """Parse a Daraja YYYYMMDDHHmmss value (EAT) into an aware UTC datetime."""
    text = str(value or "")
    if not _TIMESTAMP_RE.match(text):
        return None
    try:
        local = datetime.strptime(text, "%Y%m%d%H%M%S").replace(tzinfo=EAT)
    except ValueError:
        return None
    return local.astimezone(timezone.utc)


def transaction_type(mode: str) -> str:
    return "CustomerBuyGoodsOnline" if mode == "till" else "CustomerPayBillOnline"
