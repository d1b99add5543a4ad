from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class StkPushIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # amount/phone are validated by the initiator so bad values answer 400
    amount: Any = None
    phone: Any = None
    mode: str | None = None
    product_id: str | None = None
    account_ref: str | None = None
    description: str | None = None

    @field_validator("product_id", "account_ref", "description", "mode", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class UpgradeIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tier: str | None = None  # GOLD | PLATINUM, anything else clamps to GOLD
    phone: Any = None
    mode: str | None = None


class InitiateOut(BaseModel):
    ok: bool = True
    intent_id: str
    message: str
    checkout_request_id: str
    merchant_request_id: str | None = None
    amount: int
    account_ref: str
    mode: str


class StatusOut(BaseModel):
    ok: bool = True
    intent_id: str
    status: str
    message: str
    amount: int
    account_ref: str | None = None
    mpesa_receipt: str | None = None
