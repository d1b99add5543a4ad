"""
PaymentIntent: one attempted M-Pesa STK push charge, from creation to terminal state.
checkout_request_id is unique and is the dedup key between the initiate flow and
the gateway callback.
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from stkpay.db.base import Base


class IntentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not IntentStatus.PENDING


TERMINAL_STATUSES = (IntentStatus.PAID.value, IntentStatus.FAILED.value)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        Index("ix_payment_intents_status_created_at", "status", "created_at"),
        Index("ix_payment_intents_user_id_created_at", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    status = Column(String, nullable=False, default=IntentStatus.PENDING.value)  # PENDING / PAID / FAILED
    method = Column(String, nullable=False, default="MPESA")
    currency = Column(String, nullable=False, default="KES")
    mode = Column(String, nullable=False, default="paybill")  # paybill / till
    amount = Column(Integer, nullable=False)
    payer_phone = Column(String(15), nullable=False)
    account_ref = Column(String(12), nullable=True, index=True)  # carries the target tier for upgrades
    description = Column(String(32), nullable=True)

    merchant_request_id = Column(String, nullable=True, index=True)
    checkout_request_id = Column(String, nullable=True, unique=True)

    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    product_id = Column(String, nullable=True, index=True)

    # Written once by the callback reconciler
    payer_phone_confirmed = Column(String(15), nullable=True)
    mpesa_receipt = Column(String, nullable=True, unique=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(Text, nullable=True)
    raw_callback = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    transaction_date = Column(DateTime(timezone=True), nullable=True)

    entitlement_granted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    paid_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
