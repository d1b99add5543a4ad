from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String

from stkpay.db.base import Base


# Bump together with a migration script under scripts/ when the entitlement shape changes.
ENTITLEMENT_SCHEMA_VERSION = 1


class User(Base):
    """Entitlement view of a user; the account itself lives in the auth service."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    email = Column(String, unique=True, nullable=True)
    # Canonical entitlement field: FREE / GOLD / PLATINUM
    subscription = Column(String, nullable=False, default="FREE")
    subscription_updated_at = Column(DateTime(timezone=True), nullable=True)
    entitlement_version = Column(Integer, nullable=False, default=ENTITLEMENT_SCHEMA_VERSION)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
