"""
IntentStore: the only place that writes payment_intents.

Every state-changing method is a single conditional statement followed by a
commit, so two request handlers touching the same intent resolve through the
database (unique checkout_request_id, WHERE status='PENDING') and never through
in-process locks.
"""
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stkpay.models.payment_intent import IntentStatus, PaymentIntent

logger = logging.getLogger(__name__)

RESULT_DESC_MAX = 200


def _dialect_insert(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect_name}")
    return insert


class IntentStore:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, intent_id: str) -> PaymentIntent | None:
        return self.db.query(PaymentIntent).filter(PaymentIntent.id == intent_id).one_or_none()

    def find_by_checkout_id(self, checkout_request_id: str) -> PaymentIntent | None:
        return (
            self.db.query(PaymentIntent)
            .filter(PaymentIntent.checkout_request_id == checkout_request_id)
            .one_or_none()
        )

    def find_by_correlation(
        self, checkout_request_id: str | None, merchant_request_id: str | None
    ) -> PaymentIntent | None:
        """Checkout id first (unique), then merchant id."""
        if checkout_request_id:
            intent = self.find_by_checkout_id(checkout_request_id)
            if intent:
                return intent
        if merchant_request_id:
            return (
                self.db.query(PaymentIntent)
                .filter(PaymentIntent.merchant_request_id == merchant_request_id)
                .order_by(PaymentIntent.created_at.desc())
                .first()
            )
        return None

    def list_paid_ungranted(
        self, paid_before: datetime, account_refs: list[str], limit: int = 100
    ) -> list[PaymentIntent]:
        """PAID intents linked to a user whose grant was never stamped."""
        return (
            self.db.query(PaymentIntent)
            .filter(
                PaymentIntent.status == IntentStatus.PAID.value,
                PaymentIntent.user_id.isnot(None),
                PaymentIntent.account_ref.in_(account_refs),
                PaymentIntent.entitlement_granted_at.is_(None),
                PaymentIntent.paid_at < paid_before,
            )
            .order_by(PaymentIntent.paid_at)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_pending(
        self,
        amount: int,
        payer_phone: str,
        account_ref: str | None,
        description: str | None,
        mode: str,
        user_id: str | None = None,
        product_id: str | None = None,
    ) -> PaymentIntent:
        intent = PaymentIntent(
            status=IntentStatus.PENDING.value,
            method="MPESA",
            currency="KES",
            mode=mode,
            amount=amount,
            payer_phone=payer_phone,
            account_ref=account_ref,
            description=description,
            user_id=user_id,
            product_id=product_id,
        )
        self.db.add(intent)
        self.db.commit()
        self.db.refresh(intent)
        return intent

    def mark_failed(self, intent_id: str, result_desc: str) -> bool:
        """PENDING -> FAILED for a charge that never reached the payer."""
        res = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.status == IntentStatus.PENDING.value,
            )
            .values(
                status=IntentStatus.FAILED.value,
                result_desc=(result_desc or "STK push error")[:RESULT_DESC_MAX],
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    def attach_correlation(
        self,
        pending: PaymentIntent,
        checkout_request_id: str,
        merchant_request_id: str | None,
    ) -> PaymentIntent:
        """
        Attach provider ids, keyed by the unique checkout_request_id.

        - Normal case: the pre-created row takes the ids.
        - Another row already holds the checkout id: only its merchant id is
          updated and that row is returned (caller drops the pre-created one).
        - Pre-created row vanished: INSERT .. ON CONFLICT recreates it under the
          same id.
        """
        merchant_request_id = merchant_request_id or None
        snapshot = {
            "id": pending.id,
            "status": IntentStatus.PENDING.value,
            "method": pending.method,
            "currency": pending.currency,
            "mode": pending.mode,
            "amount": pending.amount,
            "payer_phone": pending.payer_phone,
            "account_ref": pending.account_ref,
            "description": pending.description,
            "user_id": pending.user_id,
            "product_id": pending.product_id,
        }
        now = datetime.now(timezone.utc)
        try:
            res = self.db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == snapshot["id"])
                .values(
                    checkout_request_id=checkout_request_id,
                    merchant_request_id=merchant_request_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "payment_intent_checkout_id_taken",
                extra={"pending_id": snapshot["id"], "checkout_request_id": checkout_request_id},
            )
            return self._update_existing_correlation(checkout_request_id, merchant_request_id)

        if res.rowcount == 1:
            self.db.expire_all()
            return self.get(snapshot["id"])

        intent_id = self.upsert_by_checkout_id(
            {**snapshot, "checkout_request_id": checkout_request_id, "merchant_request_id": merchant_request_id}
        )
        return self.get(intent_id)

    def _update_existing_correlation(
        self, checkout_request_id: str, merchant_request_id: str | None
    ) -> PaymentIntent:
        values: dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
        if merchant_request_id:
            values["merchant_request_id"] = merchant_request_id
        self.db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.checkout_request_id == checkout_request_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return self.find_by_checkout_id(checkout_request_id)

    def upsert_by_checkout_id(self, values: dict[str, Any]) -> str:
        """Atomic INSERT .. ON CONFLICT (checkout_request_id) DO UPDATE; returns the row id."""
        insert = _dialect_insert(self.db.get_bind().dialect.name)
        stmt = insert(PaymentIntent).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PaymentIntent.checkout_request_id],
            set_={
                "merchant_request_id": func.coalesce(
                    stmt.excluded.merchant_request_id, PaymentIntent.merchant_request_id
                ),
                "updated_at": datetime.now(timezone.utc),
            },
        ).returning(PaymentIntent.id)
        intent_id = self.db.execute(stmt).scalar_one()
        self.db.commit()
        return intent_id

    def delete_orphan(self, intent_id: str) -> bool:
        """Remove a pre-created row that lost the dedup; never touches a correlated row."""
        deleted = (
            self.db.query(PaymentIntent)
            .filter(
                PaymentIntent.id == intent_id,
                PaymentIntent.status == IntentStatus.PENDING.value,
                PaymentIntent.checkout_request_id.is_(None),
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0

    def complete(
        self,
        intent_id: str,
        paid: bool,
        result_code: int | None,
        result_desc: str | None,
        raw_callback: dict | None,
        mpesa_receipt: str | None = None,
        payer_phone_confirmed: str | None = None,
        transaction_date: datetime | None = None,
        paid_at: datetime | None = None,
    ) -> bool:
        """
        Compare-and-set PENDING -> PAID/FAILED.
        Returns True only for the call that performed the transition.
        """
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "result_code": result_code,
            "result_desc": result_desc,
            "raw_callback": raw_callback,
            "transaction_date": transaction_date,
            "updated_at": now,
        }
        if paid:
            values.update(
                status=IntentStatus.PAID.value,
                paid_at=paid_at or now,
                mpesa_receipt=mpesa_receipt,
                payer_phone_confirmed=payer_phone_confirmed,
            )
        else:
            values.update(status=IntentStatus.FAILED.value, payer_phone_confirmed=payer_phone_confirmed)

        res = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.status == IntentStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    def mark_entitlement_granted(self, intent_id: str) -> bool:
        res = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.entitlement_granted_at.is_(None),
            )
            .values(entitlement_granted_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    def count_by_checkout_id(self, checkout_request_id: str) -> int:
        return (
            self.db.query(func.count(PaymentIntent.id))
            .filter(PaymentIntent.checkout_request_id == checkout_request_id)
            .scalar()
        )

    def has_correlation(self, intent: PaymentIntent) -> bool:
        return bool(intent.checkout_request_id or intent.merchant_request_id)
