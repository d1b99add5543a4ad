"""Tests for IntentStore: correlation attach, dedup, compare-and-set transitions."""
from datetime import datetime, timedelta, timezone

from stkpay.models.payment_intent import PaymentIntent
from stkpay.services.payments.store import IntentStore


def _pending(store: IntentStore, **kwargs) -> PaymentIntent:
    values = dict(amount=199, payer_phone="254708374149", account_ref="GOLD", description="Upgrade", mode="paybill")
    values.update(kwargs)
    return store.create_pending(**values)


class TestCreateAndAttach:
    def test_create_pending_defaults(self, db):
        store = IntentStore(db)
        intent = _pending(store, user_id="user-1")
        assert intent.status == "PENDING"
        assert intent.method == "MPESA"
        assert intent.currency == "KES"
        assert intent.checkout_request_id is None
        assert intent.paid_at is None

    def test_attach_sets_ids_on_precreated_row(self, db):
        store = IntentStore(db)
        pending = _pending(store)
        canonical = store.attach_correlation(pending, "ws_CO_1", "MR-1")
        assert canonical.id == pending.id
        assert canonical.checkout_request_id == "ws_CO_1"
        assert canonical.merchant_request_id == "MR-1"

    def test_attach_when_checkout_id_already_held(self, db):
        store = IntentStore(db)
        first = _pending(store)
        store.attach_correlation(first, "ws_CO_1", None)
        second = _pending(store)
        second_id = second.id

        canonical = store.attach_correlation(second, "ws_CO_1", "MR-2")

        assert canonical.id == first.id
        assert canonical.merchant_request_id == "MR-2"
        assert store.count_by_checkout_id("ws_CO_1") == 1
        assert store.delete_orphan(second_id) is True
        assert store.get(second_id) is None

    def test_attach_recreates_vanished_row(self, db, session_factory):
        store = IntentStore(db)
        pending = _pending(store)
        pending_id = pending.id
        # removed by another request while the push was in flight
        other = session_factory()
        IntentStore(other).delete_orphan(pending_id)
        other.close()

        canonical = store.attach_correlation(pending, "ws_CO_9", "MR-9")

        assert canonical.id == pending_id
        assert canonical.status == "PENDING"
        assert canonical.amount == 199
        assert store.count_by_checkout_id("ws_CO_9") == 1

    def test_upsert_on_existing_key_only_touches_correlation(self, db):
        store = IntentStore(db)
        first = _pending(store)
        store.attach_correlation(first, "ws_CO_1", "MR-1")

        intent_id = store.upsert_by_checkout_id(
            {"id": "other-id", "amount": 5, "payer_phone": "254708374149", "checkout_request_id": "ws_CO_1", "merchant_request_id": None}
        )

        assert intent_id == first.id
        db.expire_all()
        row = store.get(first.id)
        assert row.amount == 199
        assert row.merchant_request_id == "MR-1"
        assert store.get("other-id") is None

    def test_delete_orphan_never_removes_correlated_row(self, db):
        store = IntentStore(db)
        pending = _pending(store)
        store.attach_correlation(pending, "ws_CO_1", "MR-1")
        assert store.delete_orphan(pending.id) is False
        assert store.get(pending.id) is not None


class TestLookup:
    def test_checkout_id_wins_over_merchant_id(self, db):
        store = IntentStore(db)
        a = store.attach_correlation(_pending(store), "ws_CO_A", "MR-A")
        b = store.attach_correlation(_pending(store), "ws_CO_B", "MR-B")
        assert store.find_by_correlation("ws_CO_A", "MR-B").id == a.id
        assert store.find_by_correlation(None, "MR-B").id == b.id
        assert store.find_by_correlation("ws_CO_X", "MR-B").id == b.id
        assert store.find_by_correlation("ws_CO_X", None) is None


class TestTransitions:
    def test_complete_paid_once(self, db):
        store = IntentStore(db)
        intent = store.attach_correlation(_pending(store), "ws_CO_1", "MR-1")
        paid_at = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

        assert store.complete(
            intent.id, paid=True, result_code=0, result_desc="ok", raw_callback={"a": 1},
            mpesa_receipt="R1", payer_phone_confirmed="254708374149", paid_at=paid_at,
        ) is True
        assert store.complete(
            intent.id, paid=False, result_code=1032, result_desc="cancelled", raw_callback={},
        ) is False

        db.expire_all()
        row = store.get(intent.id)
        assert row.status == "PAID"
        assert row.paid_at is not None
        assert row.mpesa_receipt == "R1"
        assert row.result_code == 0
        assert row.raw_callback == {"a": 1}

    def test_complete_failed_leaves_paid_at_null(self, db):
        store = IntentStore(db)
        intent = store.attach_correlation(_pending(store), "ws_CO_1", "MR-1")
        assert store.complete(intent.id, paid=False, result_code=1032, result_desc="Request cancelled by user", raw_callback={}) is True
        db.expire_all()
        row = store.get(intent.id)
        assert row.status == "FAILED"
        assert row.paid_at is None
        assert row.mpesa_receipt is None

    def test_mark_failed_only_from_pending(self, db):
        store = IntentStore(db)
        intent = _pending(store)
        assert store.mark_failed(intent.id, "x" * 500) is True
        assert store.mark_failed(intent.id, "again") is False
        db.expire_all()
        row = store.get(intent.id)
        assert row.status == "FAILED"
        assert len(row.result_desc) == 200

    def test_entitlement_stamp_once(self, db):
        store = IntentStore(db)
        intent = _pending(store)
        assert store.mark_entitlement_granted(intent.id) is True
        assert store.mark_entitlement_granted(intent.id) is False

    def test_list_paid_ungranted(self, db):
        store = IntentStore(db)
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        upgrade = store.attach_correlation(_pending(store, user_id="user-1"), "ws_CO_1", None)
        generic = store.attach_correlation(_pending(store, user_id="user-1", account_ref="SHOP"), "ws_CO_2", None)
        anonymous = store.attach_correlation(_pending(store), "ws_CO_3", None)
        for intent in (upgrade, generic, anonymous):
            store.complete(intent.id, paid=True, result_code=0, result_desc="ok", raw_callback={}, paid_at=old)

        found = store.list_paid_ungranted(datetime.now(timezone.utc), ["GOLD", "PLATINUM"])
        assert [i.id for i in found] == [upgrade.id]

        store.mark_entitlement_granted(upgrade.id)
        assert store.list_paid_ungranted(datetime.now(timezone.utc), ["GOLD", "PLATINUM"]) == []
