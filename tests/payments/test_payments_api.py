"""HTTP tests for initiate, status and callback routes."""
from dataclasses import replace

from fastapi.testclient import TestClient

from stkpay.models.payment_intent import PaymentIntent
from stkpay.models.user import User
from stkpay.services.mpesa.client import MpesaError

AUTH = {"X-User-Id": "user-1"}


def _subscription(session_factory, user_id="user-1") -> str:
    s = session_factory()
    try:
        return s.query(User).filter(User.id == user_id).one().subscription
    finally:
        s.close()


def _intent(session_factory, intent_id) -> PaymentIntent:
    s = session_factory()
    try:
        return s.query(PaymentIntent).filter(PaymentIntent.id == intent_id).one_or_none()
    finally:
        s.close()


class TestStkRoute:
    def test_initiate(self, client, gateway):
        resp = client.post("/mpesa/stk", json={"amount": 50, "phone": "0708374149", "product_id": "p-9"}, headers=AUTH)
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["checkout_request_id"] == "ws_CO_191220191020363925"
        assert body["intent_id"]
        assert gateway.calls[0]["phone"] == "254708374149"

    def test_validation_error_is_400(self, client, gateway):
        resp = client.post("/mpesa/stk", json={"amount": 10.5, "phone": "0708374149"})
        assert resp.status_code == 400
        assert resp.json()["ok"] is False
        assert gateway.calls == []

    def test_gateway_error_is_502_with_intent(self, client, gateway, session_factory):
        gateway.error = MpesaError("STK push failed: Invalid Access Token")
        resp = client.post("/mpesa/stk", json={"amount": 10, "phone": "0708374149"})
        assert resp.status_code == 502
        body = resp.json()
        assert "Invalid Access Token" in body["error"]
        assert _intent(session_factory, body["intent_id"]).status == "FAILED"

    def test_amount_over_maximum_is_400(self, client, gateway, session_factory):
        resp = client.post("/mpesa/stk", json={"amount": 10**20, "phone": "0708374149"})
        assert resp.status_code == 400
        assert gateway.calls == []
        s = session_factory()
        assert s.query(PaymentIntent).count() == 0
        s.close()


class TestUpgradeFlow:
    def test_requires_caller(self, client):
        resp = client.post("/billing/upgrade", json={"tier": "GOLD", "phone": "0708374149"})
        assert resp.status_code == 401

    def test_unknown_tier_clamps_to_gold(self, client, gateway):
        resp = client.post("/billing/upgrade", json={"tier": "DIAMOND", "phone": "0708374149", "amount": 1}, headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["amount"] == 199
        assert resp.json()["account_ref"] == "GOLD"
        assert gateway.calls[0]["amount"] == 199

    def test_end_to_end_upgrade(self, client, make_user, callback_payload, session_factory):
        make_user("user-1")
        started = client.post("/billing/upgrade", json={"tier": "PLATINUM", "phone": "0708374149"}, headers=AUTH).json()
        intent_id = started["intent_id"]

        status = client.get("/billing/upgrade/status", params={"id": intent_id}, headers=AUTH).json()
        assert status["status"] == "PENDING"

        ack = client.post("/billing/upgrade/callback", json=callback_payload(amount=499))
        assert ack.status_code == 200
        assert ack.json()["ResultCode"] == 0
        assert ack.json()["ResultDesc"] == "Accepted"

        status = client.get("/billing/upgrade/status", params={"id": intent_id}, headers=AUTH).json()
        assert status["status"] == "SUCCESS"
        assert _subscription(session_factory) == "PLATINUM"

        again = client.post("/mpesa/callback", json=callback_payload(amount=499))
        assert again.status_code == 200
        assert again.json()["idempotent"] is True

    def test_status_errors(self, client):
        assert client.get("/billing/upgrade/status").status_code == 400
        assert client.get("/billing/upgrade/status", params={"id": "missing"}).status_code == 404

    def test_status_hides_other_users_intent(self, client):
        intent_id = client.post(
            "/billing/upgrade", json={"tier": "GOLD", "phone": "0708374149"}, headers=AUTH
        ).json()["intent_id"]
        resp = client.get("/billing/upgrade/status", params={"id": intent_id}, headers={"X-User-Id": "user-2"})
        assert resp.status_code == 404

    def test_status_of_owned_intent_needs_caller(self, client):
        intent_id = client.post(
            "/billing/upgrade", json={"tier": "GOLD", "phone": "0708374149"}, headers=AUTH
        ).json()["intent_id"]
        assert client.get("/billing/upgrade/status", params={"id": intent_id}).status_code == 404
        assert client.get("/billing/upgrade/status", params={"id": intent_id}, headers={"X-User-Id": " "}).status_code == 404
        assert client.get("/billing/upgrade/status", params={"id": intent_id}, headers=AUTH).status_code == 200

    def test_status_of_anonymous_intent(self, client):
        intent_id = client.post("/mpesa/stk", json={"amount": 10, "phone": "0708374149"}).json()["intent_id"]
        resp = client.get("/billing/upgrade/status", params={"id": intent_id})
        assert resp.status_code == 200
        assert resp.json()["status"] == "PENDING"


class TestCallbackRoute:
    def test_ping(self, client):
        assert client.get("/mpesa/callback").json() == {"ok": True}
        assert client.get("/billing/upgrade/callback").json() == {"ok": True}

    def test_head(self, client):
        for path in ("/mpesa/callback", "/billing/upgrade/callback"):
            resp = client.head(path)
            assert resp.status_code == 204
            assert resp.content == b""

    def test_invalid_json_is_400(self, client):
        resp = client.post("/mpesa/callback", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_malformed_is_400(self, client):
        resp = client.post("/mpesa/callback", json={"Body": {"stkCallback": {"ResultCode": 0}}})
        assert resp.status_code == 400

    def test_missing_result_code_fails_intent_and_acks(self, client, make_user, session_factory):
        make_user("user-1")
        intent_id = client.post(
            "/billing/upgrade", json={"tier": "GOLD", "phone": "0708374149"}, headers=AUTH
        ).json()["intent_id"]
        payload = {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_191220191020363925"}}}

        resp = client.post("/billing/upgrade/callback", json=payload)

        assert resp.status_code == 200
        assert resp.json()["ResultCode"] == 0
        intent = _intent(session_factory, intent_id)
        assert intent.status == "FAILED"
        assert intent.result_code is None
        assert _subscription(session_factory) == "FREE"

    def test_unknown_intent_acknowledged(self, client, callback_payload, session_factory):
        resp = client.post("/mpesa/callback", json=callback_payload(checkout_request_id="ws_CO_nope", merchant_request_id="nope"))
        assert resp.status_code == 200
        assert resp.json()["note"] == "not found"
        s = session_factory()
        assert s.query(PaymentIntent).count() == 0
        s.close()

    def test_token_required_when_configured(self, app, callback_payload):
        app.state.gateway_config = replace(app.state.gateway_config, callback_token="s3cret")
        with TestClient(app) as c:
            assert c.post("/mpesa/callback", json=callback_payload()).status_code == 403
            assert c.post("/mpesa/callback", json=callback_payload(), headers={"X-Callback-Token": "nope"}).status_code == 403
            ok = c.post("/mpesa/callback", json=callback_payload(), headers={"X-Callback-Secret": "s3cret"})
            assert ok.status_code == 200


class TestHealth:
    def test_health_and_ready(self, client):
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/ready").json() == {"status": "ready"}

    def test_metrics(self, client):
        client.get("/health")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "http_request_duration_seconds" in resp.text

    def test_request_id_propagated(self, client):
        resp = client.get("/health", headers={"X-Request-Id": "abc123"})
        assert resp.headers["X-Request-Id"] == "abc123"
