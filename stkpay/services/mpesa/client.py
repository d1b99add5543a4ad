"""
Daraja (M-Pesa Express) client wrapper using httpx sync client.

Only two calls are made: the OAuth client-credentials token and the STK push
request. The token fetch is retried with backoff; the push itself never is,
since a repeated push can prompt the payer twice.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
import pybreaker

from stkpay.core.config import GatewayConfig
from stkpay.services.mpesa.utils import (
    daraja_timestamp,
    is_valid_msisdn,
    mask_msisdn,
    normalize_msisdn,
    stk_password,
    transaction_type,
)
from stkpay.utils.metrics import mpesa_request_duration_seconds, mpesa_requests_total


logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
BACKOFF_CAP_SECONDS = 8.0
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class MpesaError(Exception):
    """Raised when Daraja rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        code: str | int | None = None,
        status: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.data = data


@dataclass
class StkPushResponse:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str | None = None
    customer_message: str | None = None


def _parse_json_safe(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": resp.text} if resp.text else {}
    return data if isinstance(data, dict) else {"raw": data}


class MpesaClient:
    """Sync Daraja client. One instance per process; the httpx client is lazy."""

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.Client | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self._client = http_client
        self._breaker = breaker
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(base_url=self.config.base_url, timeout=self.config.timeout)
        return self._client

    def _record_request(self, operation: str, status: str, duration: float) -> None:
        mpesa_requests_total.labels(operation=operation, status=status).inc()
        mpesa_request_duration_seconds.labels(operation=operation).observe(duration)

    # ------------------------------------------------------------------
    # OAuth token
    # ------------------------------------------------------------------

    def get_access_token(self) -> str:
        """Client-credentials token, cached until shortly before it expires."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self.config.consumer_key or not self.config.consumer_secret:
            raise MpesaError("Missing MPESA_CONSUMER_KEY / MPESA_CONSUMER_SECRET")

        attempt = 0
        while True:
            try:
                token, expires_in = self._fetch_token()
                self._token = token
                self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
                return token
            except MpesaError as e:
                attempt += 1
                if attempt > self.config.token_retries:
                    raise
                delay = min(2 ** (attempt - 1), BACKOFF_CAP_SECONDS)
                logger.warning(
                    "mpesa_token_retry",
                    extra={"attempt": attempt, "error": str(e)},
                )
                time.sleep(delay)

    def _fetch_token(self) -> tuple[str, int]:
        start = time.time()
        try:
            resp = self.client.get(
                TOKEN_PATH,
                auth=(self.config.consumer_key, self.config.consumer_secret),
            )
        except httpx.HTTPError as e:
            self._record_request("token", "error", time.time() - start)
            raise MpesaError(f"M-Pesa token request failed: {e}") from e

        body = _parse_json_safe(resp)
        if resp.status_code >= 400:
            self._record_request("token", "error", time.time() - start)
            raise MpesaError(f"M-Pesa token error {resp.status_code}", status=resp.status_code, data=body)
        token = body.get("access_token")
        if not token:
            self._record_request("token", "error", time.time() - start)
            raise MpesaError("No access_token in Daraja response", data=body)
        self._record_request("token", "success", time.time() - start)
        try:
            expires_in = int(body.get("expires_in") or 3599)
        except (TypeError, ValueError):
            expires_in = 3599
        return token, expires_in

    # ------------------------------------------------------------------
    # STK push
    # ------------------------------------------------------------------

    def stk_push(
        self,
        amount: int,
        phone: str,
        account_ref: str,
        description: str,
        mode: str | None = None,
    ) -> StkPushResponse:
        """
        Send the push prompt to the payer's handset.
        Raises MpesaError on config problems, transport errors, provider rejection
        or an open circuit breaker.
        """
        if amount < 1:
            raise MpesaError("Invalid amount (min 1 KES)")
        msisdn = normalize_msisdn(phone)
        if not is_valid_msisdn(msisdn):
            raise MpesaError("Invalid msisdn (use 2547XXXXXXXX or 2541XXXXXXXX)")
        missing = self.config.missing_fields()
        if missing:
            raise MpesaError(f"M-Pesa config missing ({', '.join(missing)})")
        if not self.config.callback_url.startswith("https://"):
            raise MpesaError("MPESA_CALLBACK_URL must be HTTPS")

        if self._breaker is None:
            return self._stk_push(amount, msisdn, account_ref, description, mode)
        try:
            return self._breaker.call(self._stk_push, amount, msisdn, account_ref, description, mode)
        except pybreaker.CircuitBreakerError as e:
            raise MpesaError("M-Pesa gateway temporarily unavailable") from e

    def _stk_push(
        self,
        amount: int,
        msisdn: str,
        account_ref: str,
        description: str,
        mode: str | None,
    ) -> StkPushResponse:
        use_mode = mode or self.config.mode or "paybill"
        txn_type = transaction_type(use_mode)
        shortcode = str(self.config.shortcode)
        timestamp = daraja_timestamp()
        token = self.get_access_token()

        body = {
            "BusinessShortCode": int(shortcode),
            "Password": stk_password(shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": txn_type,
            "Amount": int(amount),
            "PartyA": int(msisdn),
            "PartyB": int(shortcode),
            "PhoneNumber": int(msisdn),
            "CallBackURL": self.config.callback_url,
            "AccountReference": (account_ref or "")[:12],
            "TransactionDesc": (description or "")[:32],
        }
        logger.info(
            "mpesa_stk_push",
            extra={"mode": use_mode, "amount": int(amount), "msisdn": mask_msisdn(msisdn)},
        )

        start = time.time()
        try:
            resp = self.client.post(
                STK_PUSH_PATH,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            self._record_request("stk_push", "error", time.time() - start)
            raise MpesaError(f"Network error: {e}") from e

        data = _parse_json_safe(resp)
        if str(data.get("ResponseCode", "")) != "0":
            self._record_request("stk_push", "rejected", time.time() - start)
            code = data.get("errorCode") or data.get("ResponseCode") or resp.status_code
            msg = (
                data.get("errorMessage")
                or data.get("ResponseDescription")
                or data.get("CustomerMessage")
                or data.get("raw")
                or "Unknown error"
            )
            raise MpesaError(f"STK push failed: {msg}", code=code, status=resp.status_code, data=data)

        checkout_id = str(data.get("CheckoutRequestID") or "").strip()
        if not checkout_id:
            self._record_request("stk_push", "rejected", time.time() - start)
            raise MpesaError("STK push failed (missing CheckoutRequestID)", status=resp.status_code, data=data)

        self._record_request("stk_push", "success", time.time() - start)
        return StkPushResponse(
            merchant_request_id=str(data.get("MerchantRequestID") or "").strip(),
            checkout_request_id=checkout_id,
            response_code="0",
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    def close(self) -> None:
        """Close httpx client."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("Failed to close client", extra={"error": str(e)})
            finally:
                self._client = None
