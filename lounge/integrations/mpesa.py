"""
Safaricom Daraja (M-Pesa) client.

Covers the calls the lounge makes: OAuth, Lipa na M-Pesa STK push and
query, C2B URL registration, transaction status, reversals and dynamic
QR codes. Connection errors and timeouts are retried with exponential
backoff. STK pushes and reversals are only retried when the connection
never opened: after a read timeout Daraja may already have accepted the
request, and a repeated STK push is a second charge prompt. HTTP errors
are surfaced as MpesaError without retrying.
"""
from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from lounge.config import Config
from lounge.observability import log_payment_debug, track_latency

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

# Daraja answers a query for an STK push the customer hasn't acted on yet with this code
PROCESSING_ERROR_CODE = "500.001.1001"

_PHONE_PATTERN = re.compile(r"^254\d{9}$")


class MpesaError(Exception):
    """Raised when Daraja rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.response = response or {}

    @property
    def is_processing(self) -> bool:
        return self.error_code == PROCESSING_ERROR_CODE or "being processed" in str(self).lower()


class MpesaCallbackError(MpesaError):
    """Raised for callback bodies that don't look like an stkCallback."""


@dataclass
class StkCallback:
    merchant_request_id: Optional[str]
    checkout_request_id: str
    result_code: int
    result_desc: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_number(self) -> Optional[str]:
        return self.metadata.get("MpesaReceiptNumber")

    @property
    def amount(self) -> Optional[float]:
        value = self.metadata.get("Amount")
        return float(value) if value is not None else None

    @property
    def phone_number(self) -> Optional[str]:
        value = self.metadata.get("PhoneNumber")
        return str(value) if value is not None else None


def normalize_phone_number(phone: str) -> str:
    """Return a phone number in the 2547XXXXXXXX form Daraja expects."""
    if phone is None:
        raise ValueError("Phone number is required")
    cleaned = re.sub(r"[\s\-()]", "", str(phone)).lstrip("+")
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    elif len(cleaned) == 9 and cleaned.isdigit():
        cleaned = "254" + cleaned
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("Invalid phone number format. Expected 254XXXXXXXXX")
    return cleaned


def _local_tz() -> Any:
    try:
        return ZoneInfo(Config.DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError:
        return None


class MpesaClient:
    def __init__(
        self,
        config: type[Config] = Config,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        retry_attempts: Optional[int] = None,
        retry_wait_multiplier: float = 0.5,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.clock = clock
        self.timeout = config.PROVIDER_TIMEOUT_SECONDS
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._retrying = Retrying(
            stop=stop_after_attempt(retry_attempts or config.PROVIDER_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=retry_wait_multiplier, min=retry_wait_multiplier, max=8),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            reraise=True,
        )
        # ConnectTimeout is a ConnectionError, ReadTimeout is not
        self._retrying_unsent = self._retrying.copy(retry=retry_if_exception_type(requests.ConnectionError))

    @property
    def base_url(self) -> str:
        return PRODUCTION_URL if self.config.MPESA_ENVIRONMENT == "production" else SANDBOX_URL

    @property
    def is_configured(self) -> bool:
        return all(
            [
                self.config.MPESA_CONSUMER_KEY,
                self.config.MPESA_CONSUMER_SECRET,
                self.config.MPESA_SHORTCODE,
                self.config.MPESA_PASSKEY,
            ]
        )

    # ------------------------------------------------------------------
    # Auth helpers
    # ------------------------------------------------------------------
    def get_access_token(self) -> str:
        if self._token and self.clock() < self._token_expires_at:
            return self._token
        if not self.config.MPESA_CONSUMER_KEY or not self.config.MPESA_CONSUMER_SECRET:
            raise MpesaError("M-Pesa consumer credentials are not configured")

        body = self._send(
            "GET",
            "/oauth/v1/generate",
            operation="oauth",
            params={"grant_type": "client_credentials"},
            auth=(self.config.MPESA_CONSUMER_KEY, self.config.MPESA_CONSUMER_SECRET),
            authenticated=False,
        )
        token = body.get("access_token")
        if not token:
            raise MpesaError("M-Pesa OAuth response did not include an access token", response=body)
        self._token = token
        self._token_expires_at = self.clock() + self.config.MPESA_TOKEN_TTL_SECONDS
        return token

    def generate_timestamp(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(_local_tz())
        return now.strftime("%Y%m%d%H%M%S")

    def generate_password(self, timestamp: str) -> str:
        raw = f"{self.config.MPESA_SHORTCODE}{self.config.MPESA_PASSKEY}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    # ------------------------------------------------------------------
    # Lipa na M-Pesa Online
    # ------------------------------------------------------------------
    def stk_push(
        self,
        phone_number: str,
        amount: float,
        account_reference: str,
        transaction_desc: str,
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        phone = normalize_phone_number(phone_number)
        whole_amount = int(round(float(amount)))
        if whole_amount < 1:
            raise MpesaError("M-Pesa amount must be at least 1")

        timestamp = self.generate_timestamp()
        payload = {
            "BusinessShortCode": self.config.MPESA_SHORTCODE,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.config.MPESA_TRANSACTION_TYPE,
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": self.config.MPESA_SHORTCODE,
            "PhoneNumber": phone,
            "CallBackURL": callback_url or self.config.MPESA_CALLBACK_URL,
            "AccountReference": account_reference[:12],
            "TransactionDesc": transaction_desc[:13],
        }
        body = self._send(
            "POST", "/mpesa/stkpush/v1/processrequest", operation="stk_push", json=payload, idempotent=False
        )
        if str(body.get("ResponseCode")) != "0":
            raise MpesaError(
                body.get("ResponseDescription") or "STK push was not accepted",
                error_code=str(body.get("ResponseCode")),
                response=body,
            )
        logger.info(
            "STK push accepted",
            extra={
                "checkout_request_id": body.get("CheckoutRequestID"),
                "account_reference": payload["AccountReference"],
                "amount": whole_amount,
            },
        )
        return body

    def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        timestamp = self.generate_timestamp()
        payload = {
            "BusinessShortCode": self.config.MPESA_SHORTCODE,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return self._send("POST", "/mpesa/stkpushquery/v1/query", operation="stk_query", json=payload)

    # ------------------------------------------------------------------
    # C2B, account and reversal APIs
    # ------------------------------------------------------------------
    def register_urls(
        self,
        confirmation_url: str,
        validation_url: str,
        short_code: Optional[str] = None,
        response_type: str = "Completed",
    ) -> Dict[str, Any]:
        payload = {
            "ShortCode": short_code or self.config.MPESA_SHORTCODE,
            "ResponseType": response_type,
            "ConfirmationURL": confirmation_url,
            "ValidationURL": validation_url,
        }
        return self._send("POST", "/mpesa/c2b/v1/registerurl", operation="register_urls", json=payload)

    def transaction_status(
        self,
        transaction_id: str,
        party_a: Optional[str] = None,
        result_url: Optional[str] = None,
        queue_timeout_url: Optional[str] = None,
        remarks: str = "Transaction status query",
        occasion: str = "",
    ) -> Dict[str, Any]:
        payload = {
            "Initiator": self.config.MPESA_INITIATOR_NAME,
            "SecurityCredential": self.config.MPESA_SECURITY_CREDENTIAL,
            "CommandID": "TransactionStatusQuery",
            "TransactionID": transaction_id,
            "PartyA": party_a or self.config.MPESA_SHORTCODE,
            "IdentifierType": "4",
            "ResultURL": result_url or self.config.MPESA_RESULT_URL,
            "QueueTimeOutURL": queue_timeout_url or self.config.MPESA_TIMEOUT_URL,
            "Remarks": remarks,
            "Occasion": occasion,
        }
        return self._send(
            "POST", "/mpesa/transactionstatus/v1/query", operation="transaction_status", json=payload
        )

    def reverse_transaction(
        self,
        transaction_id: str,
        amount: float,
        receiver_party: Optional[str] = None,
        result_url: Optional[str] = None,
        queue_timeout_url: Optional[str] = None,
        remarks: str = "Payment reversal",
        occasion: str = "",
    ) -> Dict[str, Any]:
        payload = {
            "Initiator": self.config.MPESA_INITIATOR_NAME,
            "SecurityCredential": self.config.MPESA_SECURITY_CREDENTIAL,
            "CommandID": "TransactionReversal",
            "TransactionID": transaction_id,
            "Amount": int(round(float(amount))),
            "ReceiverParty": receiver_party or self.config.MPESA_SHORTCODE,
            # Daraja's own spelling
            "RecieverIdentifierType": "11",
            "ResultURL": result_url or self.config.MPESA_RESULT_URL,
            "QueueTimeOutURL": queue_timeout_url or self.config.MPESA_TIMEOUT_URL,
            "Remarks": remarks,
            "Occasion": occasion,
        }
        return self._send(
            "POST", "/mpesa/reversal/v1/request", operation="reversal", json=payload, idempotent=False
        )

    def generate_qr_code(
        self,
        amount: float,
        reference: str,
        trx_code: str = "BG",
        size: int = 300,
    ) -> Dict[str, Any]:
        payload = {
            "MerchantName": self.config.LOUNGE_NAME,
            "RefNo": reference,
            "Amount": int(round(float(amount))),
            "TrxCode": trx_code,
            "CPI": self.config.MPESA_SHORTCODE,
            "Size": str(size),
        }
        return self._send("POST", "/mpesa/qrcode/v1/generate", operation="qr_code", json=payload)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    @staticmethod
    def parse_stk_callback(payload: Any) -> StkCallback:
        if not isinstance(payload, dict):
            raise MpesaCallbackError("Callback body must be a JSON object")
        callback = (payload.get("Body") or {}).get("stkCallback")
        if not isinstance(callback, dict) or not callback.get("CheckoutRequestID"):
            raise MpesaCallbackError("Callback body is missing Body.stkCallback.CheckoutRequestID")
        try:
            result_code = int(callback.get("ResultCode"))
        except (TypeError, ValueError) as exc:
            raise MpesaCallbackError("Callback ResultCode is not numeric") from exc

        metadata: Dict[str, Any] = {}
        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        for item in items:
            if isinstance(item, dict) and item.get("Name"):
                metadata[item["Name"]] = item.get("Value")

        return StkCallback(
            merchant_request_id=callback.get("MerchantRequestID"),
            checkout_request_id=callback["CheckoutRequestID"],
            result_code=result_code,
            result_desc=callback.get("ResultDesc") or "",
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _send(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        auth: Optional[tuple] = None,
        authenticated: bool = True,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.get_access_token()}"

        log_payment_debug("mpesa", f"{operation}.request", {"url": url, "body": json})
        retrying = self._retrying if idempotent else self._retrying_unsent
        with track_latency("provider_latency_ms", labels={"provider": "mpesa", "operation": operation}):
            try:
                response = retrying(
                    self.session.request,
                    method,
                    url,
                    json=json,
                    params=params,
                    auth=auth,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                log_payment_debug("mpesa", f"{operation}.error", {"url": url, "error": str(exc)}, logging.ERROR)
                logger.error("M-Pesa %s request failed: %s", operation, exc)
                raise MpesaError(f"Could not reach M-Pesa: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        if not isinstance(body, dict):
            body = {"raw": body}
        log_payment_debug(
            "mpesa",
            f"{operation}.response",
            {"url": url, "status_code": response.status_code, "body": body},
        )

        if response.status_code >= 400:
            message = body.get("errorMessage") or body.get("ResultDesc") or f"M-Pesa returned HTTP {response.status_code}"
            logger.warning(
                "M-Pesa %s rejected",
                operation,
                extra={"status_code": response.status_code, "error_code": body.get("errorCode")},
            )
            raise MpesaError(
                message,
                status_code=response.status_code,
                error_code=body.get("errorCode"),
                response=body,
            )
        return body
