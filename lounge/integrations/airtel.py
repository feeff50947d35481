"""Airtel Money collection client with an in-process mock for the lounge floor."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from lounge.config import Config
from lounge.integrations.mpesa import normalize_phone_number
from lounge.observability import log_payment_debug, track_latency

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://openapiuat.airtel.africa"
PRODUCTION_URL = "https://openapi.airtel.africa"

STATUS_PENDING = "PENDING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
STATUS_NOT_FOUND = "NOT_FOUND"

_PROVIDER_STATUS_MAP = {
    "TS": STATUS_COMPLETED,
    "TF": STATUS_FAILED,
    "TA": STATUS_PENDING,
    "TIP": STATUS_PENDING,
}


class AirtelMoneyError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response or {}


@dataclass
class AirtelPaymentResult:
    reference: str
    status: str
    message: str
    provider_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "status": self.status,
            "message": self.message,
            "providerReference": self.provider_reference,
        }


class _MockLedger:
    """Process-wide store of mock Airtel collections, shared across client instances."""

    _instance: Optional["_MockLedger"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "_MockLedger":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._records = {}
        return cls._instance

    def add(self, reference: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._records[reference] = record

    def get(self, reference: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(reference)
            return dict(record) if record else None

    def clear(self) -> None:
        """Testing helper."""
        with self._lock:
            self._records.clear()


class AirtelMoneyClient:
    def __init__(
        self,
        config: type[Config] = Config,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        retry_attempts: Optional[int] = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.clock = clock
        self.ledger = _MockLedger()
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._retrying = Retrying(
            stop=stop_after_attempt(retry_attempts or config.PROVIDER_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            reraise=True,
        )
        # Collections are only resent when the connection never opened
        self._retrying_unsent = self._retrying.copy(retry=retry_if_exception_type(requests.ConnectionError))

    @property
    def is_mock(self) -> bool:
        return self.config.AIRTEL_ENVIRONMENT == "mock"

    @property
    def base_url(self) -> str:
        return PRODUCTION_URL if self.config.AIRTEL_ENVIRONMENT == "production" else SANDBOX_URL

    @staticmethod
    def to_msisdn(phone_number: str) -> str:
        """Airtel wants the national number without the country prefix."""
        return normalize_phone_number(phone_number)[3:]

    def generate_reference(self) -> str:
        millis = str(int(self.clock() * 1000))
        return f"AIR{millis[-8:]}{random.randint(0, 999):03d}"

    def initiate_payment(self, phone_number: str, amount: float, description: str) -> AirtelPaymentResult:
        msisdn = self.to_msisdn(phone_number)
        if float(amount) <= 0:
            raise AirtelMoneyError("Airtel Money amount must be positive")
        reference = self.generate_reference()

        if self.is_mock:
            self.ledger.add(
                reference,
                {
                    "msisdn": msisdn,
                    "amount": float(amount),
                    "description": description,
                    "created_at": self.clock(),
                },
            )
            log_payment_debug("airtel", "initiate.mock", {"reference": reference, "amount": float(amount)})
            logger.info("Mock Airtel payment created", extra={"reference": reference, "amount": float(amount)})
            return AirtelPaymentResult(reference, STATUS_PENDING, "Payment request sent to customer")

        payload = {
            "reference": description[:64],
            "subscriber": {
                "country": self.config.AIRTEL_COUNTRY,
                "currency": self.config.AIRTEL_CURRENCY,
                "msisdn": msisdn,
            },
            "transaction": {
                "amount": float(amount),
                "country": self.config.AIRTEL_COUNTRY,
                "currency": self.config.AIRTEL_CURRENCY,
                "id": reference,
            },
        }
        body = self._send("POST", "/merchant/v1/payments/", operation="collect", json=payload, idempotent=False)
        status_block = body.get("status") or {}
        if status_block.get("success") is False:
            raise AirtelMoneyError(status_block.get("message") or "Airtel Money rejected the payment", response=body)
        transaction = (body.get("data") or {}).get("transaction") or {}
        return AirtelPaymentResult(
            reference,
            _PROVIDER_STATUS_MAP.get(transaction.get("status"), STATUS_PENDING),
            status_block.get("message") or "Payment request sent to customer",
            provider_reference=transaction.get("id"),
        )

    def check_transaction_status(self, reference: str) -> AirtelPaymentResult:
        if self.is_mock:
            record = self.ledger.get(reference)
            if record is None:
                return AirtelPaymentResult(reference, STATUS_NOT_FOUND, "Transaction not found")
            elapsed = self.clock() - record["created_at"]
            if elapsed >= self.config.AIRTEL_MOCK_COMPLETION_SECONDS:
                return AirtelPaymentResult(
                    reference, STATUS_COMPLETED, "Payment completed", provider_reference=f"MP{reference[3:]}"
                )
            return AirtelPaymentResult(reference, STATUS_PENDING, "Awaiting customer confirmation")

        try:
            body = self._send("GET", f"/standard/v1/payments/{reference}", operation="status")
        except AirtelMoneyError as exc:
            if exc.status_code == 404:
                return AirtelPaymentResult(reference, STATUS_NOT_FOUND, "Transaction not found")
            raise
        transaction = (body.get("data") or {}).get("transaction") or {}
        status = _PROVIDER_STATUS_MAP.get(transaction.get("status"), STATUS_PENDING)
        return AirtelPaymentResult(
            reference,
            status,
            transaction.get("message") or (body.get("status") or {}).get("message") or status.title(),
            provider_reference=transaction.get("airtel_money_id"),
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def get_access_token(self) -> str:
        if self._token and self.clock() < self._token_expires_at:
            return self._token
        if not self.config.AIRTEL_CLIENT_ID or not self.config.AIRTEL_CLIENT_SECRET:
            raise AirtelMoneyError("Airtel Money client credentials are not configured")
        body = self._send(
            "POST",
            "/auth/oauth2/token",
            operation="oauth",
            json={
                "client_id": self.config.AIRTEL_CLIENT_ID,
                "client_secret": self.config.AIRTEL_CLIENT_SECRET,
                "grant_type": "client_credentials",
            },
            authenticated=False,
        )
        token = body.get("access_token")
        if not token:
            raise AirtelMoneyError("Airtel OAuth response did not include an access token", response=body)
        self._token = token
        # Refresh a minute early
        self._token_expires_at = self.clock() + max(int(body.get("expires_in", 3600)) - 60, 0)
        return token

    def _send(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "*/*",
            "X-Country": self.config.AIRTEL_COUNTRY,
            "X-Currency": self.config.AIRTEL_CURRENCY,
        }
        if authenticated:
            headers["Authorization"] = f"Bearer {self.get_access_token()}"

        log_payment_debug("airtel", f"{operation}.request", {"url": url, "body": json})
        retrying = self._retrying if idempotent else self._retrying_unsent
        with track_latency("provider_latency_ms", labels={"provider": "airtel", "operation": operation}):
            try:
                response = retrying(
                    self.session.request,
                    method,
                    url,
                    json=json,
                    headers=headers,
                    timeout=self.config.PROVIDER_TIMEOUT_SECONDS,
                )
            except requests.RequestException as exc:
                logger.error("Airtel %s request failed: %s", operation, exc)
                raise AirtelMoneyError(f"Could not reach Airtel Money: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        if not isinstance(body, dict):
            body = {"raw": body}
        log_payment_debug(
            "airtel",
            f"{operation}.response",
            {"url": url, "status_code": response.status_code, "body": body},
        )
        if response.status_code >= 400:
            message = (body.get("status") or {}).get("message") or body.get("error_description")
            raise AirtelMoneyError(
                message or f"Airtel Money returned HTTP {response.status_code}",
                status_code=response.status_code,
                response=body,
            )
        return body
