"""
Monnify gateway client.

Handles bearer token acquisition (cached with a safety margin), transaction
initialization and transaction verification. Every failure is raised as a
GatewayError; nothing here retries, that decision belongs to the caller.
"""
import base64
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from academy_payments import config
from academy_payments.constants import (
    DEFAULT_CURRENCY,
    MONNIFY_PAYMENT_METHODS,
    MONNIFY_STATUS_MAP,
    PaymentStatus,
)
from academy_payments.errors import GatewayError

logger = logging.getLogger(__name__)

AUTH_PATH = "/api/v1/auth/login"
INIT_TRANSACTION_PATH = "/api/v1/merchant/transactions/init-transaction"
QUERY_TRANSACTION_PATH = "/api/v1/merchant/transactions/query"

TOKEN_REFRESH_MARGIN_SECONDS = 300


class TokenCache:
    """
    Bearer token cache with single-flight refresh.

    `fetch` returns (token, expires_in_seconds). The token is treated as stale
    `margin_seconds` before its real expiry. Callers arriving while a refresh
    is in progress wait on the lock and reuse the fresh token.
    """

    def __init__(
        self,
        fetch: Callable[[], Tuple[str, float]],
        clock: Callable[[], float] = time.monotonic,
        margin_seconds: float = TOKEN_REFRESH_MARGIN_SECONDS,
    ):
        self._fetch = fetch
        self._clock = clock
        self._margin = margin_seconds
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._valid_until = 0.0

    def _fresh(self) -> bool:
        return self._token is not None and self._clock() < self._valid_until

    def get_token(self) -> str:
        if self._fresh():
            return self._token
        with self._lock:
            if self._fresh():
                return self._token
            token, expires_in = self._fetch()
            self._token = token
            self._valid_until = self._clock() + max(float(expires_in) - self._margin, 0.0)
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._valid_until = 0.0


@dataclass
class InitializedTransaction:
    transaction_reference: str
    payment_reference: str
    checkout_url: str


@dataclass
class VerifiedTransaction:
    payment_reference: str
    transaction_reference: Optional[str]
    gateway_status: str
    status: str
    amount_paid: Optional[int]
    payment_method: Optional[str]


def map_gateway_status(gateway_status: Optional[str]) -> str:
    return MONNIFY_STATUS_MAP.get((gateway_status or "").upper(), PaymentStatus.PENDING)


def normalize_payment_method(method: Optional[str]) -> Optional[str]:
    if not method:
        return None
    return method.strip().lower().replace(" ", "_")


def mask_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return phone
    return "***" + phone[-4:]


def _parse_amount(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError) as exc:
        logger.error("Monnify returned non-numeric %s=%r", field, value)
        raise GatewayError(
            f"Payment gateway returned an invalid {field}",
            upstream_message=f"{field}={value!r}",
        ) from exc


class MonnifyClient:
    def __init__(
        self,
        base_url: str = config.MONNIFY_BASE_URL,
        api_key: str = config.MONNIFY_API_KEY,
        secret_key: str = config.MONNIFY_SECRET_KEY,
        contract_code: str = config.MONNIFY_CONTRACT_CODE,
        connect_timeout: float = config.GATEWAY_CONNECT_TIMEOUT,
        request_timeout: float = config.GATEWAY_REQUEST_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.contract_code = contract_code
        self._api_key = api_key
        self._secret_key = secret_key
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self.tokens = TokenCache(self._login, clock=clock)

    def close(self) -> None:
        self._http.close()

    def _encoded_credentials(self) -> str:
        raw = f"{self._api_key}:{self._secret_key}".encode()
        return base64.b64encode(raw).decode()

    def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("Monnify %s timed out: %s", operation, exc)
            raise GatewayError(f"Payment gateway timed out during {operation}") from exc
        except httpx.HTTPError as exc:
            logger.error("Monnify %s transport error: %s", operation, exc)
            raise GatewayError(f"Payment gateway unreachable during {operation}: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("responseMessage") or body.get("message") or response.reason_phrase

        if response.status_code >= 400 or body.get("requestSuccessful") is not True:
            logger.error(
                "Monnify %s failed status=%s code=%s message=%s",
                operation, response.status_code, body.get("responseCode"), message,
            )
            raise GatewayError(
                f"Payment gateway {operation} failed: {message}",
                upstream_status=response.status_code,
                upstream_message=message,
            )

        logger.info("Monnify %s ok status=%s", operation, response.status_code)
        payload = body.get("responseBody") or {}
        if not isinstance(payload, dict):
            raise GatewayError(
                f"Payment gateway {operation} returned an unexpected response body",
                upstream_status=response.status_code,
                upstream_message=message,
            )
        return payload

    def _login(self) -> Tuple[str, float]:
        body = self._request(
            "POST",
            AUTH_PATH,
            "authentication",
            headers={"Authorization": f"Basic {self._encoded_credentials()}"},
        )
        token = body.get("accessToken")
        if not token:
            raise GatewayError("Payment gateway authentication returned no access token")
        return token, _parse_amount(body.get("expiresIn"), "expiresIn") or 0

    def authenticate(self) -> str:
        return self.tokens.get_token()

    def _bearer(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.authenticate()}"}

    def initialize_transaction(
        self,
        amount: int,
        customer_name: str,
        customer_email: str,
        customer_phone: Optional[str],
        description: str,
        payment_reference: str,
        redirect_url: str = config.PAYMENT_REDIRECT_URL,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializedTransaction:
        payload = {
            "amount": amount,
            "customerName": customer_name,
            "customerEmail": customer_email,
            "customerPhone": customer_phone,
            "paymentReference": payment_reference,
            "paymentDescription": description,
            "currencyCode": DEFAULT_CURRENCY,
            "contractCode": self.contract_code,
            "redirectUrl": redirect_url,
            "paymentMethods": MONNIFY_PAYMENT_METHODS,
            "metadata": metadata or {},
        }
        logger.info(
            "Initializing Monnify transaction reference=%s amount=%s phone=%s",
            payment_reference, amount, mask_phone(customer_phone),
        )
        body = self._request("POST", INIT_TRANSACTION_PATH, "initialization", json=payload, headers=self._bearer())
        if not body.get("transactionReference") or not body.get("checkoutUrl"):
            raise GatewayError("Payment gateway initialization returned an incomplete response")
        return InitializedTransaction(
            transaction_reference=body["transactionReference"],
            payment_reference=body.get("paymentReference", payment_reference),
            checkout_url=body["checkoutUrl"],
        )

    def verify_transaction(self, payment_reference: str) -> VerifiedTransaction:
        body = self._request(
            "GET",
            QUERY_TRANSACTION_PATH,
            "verification",
            params={"paymentReference": payment_reference},
            headers=self._bearer(),
        )
        gateway_status = str(body.get("paymentStatus") or "").upper()
        amount_paid = _parse_amount(body.get("amountPaid"), "amountPaid")
        method = body.get("paymentMethod")
        return VerifiedTransaction(
            payment_reference=body.get("paymentReference", payment_reference),
            transaction_reference=body.get("transactionReference"),
            gateway_status=gateway_status,
            status=map_gateway_status(gateway_status),
            amount_paid=amount_paid,
            payment_method=normalize_payment_method(method if isinstance(method, str) else None),
        )
