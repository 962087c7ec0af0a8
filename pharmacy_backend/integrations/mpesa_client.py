"""
M-Pesa Daraja API client with retry logic and comprehensive error handling.

Implements:
- OAuth client-credentials token acquisition (cached until expiry)
- STK push (Lipa na M-Pesa Online) initiation and status query
- Exponential backoff for transient errors; STK push is only retried when
  the request never reached Daraja
- Circuit breaker pattern
- Callback payload parsing
"""
import base64
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.domain.errors import UpstreamError, ValidationError
from pharmacy_backend.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))

REQUIRED_SETTINGS = (
    "mpesa_consumer_key",
    "mpesa_consumer_secret",
    "mpesa_business_shortcode",
    "mpesa_passkey",
    "mpesa_callback_url",
)

SUCCESS_CODE = "0"

# Raised before any byte reached Daraja
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

# STK push may or may not have reached the customer
UNCONFIRMED_CODE = "STK_PUSH_UNCONFIRMED"


class MpesaErrorType(Enum):
    """Classification of M-Pesa errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    AUTH = "auth"  # Credentials rejected


class MpesaError(UpstreamError):
    """Gateway call failed."""

    def __init__(
        self,
        message: str,
        error_type: MpesaErrorType,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize M-Pesa error.

        Args:
            message: Error message, the gateway's own wording when available
            error_type: Classification of error
            code: Domain error code (defaults to UPSTREAM_ERROR)
            http_status: HTTP status returned by the gateway, if any
            retryable: Override for retry eligibility (defaults to TRANSIENT)
            original_error: Original httpx exception
        """
        details: Dict[str, Any] = {"error_type": error_type.value}
        if http_status is not None:
            details["http_status"] = http_status
        super().__init__(message, code=code, details=details)
        self.error_type = error_type
        self.http_status = http_status
        self.retryable = error_type is MpesaErrorType.TRANSIENT if retryable is None else retryable
        self.original_error = original_error


class CallbackParseError(ValidationError):
    """Callback payload does not have the STK callback structure."""

    default_code = "INVALID_CALLBACK"


@dataclass
class StkPushResult:
    """Immediate acknowledgment of an STK push request."""

    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.response_code == SUCCESS_CODE


@dataclass
class StkQueryResult:
    """Result of polling an STK push transaction."""

    checkout_request_id: str
    response_code: Optional[str]
    result_code: Optional[int]
    result_desc: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.result_code is not None

    @property
    def success(self) -> bool:
        return self.result_code == 0


@dataclass
class CallbackResult:
    """Parsed STK callback."""

    merchant_request_id: Optional[str]
    checkout_request_id: str
    result_code: int
    result_desc: Optional[str]
    transaction_details: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.result_code == 0


def normalize_phone_number(phone_number: str) -> str:
    """
    Normalize a Kenyan phone number to the 2547XXXXXXXX format.

    0712345678, 712345678, +254 712 345 678 and 254712345678 all map to
    254712345678.

    Raises:
        ValidationError: If no digits remain
    """
    digits = re.sub(r"\D", "", phone_number or "")
    if not digits:
        raise ValidationError("Phone number is invalid", code="INVALID_PHONE")

    if digits.startswith("0"):
        return "254" + digits[1:]
    if len(digits) == 9 and digits[0] in "71":
        return "254" + digits
    if not digits.startswith("254"):
        return "254" + digits
    return digits


def round_amount(amount: "Decimal | float | int | str") -> int:
    """
    Round to whole shillings, half up.

    Raises:
        ValidationError: If the rounded amount is below 1
    """
    rounded = int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rounded < 1:
        raise ValidationError(
            "M-Pesa amount must be at least 1",
            code="INVALID_AMOUNT",
            details={"amount": str(amount)},
        )
    return rounded


def _metadata_value(items: List[Dict[str, Any]], name: str) -> Any:
    for item in items:
        if item.get("Name") == name:
            return item.get("Value")
    return None


def parse_callback(payload: Any) -> CallbackResult:
    """
    Extract the STK result from a Daraja callback body.

    Raises:
        CallbackParseError: If the payload structure is not recognised
    """
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise CallbackParseError(
            "Failed to process M-Pesa callback", details={"reason": str(e)}
        ) from e

    if not checkout_request_id:
        raise CallbackParseError("Callback is missing CheckoutRequestID")

    result = CallbackResult(
        merchant_request_id=callback.get("MerchantRequestID"),
        checkout_request_id=str(checkout_request_id),
        result_code=result_code,
        result_desc=callback.get("ResultDesc"),
    )

    metadata = callback.get("CallbackMetadata")
    if result.success and metadata:
        try:
            items = metadata["Item"]
            result.transaction_details = {
                "amount": _metadata_value(items, "Amount"),
                "mpesa_receipt_number": _metadata_value(items, "MpesaReceiptNumber"),
                "transaction_date": _metadata_value(items, "TransactionDate"),
                "phone_number": _metadata_value(items, "PhoneNumber"),
            }
        except (KeyError, TypeError, AttributeError) as e:
            raise CallbackParseError(
                "Failed to process M-Pesa callback metadata", details={"reason": str(e)}
            ) from e

    return result


def _should_retry(error: BaseException) -> bool:
    return isinstance(error, MpesaError) and error.retryable


def _json_body(response: httpx.Response, operation: str) -> Dict[str, Any]:
    """Decode a successful gateway response."""
    try:
        body = response.json()
    except ValueError as e:
        raise MpesaError(
            f"M-Pesa {operation} returned an unreadable response",
            MpesaErrorType.PERMANENT,
            http_status=response.status_code,
            original_error=e,
        ) from e
    if not isinstance(body, dict):
        raise MpesaError(
            f"M-Pesa {operation} returned an unexpected response",
            MpesaErrorType.PERMANENT,
            http_status=response.status_code,
        )
    return body


def _error_message(response: httpx.Response, fallback: str) -> str:
    """Gateway error wording, verbatim when the body carries one."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("errorMessage", "ResponseDescription", "error_description"):
            if body.get(key):
                return str(body[key])
    return fallback


class CircuitBreaker:
    """
    Circuit breaker for M-Pesa API calls.

    Prevents cascading failures by temporarily stopping requests
    when the gateway keeps failing.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Permanent gateway errors count as a reachable gateway.

        Raises:
            MpesaError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise MpesaError(
                    "M-Pesa service temporarily unavailable",
                    MpesaErrorType.TRANSIENT,
                    code="CIRCUIT_OPEN",
                    retryable=False,
                )

        try:
            result = await func(*args, **kwargs)
        except MpesaError as e:
            if e.error_type is MpesaErrorType.TRANSIENT:
                self.on_failure()
            else:
                self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class MpesaClient:
    """
    Wrapper for the Daraja API with production-grade error handling.

    Features:
    - Automatic retry with exponential backoff for transient failures
    - Circuit breaker pattern
    - Gateway error messages propagated verbatim
    - Access token cached until shortly before it expires
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_backoff: float = 1.0,
    ) -> None:
        """
        Initialize M-Pesa client.

        Args:
            settings: Application settings (defaults to the cached settings)
            http_client: Preconfigured httpx client, owned by the caller
            circuit_breaker: Shared breaker instance
            retry_backoff: Multiplier for the exponential backoff between retries
        """
        self.settings = settings or get_settings()
        self.base_url = self.settings.mpesa_base_url
        self._owns_http_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.mpesa_timeout_seconds)
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_backoff = retry_backoff
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

        logger.info(
            "mpesa_client_initialized",
            environment=self.settings.mpesa_environment,
            configured=self.is_configured,
        )

    def validate_configuration(self) -> List[str]:
        """
        Check that every required setting is present.

        Returns:
            Names of missing settings; empty when configuration is complete
        """
        return [name for name in REQUIRED_SETTINGS if not getattr(self.settings, name)]

    @property
    def is_configured(self) -> bool:
        return not self.validate_configuration()

    def _require_configuration(self) -> None:
        missing = self.validate_configuration()
        if missing:
            logger.error("mpesa_configuration_incomplete", missing=missing)
            raise UpstreamError(
                "M-Pesa configuration incomplete",
                code="CONFIG_INCOMPLETE",
                details={"missing": missing},
            )

    def generate_password(self, timestamp: Optional[str] = None) -> Tuple[str, str]:
        """
        Build the STK password.

        Returns:
            Tuple of (base64(shortcode + passkey + timestamp), timestamp)
        """
        timestamp = timestamp or datetime.now(EAT).strftime("%Y%m%d%H%M%S")
        raw = f"{self.settings.mpesa_business_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode(), timestamp

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        failure_code: Optional[str] = None,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        One HTTP exchange with classification, retries and breaker accounting.

        Args:
            idempotent: False for requests with side effects at Daraja. Those
                are only retried when they provably never arrived (connection
                failures, 429); a read timeout or 5xx raises UNCONFIRMED_CODE.

        Raises:
            MpesaError: Classified gateway failure
        """
        url = f"{self.base_url}{path}"

        async def _request() -> httpx.Response:
            start = time.perf_counter()
            try:
                response = await self.http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                metrics.record_mpesa_api_call(operation, "error", time.perf_counter() - start)
                ambiguous = not idempotent and not isinstance(e, UNSENT_ERRORS)
                raise MpesaError(
                    f"M-Pesa request failed: {e.__class__.__name__}",
                    MpesaErrorType.TRANSIENT,
                    code=UNCONFIRMED_CODE if ambiguous else failure_code,
                    retryable=not ambiguous,
                    original_error=e,
                ) from e

            metrics.record_mpesa_api_call(
                operation, str(response.status_code), time.perf_counter() - start
            )
            if response.is_success:
                return response

            status = response.status_code
            code = failure_code
            retryable = None
            if status >= 500 or status == 429:
                error_type = MpesaErrorType.TRANSIENT
                if status != 429 and not idempotent:
                    code, retryable = UNCONFIRMED_CODE, False
            elif status in (401, 403):
                error_type = MpesaErrorType.AUTH
                self._access_token = None
            else:
                error_type = MpesaErrorType.PERMANENT
            raise MpesaError(
                _error_message(response, f"M-Pesa {operation} failed with HTTP {status}"),
                error_type,
                code=code,
                http_status=status,
                retryable=retryable,
            )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_should_retry),
                stop=stop_after_attempt(max(1, self.settings.mpesa_max_retries)),
                wait=wait_exponential(multiplier=self.retry_backoff, max=8),
                reraise=True,
            ):
                with attempt:
                    response = await self.circuit_breaker.call(_request)
        except MpesaError as e:
            metrics.record_mpesa_api_error(e.error_type.value)
            logger.error(
                "mpesa_api_error",
                operation=operation,
                error_type=e.error_type.value,
                http_status=e.http_status,
                error_message=e.message,
            )
            raise
        return response

    async def get_access_token(self) -> str:
        """
        Exchange the consumer key and secret for a bearer token.

        Raises:
            UpstreamError: CONFIG_INCOMPLETE when credentials are missing
            MpesaError: AUTH_FAILED on any non-2xx response
        """
        self._require_configuration()
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        response = await self._send(
            "token",
            "GET",
            TOKEN_PATH,
            failure_code="AUTH_FAILED",
            auth=(self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret),
        )
        try:
            body = response.json()
            token = body["access_token"]
            expires_in = int(body.get("expires_in", 3599))
        except (ValueError, KeyError, TypeError) as e:
            raise MpesaError(
                "Failed to generate M-Pesa access token",
                MpesaErrorType.AUTH,
                code="AUTH_FAILED",
                original_error=e,
            ) from e

        # Refresh a minute early
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        logger.info("mpesa_access_token_acquired", expires_in=expires_in)
        return token

    async def initiate_stk_push(
        self,
        phone_number: str,
        amount: "Decimal | float | int",
        account_reference: str,
        description: Optional[str] = None,
    ) -> StkPushResult:
        """
        Send an STK push prompt to the customer's phone.

        Args:
            phone_number: Customer phone in any common Kenyan format
            amount: Amount in shillings, rounded half up to a whole number
            account_reference: Order number shown to the customer
            description: Transaction description

        Returns:
            StkPushResult: Gateway acknowledgment; check ``accepted``

        Raises:
            ValidationError: Invalid phone or amount
            UpstreamError: Configuration incomplete
            MpesaError: Gateway failure; code STK_PUSH_UNCONFIRMED when the
                prompt may have reached the customer despite the error
        """
        self._require_configuration()
        phone = normalize_phone_number(phone_number)
        whole_amount = round_amount(amount)

        token = await self.get_access_token()
        password, timestamp = self.generate_password()
        payload = {
            "BusinessShortCode": self.settings.mpesa_business_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": self.settings.mpesa_business_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description or f"Payment for order {account_reference}",
        }

        logger.info(
            "initiating_stk_push",
            amount=whole_amount,
            account_reference=account_reference,
        )

        response = await self._send(
            "stk_push",
            "POST",
            STK_PUSH_PATH,
            idempotent=False,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        body = _json_body(response, "stk_push")
        result = StkPushResult(
            merchant_request_id=body.get("MerchantRequestID"),
            checkout_request_id=body.get("CheckoutRequestID"),
            response_code=str(body.get("ResponseCode", "")),
            response_description=body.get("ResponseDescription"),
            customer_message=body.get("CustomerMessage"),
            raw=body,
        )

        logger.info(
            "stk_push_acknowledged",
            checkout_request_id=result.checkout_request_id,
            response_code=result.response_code,
        )
        return result

    async def query_stk_status(self, checkout_request_id: str) -> StkQueryResult:
        """
        Poll the status of an STK push with a freshly signed request.

        Raises:
            UpstreamError: Configuration incomplete
            MpesaError: Gateway failure, including "still processing" answers
        """
        self._require_configuration()
        token = await self.get_access_token()
        password, timestamp = self.generate_password()
        payload = {
            "BusinessShortCode": self.settings.mpesa_business_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        logger.info("querying_stk_status", checkout_request_id=checkout_request_id)

        response = await self._send(
            "stk_query",
            "POST",
            STK_QUERY_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        body = _json_body(response, "stk_query")
        result_code = body.get("ResultCode")
        try:
            result_code = int(result_code) if result_code not in (None, "") else None
        except (TypeError, ValueError) as e:
            raise MpesaError(
                f"M-Pesa stk_query returned an invalid ResultCode: {result_code!r}",
                MpesaErrorType.PERMANENT,
                http_status=response.status_code,
                original_error=e,
            ) from e
        return StkQueryResult(
            checkout_request_id=checkout_request_id,
            response_code=body.get("ResponseCode"),
            result_code=result_code,
            result_desc=body.get("ResultDesc"),
            raw=body,
        )

    @staticmethod
    def parse_callback(payload: Any) -> CallbackResult:
        return parse_callback(payload)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http.aclose()
