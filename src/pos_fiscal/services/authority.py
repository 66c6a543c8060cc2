"""Client for the FBR Digital Invoicing API.

This module provides the AuthorityClient class that handles all communication
with the tax authority. It includes:

- A shared async HTTP connection pool with per-call tenant credentials
- Sandbox/production endpoint selection
- Classification of responses into accepted, rejected and unavailable
- Translation of FBR error codes into operator-friendly messages
- Metrics collection for monitoring
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from pos_fiscal.core.settings import settings
from pos_fiscal.services.vault import ResolvedCredential

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500

FBR_SUCCESS_CODE = "00"

VALIDATE_OPERATION = "validateinvoicedata"
SUBMIT_OPERATION = "postinvoicedata"
SANDBOX_SUFFIX = "_sb"

REFERENCE_PATHS = {
    "province": "provinces",
    "hs_code": "itemdesccode",
    "uom": "uom",
}

FBR_ERROR_MESSAGES = {
    "0001": "FBR Error: Your business is not registered for sales tax. "
    "Please check your NTN in the settings.",
    "0002": "FBR Error: The customer's NTN or CNIC is invalid. "
    "Please use a valid 13-digit CNIC or 7/9-digit NTN.",
    "0021": "FBR Error: The 'Value of Sales' for an item is missing. "
    "Please ensure the product has a valid price.",
    "0052": "FBR Error: The HS Code for a product is incorrect. "
    "Please update it in the product settings.",
    "0053": "FBR Error: Invalid invoice date format. Please use YYYY-MM-DD format.",
    "0054": "FBR Error: Invalid quantity value. Please enter a valid numeric quantity.",
    "0055": "FBR Error: Invalid tax rate. Please check the tax rate configuration.",
    "0056": "FBR Error: Missing required field. Please check all required fields are filled.",
    "0057": "FBR Error: Invalid province code. Please select a valid province.",
    "0058": "FBR Error: Invalid unit of measure. Please select a valid UOM.",
    "0059": "FBR Error: Invalid scenario ID. Please check the sale type configuration.",
    "0060": "FBR Error: Duplicate invoice reference number. "
    "Please use a unique reference number.",
}


class AuthorityError(RuntimeError):
    """Base exception raised for FBR API failures."""


class AuthorityUnavailableError(AuthorityError):
    """Raised for failures expected to clear on retry.

    Network errors, timeouts, 5xx, rate limiting and responses that cannot be
    interpreted all land here.
    """


class AuthorityAuthenticationError(AuthorityError):
    """Raised when FBR refuses the tenant's token (401/403)."""


class AuthorityRejectedError(AuthorityError):
    """Raised when FBR returns structured validation errors for the invoice."""

    def __init__(self, errors: list[str], status_code: int | None = None) -> None:
        self.errors = errors
        self.status_code = status_code
        super().__init__("; ".join(errors) or "Invoice rejected by FBR")


def translate_fbr_error(code: str | None, message: str | None = None) -> str:
    """Map an FBR error code to a message a cashier can act on."""
    if code and code in FBR_ERROR_MESSAGES:
        return FBR_ERROR_MESSAGES[code]
    if message:
        return f"FBR Error {code}: {message}" if code else f"FBR Error: {message}"
    return f"FBR Error: {code}" if code else "FBR Error: unknown error"


def _error_from_record(record: Mapping[str, Any]) -> str | None:
    code = record.get("errorCode")
    message = record.get("error") or record.get("message")
    if not code and not message:
        return None
    text = translate_fbr_error(str(code) if code else None, str(message) if message else None)
    item = record.get("itemSNo")
    return f"Item {item}: {text}" if item else text


def extract_errors(body: Any) -> list[str]:
    """Collect every error message from an FBR response body."""
    if not isinstance(body, Mapping):
        return []

    errors: list[str] = []
    records: list[Any] = [body]
    validation = body.get("validationResponse")
    if isinstance(validation, Mapping):
        records.append(validation)
        records.extend(validation.get("invoiceStatuses") or [])
    records.extend(body.get("invoiceStatuses") or [])

    for record in records:
        if isinstance(record, Mapping):
            message = _error_from_record(record)
            if message and message not in errors:
                errors.append(message)

    for raw in body.get("errors") or []:
        if isinstance(raw, Mapping):
            message = _error_from_record(raw)
        else:
            message = str(raw) if raw else None
        if message and message not in errors:
            errors.append(message)

    return errors


@dataclass
class AuthorityMetrics:
    """Metrics collection for FBR API operations."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    min_response_time: float = float("inf")
    max_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    endpoint_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, endpoint: str, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.min_response_time = min(self.min_response_time, response_time)
        self.max_response_time = max(self.max_response_time, response_time)
        self.endpoint_counts[endpoint] += 1

        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        """Get average response time."""
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def get_success_rate(self) -> float:
        """Get success rate as a percentage."""
        return (self.success_count / self.request_count * 100) if self.request_count > 0 else 0.0


@dataclass(frozen=True)
class AuthorityConfig:
    """Immutable configuration for FBR API operations."""

    reference_base_url: str
    reference_token: str | None
    timeout_seconds: float


@dataclass(frozen=True)
class SubmissionAccepted:
    """Fiscal invoice number issued by FBR."""

    invoice_number: str
    dated: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


def load_authority_config() -> AuthorityConfig:
    """Build configuration object from global settings."""
    token = settings.fbr_reference_token
    return AuthorityConfig(
        reference_base_url=settings.fbr_reference_base_url,
        reference_token=token.get_secret_value() if token else None,
        timeout_seconds=float(settings.fbr_http_timeout_seconds),
    )


class AuthorityClient:
    """HTTP client wrapper for FBR Digital Invoicing interactions.

    One connection pool is shared by every tenant; the tenant's bearer token
    and base URL are supplied on each call and never stored on the client.
    """

    def __init__(
        self,
        config: AuthorityConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_authority_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._metrics = AuthorityMetrics()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    @staticmethod
    def _build_headers(
        token: str | None, *, idempotency_key: str | None = None
    ) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def endpoint_url(credential: ResolvedCredential, operation: str) -> str:
        """Return the validate/submit URL for a tenant, honouring sandbox mode."""
        suffix = SANDBOX_SUFFIX if credential.sandbox else ""
        return f"{credential.base_url.rstrip('/')}/{operation}{suffix}"

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        url: str
        label: str
        token: str | None = None
        content: bytes | None = None
        idempotency_key: str | None = None

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        headers = self._build_headers(params.token, idempotency_key=params.idempotency_key)
        if params.content is not None:
            headers["Content-Type"] = "application/json"

        start_time = time.time()
        success = False
        error_type = None
        response_time = 0.0

        try:
            response = await client.request(
                params.method,
                params.url,
                content=params.content,
                headers=headers,
            )
            response_time = time.time() - start_time

            if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
                error_type = f"http_{response.status_code}"
                raise AuthorityAuthenticationError(
                    f"FBR refused the API token ({response.status_code})"
                )
            if (
                response.status_code >= HTTP_INTERNAL_SERVER_ERROR
                or response.status_code == HTTP_TOO_MANY_REQUESTS
            ):
                error_type = f"http_{response.status_code}"
                raise AuthorityUnavailableError(f"FBR responded with {response.status_code}")
            success = response.status_code == HTTP_OK
            if not success:
                error_type = f"http_{response.status_code}"

        except httpx.TimeoutException as exc:
            response_time = time.time() - start_time
            error_type = "timeout"
            raise AuthorityUnavailableError("FBR request timed out") from exc
        except httpx.HTTPError as exc:
            response_time = time.time() - start_time
            error_type = "network_error"
            raise AuthorityUnavailableError(f"FBR request failed: {exc}") from exc
        finally:
            self._metrics.record_request(params.label, response_time, success, error_type)

        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

    def _classify_failure(self, response: httpx.Response, body: Any) -> AuthorityError:
        errors = extract_errors(body)
        if errors:
            return AuthorityRejectedError(errors, status_code=response.status_code)
        return AuthorityUnavailableError(
            f"FBR returned an unrecognised response ({response.status_code})"
        )

    async def validate_invoice(
        self, credential: ResolvedCredential, payload: bytes
    ) -> list[str]:
        """Ask FBR to validate a payload without recording it.

        Returns:
            Translated error messages; empty when FBR accepts the payload

        Raises:
            AuthorityUnavailableError: On transient failures
            AuthorityAuthenticationError: If the token is refused
        """
        response = await self._request(
            self.RequestParams(
                method="POST",
                url=self.endpoint_url(credential, VALIDATE_OPERATION),
                label="POST validateinvoicedata",
                token=credential.token,
                content=payload,
            )
        )
        body = self._json(response)
        validation = body.get("validationResponse") if isinstance(body, Mapping) else None
        if response.status_code == HTTP_OK and isinstance(validation, Mapping):
            if validation.get("statusCode") == FBR_SUCCESS_CODE:
                return []

        failure = self._classify_failure(response, body)
        if isinstance(failure, AuthorityRejectedError):
            return failure.errors
        raise failure

    async def submit_invoice(
        self,
        credential: ResolvedCredential,
        payload: bytes,
        idempotency_key: str | None = None,
    ) -> SubmissionAccepted:
        """Post a frozen payload to FBR.

        Args:
            credential: Decrypted tenant credential
            payload: Canonical JSON bytes, sent unchanged
            idempotency_key: Stable invoice reference for deduplication

        Returns:
            The FBR invoice number and its timestamp

        Raises:
            AuthorityRejectedError: FBR returned structured validation errors
            AuthorityUnavailableError: On transient failures
            AuthorityAuthenticationError: If the token is refused
        """
        response = await self._request(
            self.RequestParams(
                method="POST",
                url=self.endpoint_url(credential, SUBMIT_OPERATION),
                label="POST postinvoicedata",
                token=credential.token,
                content=payload,
                idempotency_key=idempotency_key,
            )
        )
        body = self._json(response)

        if response.status_code == HTTP_OK and isinstance(body, Mapping):
            validation = body.get("validationResponse") or {}
            status_code = validation.get("statusCode") if isinstance(validation, Mapping) else None
            invoice_number = body.get("invoiceNumber")
            if status_code == FBR_SUCCESS_CODE and invoice_number:
                return SubmissionAccepted(
                    invoice_number=str(invoice_number),
                    dated=body.get("dated"),
                    raw=body,
                )
            if status_code and status_code != FBR_SUCCESS_CODE:
                errors = extract_errors(body) or [translate_fbr_error(None, str(status_code))]
                raise AuthorityRejectedError(errors, status_code=response.status_code)
            raise AuthorityUnavailableError("FBR response did not include an invoice number")

        raise self._classify_failure(response, body)

    async def fetch_reference(self, kind: str) -> list[dict[str, Any]]:
        """Fetch one reference table (``province``, ``hs_code`` or ``uom``)."""
        path = REFERENCE_PATHS[kind]
        response = await self._request(
            self.RequestParams(
                method="GET",
                url=f"{self.config.reference_base_url.rstrip('/')}/{path}",
                label=f"GET {path}",
                token=self.config.reference_token,
            )
        )
        body = self._json(response)
        if response.status_code != HTTP_OK or not isinstance(body, list):
            raise AuthorityUnavailableError(
                f"Unexpected FBR response ({response.status_code}) for {path}"
            )
        return [record for record in body if isinstance(record, dict)]

    def get_metrics(self) -> dict[str, Any]:
        """Get FBR API operation metrics.

        Returns:
            Dictionary containing performance and usage metrics
        """
        return {
            "request_count": self._metrics.request_count,
            "success_count": self._metrics.success_count,
            "error_count": self._metrics.error_count,
            "success_rate": self._metrics.get_success_rate(),
            "average_response_time": self._metrics.get_average_response_time(),
            "min_response_time": (
                self._metrics.min_response_time
                if self._metrics.min_response_time != float("inf")
                else 0.0
            ),
            "max_response_time": self._metrics.max_response_time,
            "error_counts_by_type": dict(self._metrics.error_counts_by_type),
            "endpoint_counts": dict(self._metrics.endpoint_counts),
        }

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class _AuthorityClientSingleton:
    """Singleton wrapper for AuthorityClient."""

    _instance: AuthorityClient | None = None

    @classmethod
    def get_instance(cls) -> AuthorityClient:
        """Get or create the singleton AuthorityClient instance."""
        if cls._instance is None:
            cls._instance = AuthorityClient()
        return cls._instance


def get_authority_client() -> AuthorityClient:
    """Return a singleton authority client instance."""
    return _AuthorityClientSingleton.get_instance()
