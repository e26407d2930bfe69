# cashout/errors.py
from __future__ import annotations

from typing import Any, Optional


class CashOutError(Exception):
    pass


class CashOutNotFound(CashOutError):
    def __init__(self, cash_out_id: str):
        super().__init__(f"Cash out request {cash_out_id} not found")
        self.cash_out_id = cash_out_id


class StaleRecordError(CashOutError):
    """Conditional write lost: the stored version moved on."""

    def __init__(self, cash_out_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Cash out request {cash_out_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.cash_out_id = cash_out_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DuplicateReference(CashOutError):
    def __init__(self, reference: str):
        super().__init__(f"Reference {reference} already exists")
        self.reference = reference


class ValidationError(CashOutError):
    def __init__(self, message: str, code: str = "VALIDATION_FAILED"):
        super().__init__(message)
        self.code = code


class ProviderErrorCode:
    # transient
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    TEMPORARY_FAILURE = "TEMPORARY_FAILURE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # business rejections
    INVALID_ACCOUNT = "INVALID_ACCOUNT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # other terminal
    PROVIDER_REQUEST_FAILED = "PROVIDER_REQUEST_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    CONFIG_MISSING = "CONFIG_MISSING"


TRANSIENT_CODES = frozenset(
    {
        ProviderErrorCode.NETWORK_ERROR,
        ProviderErrorCode.TIMEOUT,
        ProviderErrorCode.PROVIDER_UNAVAILABLE,
        ProviderErrorCode.TEMPORARY_FAILURE,
        ProviderErrorCode.RATE_LIMIT_EXCEEDED,
        ProviderErrorCode.SERVICE_UNAVAILABLE,
    }
)

BUSINESS_CODES = frozenset(
    {
        ProviderErrorCode.INVALID_ACCOUNT,
        ProviderErrorCode.INSUFFICIENT_FUNDS,
        ProviderErrorCode.ACCOUNT_NOT_FOUND,
        ProviderErrorCode.INVALID_AMOUNT,
        ProviderErrorCode.VALIDATION_FAILED,
    }
)


class ProviderError(CashOutError):
    """
    Raised by provider adapters. `code` drives retry classification,
    `response` keeps whatever the provider sent back for the audit trail.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        response: Optional[dict[str, Any]] = None,
        retryable_hint: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        # adapter opinion only; RetryPolicy decides from the code
        self.retryable_hint = retryable_hint if retryable_hint is not None else code in TRANSIENT_CODES
        self.provider = provider
        self.response = response

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code!r}, message={self.message!r})"
