# cashout/retry/policy.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from cashout.errors import BUSINESS_CODES, TRANSIENT_CODES
from cashout.records.model import CashOutRecord
from settings import Settings, retryable_error_codes, settings

# Provider rejections about the request itself; retrying cannot change the answer.
_BUSINESS_MESSAGE_RE = re.compile(
    r"invalid account|insufficient funds|account not found|invalid amount|validation failed",
    re.IGNORECASE,
)


def is_business_failure(error: BaseException) -> bool:
    code = getattr(error, "code", None)
    if code and str(code).upper() in BUSINESS_CODES:
        return True
    message = getattr(error, "message", None) or str(error)
    return bool(_BUSINESS_MESSAGE_RE.search(message or ""))


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 30_000
    max_delay_ms: int = 3_600_000
    retryable_codes: frozenset[str] = field(default_factory=lambda: frozenset(TRANSIENT_CODES))
    claim_lease_ms: int = 300_000

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "RetryPolicy":
        s = s or settings
        return cls(
            max_retries=int(s.CASHOUT_MAX_RETRIES),
            initial_delay_ms=int(s.CASHOUT_RETRY_INITIAL_DELAY_MS),
            max_delay_ms=int(s.CASHOUT_RETRY_MAX_DELAY_MS),
            retryable_codes=retryable_error_codes(s),
            claim_lease_ms=int(s.CASHOUT_RETRY_CLAIM_LEASE_MS),
        )

    def delay_ms(self, retry_count: int) -> int:
        # 30s, 60s, 120s, ... capped
        return int(min(self.initial_delay_ms * (2 ** max(0, int(retry_count))), self.max_delay_ms))

    def should_retry(self, record: CashOutRecord, error: BaseException) -> bool:
        if record.retry_count >= self.max_retries:
            return False
        if record.is_terminal:
            return False

        code = getattr(error, "code", None)
        if code and str(code).upper() not in self.retryable_codes:
            return False

        return not is_business_failure(error)
