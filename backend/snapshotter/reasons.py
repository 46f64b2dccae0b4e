"""Closed set of snapshot failure reasons.

Retriable reasons may be retried while the attempt budget lasts; terminal
reasons end processing immediately.
"""
from __future__ import annotations

import enum
from typing import Union


class RetriableReason(str, enum.Enum):
    TIMEOUT = "timeout"
    FETCH_ERROR = "fetch_error"
    STORAGE_ERROR = "storage_error"


class TerminalReason(str, enum.Enum):
    NOARCHIVE = "noarchive"
    FORBIDDEN = "forbidden"
    NOT_HTML = "not_html"
    TOO_LARGE = "too_large"
    INVALID_URL = "invalid_url"
    PARSE_FAILED = "parse_failed"
    SSRF_BLOCKED = "ssrf_blocked"


FailureReason = Union[RetriableReason, TerminalReason]


def parse_reason(value: str | FailureReason) -> FailureReason:
    """Map a raw reason string onto the enums. Unknown values are terminal."""
    if isinstance(value, (RetriableReason, TerminalReason)):
        return value
    raw = str(value or "").strip().lower()
    for enum_cls in (RetriableReason, TerminalReason):
        try:
            return enum_cls(raw)
        except ValueError:
            continue
    return TerminalReason.PARSE_FAILED


def is_retriable(reason: FailureReason) -> bool:
    return isinstance(reason, RetriableReason)


def blocked_reason_for(reason: FailureReason) -> str:
    """Value stored in ``save_snapshots.blocked_reason`` for a final outcome.

    Storage failures are infrastructure errors, recorded as ``fetch_error``.
    """
    if reason is RetriableReason.STORAGE_ERROR:
        return RetriableReason.FETCH_ERROR.value
    return reason.value
