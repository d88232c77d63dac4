"""Deterministic failure classification for task retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from crawler_fleet.coordinator.models import (
    ExecutionResult,
    FailureCategory,
    FailureReason,
    HistoryStatus,
    RetryReason,
)

FAILURE_CLASSIFIER_VERSION = 1
DEFAULT_UNKNOWN_RETRY_CEILING = 1

_VERSION_BLACKLIST_PATTERNS: tuple[str, ...] = (
    "blacklisted",
    "version blacklist",
    "version_blacklisted",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "access denied",
    "permission denied",
    "authentication",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "404",
    "not found",
    "page does not exist",
)
_CONFIG_PATTERNS: tuple[str, ...] = (
    "invalid configuration",
    "config error",
    "configuration error",
    "malformed config",
    "missing selector",
)
_PARSE_PATTERNS: tuple[str, ...] = (
    "parse error",
    "malformed",
    "unexpected token",
    "syntaxerror",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "too many requests",
    "rate limit",
    "throttle",
    "quota exceeded",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "etimedout",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection reset",
    "connection refused",
    "econnreset",
    "econnrefused",
    "enotfound",
    "socket hang up",
    "could not resolve host",
    "dns",
    "ssl",
)
_EMPTY_DATA_PATTERNS: tuple[str, ...] = (
    "empty data",
    "empty result",
    "no data",
    "no records",
)
_HTTP_NOT_FOUND = 404
_HTTP_RATE_LIMITED = 429
_HTTP_AUTH_STATUSES = frozenset({401, 403})
_HTTP_SERVER_ERROR_MIN = 500


@dataclass(slots=True)
class FailureSignal:
    """Raw failure signal as reported by a worker."""

    http_status: int | None = None
    error_message: str = ""
    timed_out: bool = False
    empty_result: bool = False
    error_code: str | None = None

    @classmethod
    def from_result(cls, result: ExecutionResult) -> FailureSignal:
        """Extract the classifier input from an execution report."""

        error = result.error
        return cls(
            http_status=error.http_status if error is not None else None,
            error_message=error.message if error is not None else "",
            timed_out=result.status == HistoryStatus.TIMEOUT
            or (error is not None and error.timed_out),
            empty_result=result.status == HistoryStatus.EMPTY,
            error_code=error.error_code if error is not None else None,
        )


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: FailureCategory
    reason: FailureReason
    should_retry: bool
    matched_rule: str
    matched_pattern: str | None = None
    retry_ceiling: int | None = None

    @property
    def retry_reason(self) -> RetryReason:
        """Reason recorded on the retry-queue entry for this failure."""

        if self.reason == FailureReason.TIMEOUT:
            return RetryReason.TIMEOUT
        if self.reason == FailureReason.EMPTY_DATA:
            return RetryReason.EMPTY_DATA
        return RetryReason.EXECUTION_FAILED

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "category": self.category.value,
            "reason": self.reason.value,
            "should_retry": self.should_retry,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "retry_ceiling": self.retry_ceiling,
        }


def classify_failure(
    signal: FailureSignal,
    *,
    unknown_retry_ceiling: int = DEFAULT_UNKNOWN_RETRY_CEILING,
) -> FailureClassification:
    """Classify a failure signal into a deterministic retry class.

    Checks run in a fixed order: version blacklist, HTTP status, explicit
    timeout/empty flags, then message patterns. Signals nothing matches are
    treated as transient with a lowered retry ceiling.
    """

    haystack = _normalize_text(signal)

    pattern = _first_match(haystack, _VERSION_BLACKLIST_PATTERNS)
    if pattern is not None:
        return _permanent(FailureReason.VERSION_BLACKLISTED, "version_blacklisted", pattern)

    status_match = _classify_http_status(signal.http_status)
    if status_match is not None:
        return status_match

    if signal.timed_out:
        return _transient(FailureReason.TIMEOUT, "timeout_flag", None)
    if signal.empty_result:
        return FailureClassification(
            category=FailureCategory.TRANSIENT_DATA,
            reason=FailureReason.EMPTY_DATA,
            should_retry=True,
            matched_rule="empty_result_flag",
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return _permanent(FailureReason.ACCESS_DENIED, "access_or_auth", pattern)

    pattern = _first_match(haystack, _NOT_FOUND_PATTERNS)
    if pattern is not None:
        return _permanent(FailureReason.NOT_FOUND, "not_found", pattern)

    pattern = _first_match(haystack, _CONFIG_PATTERNS)
    if pattern is not None:
        return _permanent(FailureReason.CONFIG_ERROR, "config_error", pattern)

    pattern = _first_match(haystack, _PARSE_PATTERNS)
    if pattern is not None:
        return _permanent(FailureReason.PARSING_ERROR, "parse_error", pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _transient(FailureReason.RATE_LIMITED, "rate_limited", pattern)

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _transient(FailureReason.TIMEOUT, "timeout_message", pattern)

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return _transient(FailureReason.NETWORK_ERROR, "network_error", pattern)

    pattern = _first_match(haystack, _EMPTY_DATA_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=FailureCategory.TRANSIENT_DATA,
            reason=FailureReason.EMPTY_DATA,
            should_retry=True,
            matched_rule="empty_data_message",
            matched_pattern=pattern,
        )

    return FailureClassification(
        category=FailureCategory.TRANSIENT,
        reason=FailureReason.UNKNOWN,
        should_retry=True,
        matched_rule="fallback_unknown",
        retry_ceiling=max(0, unknown_retry_ceiling),
    )


def _classify_http_status(status: int | None) -> FailureClassification | None:
    if status is None:
        return None
    if status in _HTTP_AUTH_STATUSES:
        return _permanent(FailureReason.ACCESS_DENIED, "http_auth_status", str(status))
    if status == _HTTP_NOT_FOUND:
        return _permanent(FailureReason.NOT_FOUND, "http_not_found", str(status))
    if status == _HTTP_RATE_LIMITED:
        return _transient(FailureReason.RATE_LIMITED, "http_rate_limited", str(status))
    if status >= _HTTP_SERVER_ERROR_MIN:
        return _transient(FailureReason.SERVER_ERROR, "http_server_error", str(status))
    return None


def _permanent(
    reason: FailureReason,
    rule: str,
    pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        category=FailureCategory.PERMANENT,
        reason=reason,
        should_retry=False,
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _transient(
    reason: FailureReason,
    rule: str,
    pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        category=FailureCategory.TRANSIENT,
        reason=reason,
        should_retry=True,
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _normalize_text(signal: FailureSignal) -> str:
    return f"{signal.error_code or ''}\n{signal.error_message}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern.isdigit():
            # Status codes only count as standalone numbers, not inside ports or sizes.
            if re.search(rf"(?<!\d){pattern}(?!\d)", haystack):
                return pattern
        elif pattern in haystack:
            return pattern
    return None
