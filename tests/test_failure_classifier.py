from __future__ import annotations

import allure
import pytest

from crawler_fleet.coordinator.failure_classifier import (
    FailureSignal,
    classify_failure,
)
from crawler_fleet.coordinator.models import (
    ExecutionError,
    ExecutionResult,
    FailureCategory,
    FailureReason,
    HistoryStatus,
    RetryReason,
)

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("signal", "category", "reason", "should_retry"),
    [
        (FailureSignal(error_message="ECONNRESET by peer"), "transient", "network_error", True),
        (FailureSignal(timed_out=True), "transient", "timeout", True),
        (FailureSignal(http_status=429), "transient", "rate_limited", True),
        (FailureSignal(http_status=503), "transient", "server_error", True),
        (FailureSignal(empty_result=True), "transient_data", "empty_data", True),
        (FailureSignal(http_status=404), "permanent", "not_found", False),
        (FailureSignal(http_status=401), "permanent", "access_denied", False),
        (FailureSignal(http_status=403), "permanent", "access_denied", False),
        (
            FailureSignal(error_message="Malformed config: missing selector"),
            "permanent",
            "config_error",
            False,
        ),
        (
            FailureSignal(error_message="Parse error at line 3"),
            "permanent",
            "parsing_error",
            False,
        ),
        (
            FailureSignal(error_message="worker version 1.2.0 is blacklisted"),
            "permanent",
            "version_blacklisted",
            False,
        ),
    ],
)
def test_classify_failure_table(
    signal: FailureSignal,
    category: str,
    reason: str,
    should_retry: bool,
) -> None:
    classification = classify_failure(signal)

    assert classification.category == FailureCategory(category)
    assert classification.reason == FailureReason(reason)
    assert classification.should_retry is should_retry
    assert classification.retry_ceiling is None


def test_unknown_signal_is_retryable_with_lowered_ceiling() -> None:
    classification = classify_failure(
        FailureSignal(error_message="something odd happened"),
        unknown_retry_ceiling=2,
    )

    assert classification.category == FailureCategory.TRANSIENT
    assert classification.reason == FailureReason.UNKNOWN
    assert classification.should_retry is True
    assert classification.retry_ceiling == 2
    assert classification.matched_rule == "fallback_unknown"


def test_http_status_wins_over_message_patterns() -> None:
    classification = classify_failure(
        FailureSignal(http_status=404, error_message="connection reset"),
    )

    assert classification.reason == FailureReason.NOT_FOUND
    assert classification.matched_rule == "http_not_found"


@pytest.mark.parametrize(
    "message",
    [
        "connect ECONNREFUSED 10.0.0.5:4040",
        "socket hang up after 14290 bytes",
        "network error after 404123 ms",
    ],
)
def test_status_digits_inside_numbers_do_not_match(message: str) -> None:
    classification = classify_failure(FailureSignal(error_message=message))

    assert classification.category == FailureCategory.TRANSIENT
    assert classification.reason == FailureReason.NETWORK_ERROR
    assert classification.should_retry is True


def test_standalone_status_codes_in_messages_still_match() -> None:
    not_found = classify_failure(FailureSignal(error_message="HTTP 404 from exchange site"))
    limited = classify_failure(FailureSignal(error_message="server replied (429)"))

    assert not_found.reason == FailureReason.NOT_FOUND
    assert not_found.matched_pattern == "404"
    assert limited.reason == FailureReason.RATE_LIMITED
    assert limited.matched_pattern == "429"


def test_blacklist_wins_over_http_status() -> None:
    classification = classify_failure(
        FailureSignal(http_status=503, error_message="version blacklisted by operator"),
    )

    assert classification.reason == FailureReason.VERSION_BLACKLISTED
    assert classification.should_retry is False


def test_timeout_flag_wins_over_permanent_message() -> None:
    classification = classify_failure(
        FailureSignal(timed_out=True, error_message="page not found"),
    )

    assert classification.reason == FailureReason.TIMEOUT
    assert classification.should_retry is True


def test_signal_from_result_maps_status_flags() -> None:
    timeout = FailureSignal.from_result(
        ExecutionResult(task_id="t1", status=HistoryStatus.TIMEOUT),
    )
    empty = FailureSignal.from_result(
        ExecutionResult(task_id="t1", status=HistoryStatus.EMPTY),
    )
    failed = FailureSignal.from_result(
        ExecutionResult(
            task_id="t1",
            status=HistoryStatus.FAILED,
            error=ExecutionError(message="boom", http_status=500, error_code="E500"),
        ),
    )

    assert timeout.timed_out is True
    assert empty.empty_result is True
    assert failed.http_status == 500
    assert failed.error_message == "boom"
    assert failed.error_code == "E500"


def test_retry_reason_follows_failure_reason() -> None:
    assert classify_failure(FailureSignal(timed_out=True)).retry_reason == RetryReason.TIMEOUT
    assert (
        classify_failure(FailureSignal(empty_result=True)).retry_reason == RetryReason.EMPTY_DATA
    )
    assert (
        classify_failure(FailureSignal(http_status=502)).retry_reason
        == RetryReason.EXECUTION_FAILED
    )


def test_event_details_carry_classifier_version() -> None:
    details = classify_failure(FailureSignal(http_status=429)).to_event_details()

    assert details["classifier_version"] == 1
    assert details["reason"] == "rate_limited"
    assert details["matched_pattern"] == "429"
