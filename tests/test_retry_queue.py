from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from crawler_fleet.coordinator.models import RetryKey, RetryReason, RetryRecord
from crawler_fleet.coordinator.repository import FleetRepository
from crawler_fleet.coordinator.retry_queue import (
    AdmissionOutcome,
    FileOutputProbe,
    JsonFileRetryStore,
    RetryQueueManager,
    RetryStore,
    RetryStoreError,
    SqliteRetryStore,
    admit,
    config_stem,
)
from crawler_fleet.storage.common import utc_now

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Retry Queue"),
]

CFG_A = RetryKey(config_identifier="cfgA", symbol_code="2330", report_type="balance-sheet")


@pytest.fixture(params=["sqlite", "json"])
def store(request, tmp_path: Path, repository: FleetRepository) -> RetryStore:
    if request.param == "sqlite":
        return SqliteRetryStore(repository.engine)
    return JsonFileRetryStore(tmp_path / "retries" / "pipeline-retries.json")


@pytest.fixture()
def manager(store: RetryStore) -> RetryQueueManager:
    return RetryQueueManager(store, max_retries=3, base_delay_ms=5_000, cleanup_days=7)


def _key(symbol: str, report_type: str, config: str | None = None) -> RetryKey:
    return RetryKey(
        config_identifier=config or f"cfg-{symbol}-{report_type}",
        symbol_code=symbol,
        report_type=report_type,
    )


def _backdate(store: RetryStore, key: RetryKey, *, days: int) -> None:
    record = store.get(key)
    assert record is not None
    assert store.compare_and_set(key, expected=record, replacement=None)
    assert store.compare_and_set(
        key,
        expected=None,
        replacement=replace(record, timestamp=utc_now() - timedelta(days=days)),
    )


def test_first_add_inserts_record_at_one(manager: RetryQueueManager) -> None:
    admission = manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)

    assert admission.outcome == AdmissionOutcome.INSERTED
    assert admission.retry_count == 1
    [record] = manager.pending()
    assert record.key == CFG_A
    assert record.region == "TPE"
    assert record.reason == RetryReason.EMPTY_DATA
    assert record.retry_count == 1
    assert record.max_retries == 3
    assert record.last_retry_at is not None


def test_repeated_add_increments_single_record(manager: RetryQueueManager) -> None:
    manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)
    admission = manager.add(CFG_A, "TPE", RetryReason.TIMEOUT)

    assert admission.outcome == AdmissionOutcome.INCREMENTED
    records = manager.pending()
    assert len(records) == 1
    assert records[0].retry_count == 2
    assert records[0].reason == RetryReason.TIMEOUT


def test_third_add_with_ceiling_three_exhausts_record(manager: RetryQueueManager) -> None:
    for _ in range(2):
        manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)
    admission = manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)

    assert admission.exhausted
    assert admission.retry_count == 3
    assert manager.pending() == []


def test_pending_records_never_reach_their_ceiling(manager: RetryQueueManager) -> None:
    for _ in range(10):
        manager.add(CFG_A, "TPE", RetryReason.EXECUTION_FAILED, max_retries=4)
        for record in manager.pending():
            assert record.retry_count < record.max_retries


def test_add_then_remove_clears_key(manager: RetryQueueManager) -> None:
    manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)

    assert manager.remove(CFG_A) is True
    assert manager.remove(CFG_A) is False
    assert all(record.key != CFG_A for record in manager.pending())


def test_remove_all_for_symbol_clears_every_report_type(manager: RetryQueueManager) -> None:
    manager.add(_key("AAPL", "cashflow"), "US", RetryReason.EXECUTION_FAILED)
    manager.add(_key("AAPL", "balance-sheet"), "US", RetryReason.EMPTY_DATA)
    manager.add(_key("AAPL", "income-statement"), "JP", RetryReason.EMPTY_DATA)
    manager.add(_key("MSFT", "cashflow"), "US", RetryReason.TIMEOUT)

    removed = manager.remove_all_for_symbol("AAPL", "US")

    assert removed == 2
    remaining = {(record.symbol_code, record.region) for record in manager.pending()}
    assert remaining == {("AAPL", "JP"), ("MSFT", "US")}


def test_delay_doubles_per_retry(manager: RetryQueueManager) -> None:
    assert manager.delay(1) == 5_000
    for retry_count in range(1, 8):
        assert manager.delay(retry_count + 1) == 2 * manager.delay(retry_count)
    with pytest.raises(ValueError, match="retry_count"):
        manager.delay(0)


def test_cleanup_expired_removes_only_old_records(
    manager: RetryQueueManager,
    store: RetryStore,
) -> None:
    old = _key("2330", "balance-sheet")
    fresh = _key("2317", "balance-sheet")
    manager.add(old, "TPE", RetryReason.EMPTY_DATA)
    manager.add(fresh, "TPE", RetryReason.EMPTY_DATA)
    _backdate(store, old, days=8)

    removed = manager.cleanup_expired(7)

    assert removed == 1
    assert [record.key for record in manager.pending()] == [fresh]


def test_pending_is_oldest_first(manager: RetryQueueManager, store: RetryStore) -> None:
    first = _key("2330", "balance-sheet")
    second = _key("2317", "cashflow")
    manager.add(second, "TPE", RetryReason.EMPTY_DATA)
    manager.add(first, "TPE", RetryReason.EMPTY_DATA)
    _backdate(store, first, days=2)

    assert [record.key for record in manager.pending()] == [first, second]


def test_statistics_aggregate_pending_records(manager: RetryQueueManager) -> None:
    manager.add(_key("AAPL", "cashflow"), "US", RetryReason.EXECUTION_FAILED)
    manager.add(_key("AAPL", "balance-sheet"), "US", RetryReason.EMPTY_DATA)
    manager.add(_key("2330", "balance-sheet"), "TPE", RetryReason.EMPTY_DATA)

    stats = manager.statistics()

    assert stats.total_pending == 3
    assert stats.by_region == {"US": 2, "TPE": 1}
    assert stats.by_report_type == {"cashflow": 1, "balance-sheet": 2}
    assert stats.by_reason == {"execution_failed": 1, "empty_data": 2}
    assert stats.oldest_timestamp is not None


def test_clear_drops_everything(manager: RetryQueueManager) -> None:
    manager.add(_key("AAPL", "cashflow"), "US", RetryReason.EXECUTION_FAILED)
    manager.add(_key("2330", "balance-sheet"), "TPE", RetryReason.EMPTY_DATA)

    assert manager.clear() == 2
    assert manager.pending() == []


def test_concurrent_adds_keep_one_record_per_key(manager: RetryQueueManager) -> None:
    start = threading.Event()
    errors: list[Exception] = []

    def _worker() -> None:
        start.wait(timeout=2)
        try:
            manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA, max_retries=100)
        except Exception as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    [record] = manager.pending()
    assert record.retry_count == 8


def test_store_compare_and_set_rejects_stale_expectation(store: RetryStore) -> None:
    now = utc_now()
    record = RetryRecord(
        key=CFG_A,
        region="TPE",
        reason=RetryReason.EMPTY_DATA,
        retry_count=1,
        max_retries=3,
        timestamp=now,
    )
    assert store.compare_and_set(CFG_A, expected=None, replacement=record) is True
    assert store.compare_and_set(CFG_A, expected=None, replacement=record) is False

    bumped = replace(record, retry_count=2)
    assert store.compare_and_set(CFG_A, expected=record, replacement=bumped) is True
    assert store.compare_and_set(CFG_A, expected=record, replacement=bumped) is False
    stored = store.get(CFG_A)
    assert stored is not None
    assert stored.retry_count == 2


def test_admit_drops_record_already_at_ceiling() -> None:
    now = utc_now()
    existing = RetryRecord(
        key=CFG_A,
        region="TPE",
        reason=RetryReason.EMPTY_DATA,
        retry_count=3,
        max_retries=3,
        timestamp=now,
    )

    admission = admit(
        existing,
        key=CFG_A,
        region="TPE",
        reason=RetryReason.EMPTY_DATA,
        max_retries=3,
        now=now,
    )

    assert admission.exhausted
    assert admission.record is None


def test_json_store_missing_file_is_empty(tmp_path: Path) -> None:
    store = JsonFileRetryStore(tmp_path / "absent" / "retries.json")

    assert store.load_all() == []
    assert store.get(CFG_A) is None


def test_json_store_rejects_malformed_file(tmp_path: Path) -> None:
    path = tmp_path / "retries.json"
    path.write_text("{not json", "utf-8")
    manager = RetryQueueManager(JsonFileRetryStore(path))

    with pytest.raises(RetryStoreError, match="Malformed retry file"):
        manager.pending()


def test_json_store_writes_keyed_document(tmp_path: Path) -> None:
    path = tmp_path / "retries.json"
    manager = RetryQueueManager(JsonFileRetryStore(path))
    manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)

    document = json.loads(path.read_text("utf-8"))

    assert document["schema_version"] == 1
    assert list(document["records"]) == ["cfgA|2330|balance-sheet"]
    assert document["records"]["cfgA|2330|balance-sheet"]["retry_count"] == 1
    assert not list(tmp_path.glob("*.tmp.*"))


def test_json_store_reads_legacy_list_layout(tmp_path: Path) -> None:
    path = tmp_path / "pipeline-retries.json"
    path.write_text(
        json.dumps(
            [
                {
                    "configFile": "tw-2330-balance-sheet.json",
                    "symbolCode": "2330",
                    "reportType": "balance-sheet",
                    "region": "TPE",
                    "reason": "empty_data",
                    "retryCount": 1,
                    "maxRetries": 3,
                    "timestamp": "2026-10-01T08:00:00.000Z",
                    "lastRetryAt": "2026-10-01T08:00:00.000Z",
                },
            ],
        ),
        "utf-8",
    )
    manager = RetryQueueManager(JsonFileRetryStore(path))

    [record] = manager.pending()
    assert record.config_identifier == "tw-2330-balance-sheet.json"
    assert record.timestamp.tzinfo is not None

    manager.add(record.key, "TPE", RetryReason.EMPTY_DATA)
    document = json.loads(path.read_text("utf-8"))
    assert document["records"]["tw-2330-balance-sheet.json|2330|balance-sheet"][
        "retry_count"
    ] == 2


def test_config_stem_strips_directories_and_extension() -> None:
    assert config_stem("configs/tw/tw-2330-balance-sheet.json") == "tw-2330-balance-sheet"
    assert config_stem("us-AAPL-cashflow") == "us-AAPL-cashflow"


def test_cleanup_successful_purges_symbols_with_output(
    manager: RetryQueueManager,
    tmp_path: Path,
) -> None:
    output_dir = tmp_path / "output"
    (output_dir / "tw").mkdir(parents=True)
    (output_dir / "tw" / "tw-2330-balance-sheet_20261017.json").write_text(
        json.dumps({"rows": [1, 2, 3]}),
        "utf-8",
    )
    (output_dir / "tw" / "tw-2317-balance-sheet_20261017.json").write_text("[]", "utf-8")
    for symbol, report_type in (
        ("2330", "balance-sheet"),
        ("2330", "cashflow"),
        ("2317", "balance-sheet"),
    ):
        key = _key(symbol, report_type, f"tw-{symbol}-{report_type}.json")
        manager.add(key, "TPE", RetryReason.EMPTY_DATA)

    removed = manager.cleanup_successful(FileOutputProbe(), output_dir)

    assert removed == 2
    assert [record.symbol_code for record in manager.pending()] == ["2317"]


def test_cleanup_successful_skips_records_when_output_check_fails(
    manager: RetryQueueManager,
) -> None:
    class _FailingChecker:
        def has_valid_output(self, config_identifier: str, output_location: Path) -> bool:
            raise OSError(f"cannot read {output_location}")

    manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)

    assert manager.cleanup_successful(_FailingChecker(), Path("/nonexistent")) == 0
    assert len(manager.pending()) == 1


def test_output_check_errors_of_any_kind_skip_only_that_record(
    manager: RetryQueueManager,
    tmp_path: Path,
) -> None:
    class _PartlyBrokenChecker:
        def has_valid_output(self, config_identifier: str, output_location: Path) -> bool:
            if config_identifier == "cfgA":
                raise KeyError(config_identifier)
            return True

    manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)
    manager.add(_key("2317", "cashflow"), "TPE", RetryReason.EMPTY_DATA)

    assert manager.cleanup_successful(_PartlyBrokenChecker(), tmp_path) == 1
    assert [record.key for record in manager.pending()] == [CFG_A]


def test_explicit_ceiling_replaces_stored_one(manager: RetryQueueManager) -> None:
    manager.add(CFG_A, "TPE", RetryReason.EXECUTION_FAILED, max_retries=2)
    admission = manager.add(CFG_A, "TPE", RetryReason.TIMEOUT, max_retries=4)

    assert admission.outcome == AdmissionOutcome.INCREMENTED
    [record] = manager.pending()
    assert (record.retry_count, record.max_retries) == (2, 4)


def test_default_ceiling_keeps_stored_one(manager: RetryQueueManager) -> None:
    manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA, max_retries=5)
    for _ in range(3):
        manager.add(CFG_A, "TPE", RetryReason.EMPTY_DATA)

    [record] = manager.pending()
    assert (record.retry_count, record.max_retries) == (4, 5)
