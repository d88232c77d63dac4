"""Durable, deduplicated retry backlog with exponential backoff.

One record exists per (config identifier, symbol code, report type). Repeated
failures bump that record's counter; reaching the ceiling removes it. Two
backends share the same keyed contract: a SQLite table for the coordinator
database and a JSON document for file-based deployments.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from crawler_fleet.coordinator.models import RetryKey, RetryReason, RetryRecord
from crawler_fleet.storage.common import (
    from_iso,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crawler_fleet.storage.sqlmodel_models import RetryRecordRow

logger = logging.getLogger(__name__)

RETRY_FILE_SCHEMA_VERSION = 1
_MAX_CAS_ATTEMPTS = 16


class RetryStoreError(RuntimeError):
    """Raised when the retry store cannot be read or written."""


class AdmissionOutcome(str, Enum):
    INSERTED = "inserted"
    INCREMENTED = "incremented"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class RetryAdmission:
    """Result of admitting one retryable failure into the backlog."""

    outcome: AdmissionOutcome
    key: RetryKey
    retry_count: int
    record: RetryRecord | None = None

    @property
    def exhausted(self) -> bool:
        return self.outcome == AdmissionOutcome.EXHAUSTED


@dataclass(slots=True)
class RetryStatistics:
    """Aggregate view of the pending backlog."""

    total_pending: int = 0
    by_region: dict[str, int] = field(default_factory=dict)
    by_report_type: dict[str, int] = field(default_factory=dict)
    by_reason: dict[str, int] = field(default_factory=dict)
    oldest_timestamp: datetime | None = None


class OutputProbe(Protocol):
    """Checks whether valid collected output already exists for a crawler config."""

    def has_valid_output(self, config_identifier: str, output_location: Path) -> bool:
        """Return True when output for ``config_identifier`` is present and valid."""


class RetryStore(ABC):
    """Keyed retry-record storage with a compare-and-set primitive."""

    @abstractmethod
    def load_all(self) -> list[RetryRecord]: ...

    @abstractmethod
    def get(self, key: RetryKey) -> RetryRecord | None: ...

    @abstractmethod
    def compare_and_set(
        self,
        key: RetryKey,
        *,
        expected: RetryRecord | None,
        replacement: RetryRecord | None,
    ) -> bool:
        """Replace the record under ``key`` only if it still matches ``expected``.

        ``expected=None`` means the key must be absent; ``replacement=None``
        deletes it.
        """

    @abstractmethod
    def delete(self, key: RetryKey) -> bool: ...

    @abstractmethod
    def delete_for_symbol(self, symbol_code: str, region: str) -> int: ...

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int: ...

    @abstractmethod
    def delete_all(self) -> int: ...


class SqliteRetryStore(RetryStore):
    """Retry records in the coordinator database, one row per key."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_all(self) -> list[RetryRecord]:
        with Session(self.engine) as session:
            rows = session.exec(select(RetryRecordRow)).all()
        return [_row_to_record(row) for row in rows]

    def get(self, key: RetryKey) -> RetryRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(RetryRecordRow).where(*_key_clause(key)),
            ).one_or_none()
        return _row_to_record(row) if row is not None else None

    def compare_and_set(
        self,
        key: RetryKey,
        *,
        expected: RetryRecord | None,
        replacement: RetryRecord | None,
    ) -> bool:
        if expected is None:
            if replacement is None:
                return self.get(key) is None
            return self._insert(replacement)

        with Session(self.engine) as session:
            guard = (*_key_clause(key), col(RetryRecordRow.retry_count) == expected.retry_count)
            if replacement is None:
                result = session.exec(sa_delete(RetryRecordRow).where(*guard))
            else:
                result = session.exec(
                    sa_update(RetryRecordRow)
                    .where(*guard)
                    .values(
                        region=replacement.region,
                        reason=replacement.reason.value,
                        retry_count=replacement.retry_count,
                        max_retries=replacement.max_retries,
                        last_retry_at=(
                            to_db_datetime(replacement.last_retry_at)
                            if replacement.last_retry_at is not None
                            else None
                        ),
                    ),
                )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _insert(self, record: RetryRecord) -> bool:
        with Session(self.engine) as session:
            session.add(_record_to_row(record))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def delete(self, key: RetryKey) -> bool:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(RetryRecordRow).where(*_key_clause(key)))
            session.commit()
        return result.rowcount > 0

    def delete_for_symbol(self, symbol_code: str, region: str) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(RetryRecordRow).where(
                    col(RetryRecordRow.symbol_code) == symbol_code,
                    col(RetryRecordRow.region) == region,
                ),
            )
            session.commit()
        return int(result.rowcount)

    def delete_older_than(self, cutoff: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(RetryRecordRow).where(
                    col(RetryRecordRow.timestamp) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
        return int(result.rowcount)

    def delete_all(self) -> int:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(RetryRecordRow))
            session.commit()
        return int(result.rowcount)


class JsonFileRetryStore(RetryStore):
    """Retry records in a keyed JSON document, replaced atomically on every write.

    A missing file reads as an empty collection. The older list-of-records
    layout (camelCase fields, ``configFile`` as the config identifier) is still
    readable and is rewritten in the keyed layout on the next mutation.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def load_all(self) -> list[RetryRecord]:
        with self._lock:
            return list(self._read().values())

    def get(self, key: RetryKey) -> RetryRecord | None:
        with self._lock:
            return self._read().get(key)

    def compare_and_set(
        self,
        key: RetryKey,
        *,
        expected: RetryRecord | None,
        replacement: RetryRecord | None,
    ) -> bool:
        with self._lock:
            records = self._read()
            current = records.get(key)
            if expected is None and current is not None:
                return False
            if expected is not None and (
                current is None or current.retry_count != expected.retry_count
            ):
                return False
            if replacement is None:
                if current is None:
                    return True
                del records[key]
            else:
                records[key] = replacement
            self._write(records)
            return True

    def delete(self, key: RetryKey) -> bool:
        with self._lock:
            records = self._read()
            if records.pop(key, None) is None:
                return False
            self._write(records)
            return True

    def delete_for_symbol(self, symbol_code: str, region: str) -> int:
        return self._delete_matching(
            lambda record: record.symbol_code == symbol_code and record.region == region,
        )

    def delete_older_than(self, cutoff: datetime) -> int:
        return self._delete_matching(lambda record: record.timestamp < cutoff)

    def delete_all(self) -> int:
        return self._delete_matching(lambda _: True)

    def _delete_matching(self, predicate: Any) -> int:
        with self._lock:
            records = self._read()
            kept = {key: record for key, record in records.items() if not predicate(record)}
            removed = len(records) - len(kept)
            if removed:
                self._write(kept)
            return removed

    def _read(self) -> dict[RetryKey, RetryRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text("utf-8")
        except OSError as error:
            raise RetryStoreError(f"Failed to read retry file {self.path}: {error}") from error
        if not raw.strip():
            return {}
        try:
            payload = json.loads(raw)
            if isinstance(payload, list):
                records = [_legacy_to_record(item) for item in payload]
            elif isinstance(payload, dict) and isinstance(payload.get("records"), dict):
                records = [_document_to_record(item) for item in payload["records"].values()]
            else:
                raise ValueError("expected a keyed 'records' object or a list of records")
        except (ValueError, KeyError, TypeError) as error:
            raise RetryStoreError(f"Malformed retry file {self.path}: {error}") from error
        return {record.key: record for record in records}

    def _write(self, records: dict[RetryKey, RetryRecord]) -> None:
        document = {
            "schema_version": RETRY_FILE_SCHEMA_VERSION,
            "records": {
                key.label(): _record_to_document(record)
                for key, record in sorted(records.items(), key=lambda item: item[0].label())
            },
        }
        tmp = self.path.with_name(f"{self.path.name}.tmp.{os.getpid()}.{threading.get_ident()}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(document, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, self.path)
        except OSError as error:
            raise RetryStoreError(f"Failed to write retry file {self.path}: {error}") from error
        finally:
            if tmp.exists():
                tmp.unlink()


class FileOutputProbe:
    """Treats a non-empty JSON file named after the config as valid output."""

    def has_valid_output(self, config_identifier: str, output_location: Path) -> bool:
        if not output_location.is_dir():
            return False
        stem = config_stem(config_identifier)
        for candidate in sorted(output_location.rglob(f"{stem}*.json")):
            if not candidate.is_file() or candidate.stat().st_size == 0:
                continue
            try:
                payload = json.loads(candidate.read_text("utf-8"))
            except ValueError:
                logger.debug("Ignoring unparsable output file %s", candidate)
                continue
            if payload:
                return True
        return False


def config_stem(config_identifier: str) -> str:
    """File-name stem of a crawler config identifier (path and ``.json`` stripped)."""

    name = PurePosixPath(config_identifier.replace("\\", "/")).name
    if name.endswith(".json"):
        name = name[: -len(".json")]
    return name


def admit(  # noqa: PLR0913
    existing: RetryRecord | None,
    *,
    key: RetryKey,
    region: str,
    reason: RetryReason,
    max_retries: int,
    now: datetime,
) -> RetryAdmission:
    """Apply one failure to the record stored under ``key``.

    ``max_retries`` is the ceiling in force for this failure and replaces the
    stored one. An existing record already at that ceiling is dropped.
    Otherwise the count is bumped (or a record created at 1); a count that
    reaches the ceiling drops the record too, so nothing is ever stored at or
    over its limit.
    """

    if existing is not None and existing.retry_count >= max_retries:
        return RetryAdmission(
            outcome=AdmissionOutcome.EXHAUSTED,
            key=key,
            retry_count=existing.retry_count,
        )
    if existing is None:
        record = RetryRecord(
            key=key,
            region=region,
            reason=reason,
            retry_count=1,
            max_retries=max_retries,
            timestamp=now,
            last_retry_at=now,
        )
        outcome = AdmissionOutcome.INSERTED
    else:
        record = replace(
            existing,
            retry_count=existing.retry_count + 1,
            reason=reason,
            max_retries=max_retries,
            last_retry_at=now,
        )
        outcome = AdmissionOutcome.INCREMENTED
    if record.retry_count >= record.max_retries:
        return RetryAdmission(
            outcome=AdmissionOutcome.EXHAUSTED,
            key=key,
            retry_count=record.retry_count,
        )
    return RetryAdmission(outcome=outcome, key=key, retry_count=record.retry_count, record=record)


class RetryQueueManager:
    """Serialized retry backlog operations over a ``RetryStore``."""

    def __init__(
        self,
        store: RetryStore,
        *,
        max_retries: int = 3,
        base_delay_ms: int = 5_000,
        cleanup_days: int = 7,
    ) -> None:
        if max_retries <= 0:
            raise ValueError("max_retries must be > 0.")
        if base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be > 0.")
        self.store = store
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.cleanup_days = cleanup_days
        self._lock = threading.Lock()

    def add(
        self,
        key: RetryKey,
        region: str,
        reason: RetryReason,
        *,
        max_retries: int | None = None,
    ) -> RetryAdmission:
        """Admit one retryable failure for ``key``.

        An explicit ``max_retries`` replaces the ceiling stored on an existing
        record; otherwise the record keeps the ceiling it was created with.
        """

        with self._lock:
            for _ in range(_MAX_CAS_ATTEMPTS):
                existing = self.store.get(key)
                ceiling = self._ceiling_for(existing, max_retries)
                admission = admit(
                    existing,
                    key=key,
                    region=region,
                    reason=reason,
                    max_retries=ceiling,
                    now=utc_now(),
                )
                if self.store.compare_and_set(
                    key,
                    expected=existing,
                    replacement=admission.record,
                ):
                    break
            else:
                raise RetryStoreError(
                    f"Retry record {key.label()} kept changing concurrently; giving up.",
                )

        if admission.exhausted:
            logger.warning(
                "Retry ceiling reached for %s (%d/%d), removed from retry queue",
                key.label(),
                admission.retry_count,
                ceiling,
            )
        elif admission.outcome == AdmissionOutcome.INSERTED:
            logger.info("Queued retry for %s (%s)", key.label(), reason.value)
        else:
            logger.info(
                "Updated retry for %s: attempt %d (%s)",
                key.label(),
                admission.retry_count,
                reason.value,
            )
        return admission

    def _ceiling_for(self, existing: RetryRecord | None, max_retries: int | None) -> int:
        if max_retries is not None:
            return max_retries
        if existing is not None:
            return existing.max_retries
        return self.max_retries

    def pending(self) -> list[RetryRecord]:
        """Records still eligible for retry, oldest first."""

        records = [
            record
            for record in self.store.load_all()
            if record.retry_count <= record.max_retries
        ]
        return sorted(records, key=lambda record: (record.timestamp, record.key.label()))

    def remove(self, key: RetryKey) -> bool:
        with self._lock:
            removed = self.store.delete(key)
        if removed:
            logger.info("Removed retry for %s", key.label())
        return removed

    def remove_all_for_symbol(self, symbol_code: str, region: str) -> int:
        """Drop every record for a symbol in a region, across report types."""

        with self._lock:
            removed = self.store.delete_for_symbol(symbol_code, region)
        if removed:
            logger.info("Removed %d retry record(s) for %s/%s", removed, symbol_code, region)
        return removed

    def clear(self) -> int:
        with self._lock:
            removed = self.store.delete_all()
        if removed:
            logger.info("Cleared %d retry record(s)", removed)
        return removed

    def cleanup_expired(self, retention_days: int | None = None) -> int:
        """Drop records first queued more than ``retention_days`` ago."""

        days = self.cleanup_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError("retention_days must be >= 0.")
        cutoff = utc_now() - timedelta(days=days)
        with self._lock:
            removed = self.store.delete_older_than(cutoff)
        if removed:
            logger.info("Cleaned up %d retry record(s) older than %d day(s)", removed, days)
        return removed

    def cleanup_successful(self, output_probe: OutputProbe, output_location: Path) -> int:
        """Purge symbols whose output already exists despite a lost success report."""

        resolved: dict[tuple[str, str], set[str]] = {}
        for record in self.pending():
            try:
                valid = output_probe.has_valid_output(record.config_identifier, output_location)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Output probe failed for %s/%s: %s",
                    record.symbol_code,
                    record.region,
                    error,
                )
                continue
            if valid:
                resolved.setdefault((record.symbol_code, record.region), set()).add(
                    record.report_type,
                )

        total_removed = 0
        for (symbol_code, region), report_types in sorted(resolved.items()):
            removed = self.remove_all_for_symbol(symbol_code, region)
            total_removed += removed
            if removed:
                logger.info(
                    "Reconciled %s/%s: %d report type(s) with output, %d retry record(s) removed",
                    symbol_code,
                    region,
                    len(report_types),
                    removed,
                )
        return total_removed

    def delay(self, retry_count: int) -> int:
        """Backoff in milliseconds before retry number ``retry_count``."""

        if retry_count < 1:
            raise ValueError("retry_count must be >= 1.")
        return self.base_delay_ms * 2 ** (retry_count - 1)

    def statistics(self) -> RetryStatistics:
        stats = RetryStatistics()
        for record in self.pending():
            stats.total_pending += 1
            stats.by_region[record.region] = stats.by_region.get(record.region, 0) + 1
            stats.by_report_type[record.report_type] = (
                stats.by_report_type.get(record.report_type, 0) + 1
            )
            stats.by_reason[record.reason.value] = stats.by_reason.get(record.reason.value, 0) + 1
            if stats.oldest_timestamp is None or record.timestamp < stats.oldest_timestamp:
                stats.oldest_timestamp = record.timestamp
        return stats


def build_retry_store(*, backend: str, engine: Engine, file_path: Path) -> RetryStore:
    if backend == "sqlite":
        return SqliteRetryStore(engine)
    if backend == "json":
        return JsonFileRetryStore(file_path)
    raise ValueError(f"Unknown retry backend: {backend!r}")


def _key_clause(key: RetryKey) -> tuple[Any, ...]:
    return (
        col(RetryRecordRow.config_identifier) == key.config_identifier,
        col(RetryRecordRow.symbol_code) == key.symbol_code,
        col(RetryRecordRow.report_type) == key.report_type,
    )


def _row_to_record(row: RetryRecordRow) -> RetryRecord:
    return RetryRecord(
        key=RetryKey(
            config_identifier=row.config_identifier,
            symbol_code=row.symbol_code,
            report_type=row.report_type,
        ),
        region=row.region,
        reason=RetryReason(row.reason),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        timestamp=to_utc_aware_datetime(row.timestamp),
        last_retry_at=optional_utc(row.last_retry_at),
    )


def _record_to_row(record: RetryRecord) -> RetryRecordRow:
    return RetryRecordRow(
        config_identifier=record.config_identifier,
        symbol_code=record.symbol_code,
        report_type=record.report_type,
        region=record.region,
        reason=record.reason.value,
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        timestamp=to_db_datetime(record.timestamp),
        last_retry_at=(
            to_db_datetime(record.last_retry_at) if record.last_retry_at is not None else None
        ),
    )


def _record_to_document(record: RetryRecord) -> dict[str, object]:
    return {
        "config_identifier": record.config_identifier,
        "symbol_code": record.symbol_code,
        "report_type": record.report_type,
        "region": record.region,
        "reason": record.reason.value,
        "retry_count": record.retry_count,
        "max_retries": record.max_retries,
        "timestamp": record.timestamp.isoformat(),
        "last_retry_at": record.last_retry_at.isoformat() if record.last_retry_at else None,
    }


def _document_to_record(item: dict[str, Any]) -> RetryRecord:
    return RetryRecord(
        key=RetryKey(
            config_identifier=str(item["config_identifier"]),
            symbol_code=str(item["symbol_code"]),
            report_type=str(item["report_type"]),
        ),
        region=str(item["region"]),
        reason=RetryReason(item["reason"]),
        retry_count=int(item["retry_count"]),
        max_retries=int(item["max_retries"]),
        timestamp=from_iso(item["timestamp"]),
        last_retry_at=from_iso(item["last_retry_at"]) if item.get("last_retry_at") else None,
    )


def _legacy_to_record(item: dict[str, Any]) -> RetryRecord:
    return RetryRecord(
        key=RetryKey(
            config_identifier=str(item["configFile"]),
            symbol_code=str(item["symbolCode"]),
            report_type=str(item["reportType"]),
        ),
        region=str(item["region"]),
        reason=RetryReason(item["reason"]),
        retry_count=int(item["retryCount"]),
        max_retries=int(item["maxRetries"]),
        timestamp=from_iso(str(item["timestamp"]).replace("Z", "+00:00")),
        last_retry_at=(
            from_iso(str(item["lastRetryAt"]).replace("Z", "+00:00"))
            if item.get("lastRetryAt")
            else None
        ),
    )
