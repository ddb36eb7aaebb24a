# backend/stockaudit/services/scan_service.py
"""
Month scan over archived daily snapshots.

WHY: A single day's shortage is usually noise (late delivery, miscount).
A shortage that survives several audit cycles is a loss worth recovering.
The scan walks every archived day of a month and reports, for each
store/product/shift, the latest shortage together with how long it has
been going on.

ALGORITHM:
    Two running maps keyed by (store_code, barcode-or-name):
    - last_positive_date: last scanned day the product was not short
    - consecutive_missing_days: scanned days short since then

    For each line of each day, in ascending date order:
    - actual_stock absent -> not audited; neither map moves
    - diff >= 0           -> last_positive_date = day, streak reset to 0
    - diff < 0            -> streak += 1 (once per key per day); the record
                             for (store, identity, shift) is replaced by
                             today's values

ORDERING: The maps are a running aggregate, so days MUST be folded in
chronological order. Fetches run on a thread pool, but fetched documents
are sorted by date and folded by a single-threaded ScanAccumulator.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Callable, Iterable

from ..validation import ValidationError
from .snapshot_service import DailySnapshot, LineItem, SnapshotError, SnapshotRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class ScanError(Exception):
    """Raised when a scan cannot run at all."""
    pass


class ScanCancelledError(ScanError):
    """Raised when the caller cancels a scan; the partial result is discarded."""
    pass


@dataclass
class _LineRecord:
    product_name: str
    barcode: str
    store_code: str
    shift: int | str
    system_stock: int
    actual_stock: int | None
    diff: int
    date: str
    sp: str = ""
    reason: str | None = None
    note: str = ""
    is_offset: bool = False
    offset_with_barcode: str | None = None

    @property
    def identity(self) -> str:
        return self.barcode or self.product_name

    @property
    def key(self) -> tuple:
        return (self.store_code, self.identity, self.shift)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MissingProductRecord(_LineRecord):
    """Latest shortage for one (store, product, shift) in the scanned window."""
    last_positive_date: str | None = None
    consecutive_missing_days: int = 0
    is_audited: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "MissingProductRecord":
        """Rebuild a record posted back by a client (bulk ticket creation)."""
        if not isinstance(data, dict):
            raise ValidationError("each item must be an object", "items")
        try:
            return cls(
                product_name=str(data.get("product_name") or ""),
                barcode=str(data.get("barcode") or ""),
                store_code=str(data["store_code"]),
                shift=data.get("shift", 1),
                system_stock=int(data.get("system_stock") or 0),
                actual_stock=data.get("actual_stock"),
                diff=int(data["diff"]),
                date=str(data.get("date") or ""),
                sp=str(data.get("sp") or ""),
                reason=data.get("reason") or data.get("diff_reason"),
                note=str(data.get("note") or ""),
                is_offset=bool(data.get("is_offset", False)),
                offset_with_barcode=data.get("offset_with_barcode"),
                last_positive_date=data.get("last_positive_date"),
                consecutive_missing_days=int(data.get("consecutive_missing_days") or 0),
                is_audited=bool(data.get("is_audited", True)),
            )
        except KeyError as e:
            raise ValidationError(f"Missing required field: {e.args[0]}", e.args[0])
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid scan record: {e}")


@dataclass
class SurplusRecord(_LineRecord):
    """Latest overage (diff > 0) for one key; input to cross-offset analysis."""
    pass


@dataclass
class ScanResult:
    year: int
    month: int
    stores: dict[str, list[MissingProductRecord]] = field(default_factory=dict)
    surplus: dict[str, list[SurplusRecord]] = field(default_factory=dict)
    total_files_scanned: int = 0
    total_missing_products: int = 0
    scanned_dates: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def all_missing(self) -> list[MissingProductRecord]:
        return [r for records in self.stores.values() for r in records]

    def all_surplus(self) -> list[SurplusRecord]:
        return [r for records in self.surplus.values() for r in records]

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "stores": {code: [r.to_dict() for r in records] for code, records in self.stores.items()},
            "surplus": {code: [r.to_dict() for r in records] for code, records in self.surplus.items()},
            "total_files_scanned": self.total_files_scanned,
            "total_missing_products": self.total_missing_products,
            "scanned_dates": list(self.scanned_dates),
            "errors": list(self.errors),
        }


class ScanAccumulator:
    """
    Running state of one month scan.

    add() must be called with snapshots in ascending date order; the
    accumulator trusts its caller and folds in whatever order it is given.
    """

    def __init__(self, year: int, month: int):
        self.result = ScanResult(year=year, month=month)
        self._last_positive: dict[tuple[str, str], date] = {}
        self._missing_days: dict[tuple[str, str], int] = {}
        self._missing_index: dict[tuple, int] = {}
        self._surplus_index: dict[tuple, int] = {}
        self._unaudited: set[tuple] = set()

    def add(self, snapshot: DailySnapshot) -> None:
        day = snapshot.date
        day_str = day.isoformat()
        counted_today: set[tuple[str, str]] = set()

        self.result.total_files_scanned += 1
        self.result.scanned_dates.append(day_str)

        for store_code, shift, line in snapshot.iter_lines():
            self.result.stores.setdefault(store_code, [])
            timeline_key = (store_code, line.identity)
            record_key = (store_code, line.identity, shift)

            if not line.is_audited:
                self._unaudited.add(record_key)
                continue

            if line.diff >= 0:
                self._last_positive[timeline_key] = day
                self._missing_days[timeline_key] = 0
                counted_today.discard(timeline_key)
                if line.diff > 0:
                    self._put_surplus(record_key, self._surplus_from(line, store_code, shift, day_str))
                continue

            if timeline_key not in counted_today:
                self._missing_days[timeline_key] = self._missing_days.get(timeline_key, 0) + 1
                counted_today.add(timeline_key)

            last_positive = self._last_positive.get(timeline_key)
            record = MissingProductRecord(
                product_name=line.product_name,
                barcode=line.barcode,
                store_code=store_code,
                shift=shift,
                system_stock=line.system_stock,
                actual_stock=line.actual_stock,
                diff=line.diff,
                date=day_str,
                sp=line.sp,
                reason=line.reason,
                note=line.note,
                last_positive_date=last_positive.isoformat() if last_positive else None,
                consecutive_missing_days=self._missing_days[timeline_key],
            )
            self._put_missing(record_key, record)

    def _surplus_from(self, line: LineItem, store_code: str, shift, day_str: str) -> SurplusRecord:
        return SurplusRecord(
            product_name=line.product_name,
            barcode=line.barcode,
            store_code=store_code,
            shift=shift,
            system_stock=line.system_stock,
            actual_stock=line.actual_stock,
            diff=line.diff,
            date=day_str,
            sp=line.sp,
            reason=line.reason,
            note=line.note,
        )

    def _put_missing(self, key: tuple, record: MissingProductRecord) -> None:
        records = self.result.stores.setdefault(record.store_code, [])
        idx = self._missing_index.get(key)
        if idx is not None:
            # Later days overwrite earlier ones
            records[idx] = record
            return
        self._missing_index[key] = len(records)
        records.append(record)
        self.result.total_missing_products += 1

    def _put_surplus(self, key: tuple, record: SurplusRecord) -> None:
        records = self.result.surplus.setdefault(record.store_code, [])
        idx = self._surplus_index.get(key)
        if idx is not None:
            records[idx] = record
            return
        self._surplus_index[key] = len(records)
        records.append(record)

    def finish(self) -> ScanResult:
        for records in self.result.stores.values():
            for record in records:
                if record.key in self._unaudited:
                    record.is_audited = False
        return self.result


def validate_period(year, month) -> tuple[int, int]:
    if isinstance(year, bool) or not isinstance(year, int) or year < 2000 or year > 9999:
        raise ValidationError("year must be an integer between 2000 and 9999", "year")
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError("month must be an integer between 1 and 12", "month")
    return year, month


def fold_snapshots(year: int, month: int, snapshots: Iterable[DailySnapshot]) -> ScanResult:
    """Fold snapshots in the order given. Callers are responsible for ordering."""
    acc = ScanAccumulator(year, month)
    for snapshot in snapshots:
        acc.add(snapshot)
    return acc.finish()


def _notify_progress(callback: ProgressCallback | None, current: int, total: int, file_name: str) -> None:
    if callback is None:
        return
    try:
        callback(current, total, file_name)
    except Exception:
        # Progress is advisory; a broken UI hook must not break the scan
        logger.warning("Scan progress callback failed", exc_info=True)


def _check_cancelled(cancel_event: threading.Event | None, year: int, month: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Scan for %02d/%d cancelled", month, year)
        raise ScanCancelledError(f"Scan for {month:02d}/{year} was cancelled")


def scan_month(
    year: int,
    month: int,
    repository: SnapshotRepository,
    progress_callback: ProgressCallback | None = None,
    *,
    cancel_event: threading.Event | None = None,
    max_workers: int = 4,
    fetch_timeout: float | None = None,
) -> ScanResult:
    """
    Scan every archived snapshot of a month for sustained shortages.

    Args:
        year: Calendar year
        month: 1-based month
        repository: Snapshot source ("list then fetch")
        progress_callback: Called as (current, total, file_name) before each file
        cancel_event: Set by the caller to abandon the scan
        max_workers: Concurrent fetches (the fold itself is always serial)
        fetch_timeout: Seconds to wait for a single file before recording an error

    Returns:
        ScanResult: Best-effort result. Per-file failures are listed in errors.

    Raises:
        ValidationError: If year/month are invalid
        ScanCancelledError: If cancel_event was set before the scan finished
    """
    validate_period(year, month)
    result = ScanResult(year=year, month=month)

    try:
        handles = list(repository.list_snapshot_ids(year, month))
    except Exception as exc:
        logger.warning("Listing snapshots for %02d/%d failed: %s", month, year, exc)
        result.errors.append(f"Cannot list archived snapshots for {month:02d}/{year}: {exc}")
        return result

    if not handles:
        result.errors.append(f"No archived snapshots found for {month:02d}/{year}")
        return result

    total = len(handles)
    logger.info("Scanning %d snapshot file(s) for %02d/%d", total, month, year)

    workers = max(1, int(max_workers or 1))
    window = workers * 2
    fetched: list[DailySnapshot] = []
    errors: list[str] = []

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="snapshot-fetch")
    try:
        pending: deque = deque()
        next_submit = 0

        for index in range(1, total + 1):
            _check_cancelled(cancel_event, year, month)

            while next_submit < total and len(pending) < window:
                handle = handles[next_submit]
                pending.append((handle, executor.submit(repository.fetch_snapshot, handle)))
                next_submit += 1

            handle, future = pending.popleft()
            file_name = str(handle).rsplit("/", 1)[-1]
            _notify_progress(progress_callback, index, total, file_name)

            try:
                snapshot = future.result(timeout=fetch_timeout)
            except FutureTimeout:
                future.cancel()
                logger.warning("Timed out reading snapshot %s", handle)
                errors.append(f"Timed out reading file: {file_name}")
                continue
            except SnapshotError as exc:
                logger.warning("Cannot read snapshot %s: %s", handle, exc)
                errors.append(f"Cannot read file: {file_name} ({exc})")
                continue
            except Exception as exc:
                logger.warning("Fetching snapshot %s failed", handle, exc_info=True)
                errors.append(f"Cannot read file: {file_name} ({exc})")
                continue

            if (snapshot.date.year, snapshot.date.month) != (year, month):
                errors.append(
                    f"Skipped file {file_name}: dated {snapshot.date.isoformat()}, outside {month:02d}/{year}"
                )
                continue

            fetched.append(snapshot)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    _check_cancelled(cancel_event, year, month)

    # Stable sort: equal dates keep listing order
    fetched.sort(key=lambda s: s.date)
    result = fold_snapshots(year, month, fetched)
    result.errors = errors

    logger.info(
        "Scan for %02d/%d complete: %d file(s), %d missing product(s), %d error(s)",
        month, year, result.total_files_scanned, result.total_missing_products, len(errors),
    )
    return result
