# backend/stockaudit/services/snapshot_service.py
"""
Archived daily inventory snapshots (read side).

One JSON document per calendar day is archived under
``{year}/{month:02d}/{date}.json``:

    {
        "date": "2026-01-05",
        "exported_at": "2026-01-06T01:00:00Z",
        "stores": {
            "BEE": {
                "shift_1": [
                    {"product_name": "...", "barcode": "...", "sp": "...",
                     "system_stock": 10, "actual_stock": 8, "diff": -2,
                     "status": "MISSING", "note": "", "diff_reason": null}
                ]
            }
        }
    }

Snapshots are immutable once written. The scan engine only needs
"list then fetch", which is what SnapshotRepository exposes.
"""
from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from types import MappingProxyType
from typing import Mapping

from ..time_utils import parse_iso_date

logger = logging.getLogger(__name__)

_SHIFT_KEY = re.compile(r"^shift_(\d+)$")

LINE_STATUS_PENDING = "PENDING"
LINE_STATUS_MATCHED = "MATCHED"
LINE_STATUS_MISSING = "MISSING"
LINE_STATUS_OVER = "OVER"


class SnapshotError(Exception):
    """Raised when a snapshot document cannot be fetched or parsed."""
    pass


@dataclass(frozen=True)
class LineItem:
    product_name: str
    barcode: str
    system_stock: int
    actual_stock: int | None
    diff: int
    reason: str | None = None
    sp: str = ""
    status: str = LINE_STATUS_PENDING
    note: str = ""

    @property
    def identity(self) -> str:
        """Barcode when present, product name otherwise."""
        return self.barcode or self.product_name

    @property
    def is_audited(self) -> bool:
        return self.actual_stock is not None


@dataclass(frozen=True)
class DailySnapshot:
    date: date
    stores: Mapping[str, Mapping[int | str, tuple[LineItem, ...]]]
    exported_at: str | None = None
    source: str | None = field(default=None, compare=False)

    def iter_lines(self):
        """Yield (store_code, shift, line) in document order."""
        for store_code, shifts in self.stores.items():
            for shift, lines in shifts.items():
                for line in lines:
                    yield store_code, shift, line


def parse_shift_key(key) -> int | str:
    """'shift_2' -> 2. Any other key is kept as-is."""
    if isinstance(key, int):
        return key
    match = _SHIFT_KEY.match(str(key))
    if match:
        return int(match.group(1))
    return str(key)


def _as_int(value, *, field_name: str, allow_none: bool = False) -> int | None:
    if value is None:
        if allow_none:
            return None
        raise SnapshotError(f"{field_name} is missing")
    if isinstance(value, bool):
        raise SnapshotError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise SnapshotError(f"{field_name} must be an integer, got {value!r}")


def parse_line_item(raw: dict) -> LineItem:
    if not isinstance(raw, dict):
        raise SnapshotError("line item must be an object")

    actual_stock = _as_int(raw.get("actual_stock"), field_name="actual_stock", allow_none=True)
    return LineItem(
        product_name=str(raw.get("product_name") or ""),
        barcode=str(raw.get("barcode") or ""),
        system_stock=_as_int(raw.get("system_stock", 0), field_name="system_stock"),
        actual_stock=actual_stock,
        diff=_as_int(raw.get("diff", 0), field_name="diff"),
        reason=raw.get("diff_reason") or raw.get("reason") or None,
        sp=str(raw.get("sp") or ""),
        status=str(raw.get("status") or LINE_STATUS_PENDING),
        note=str(raw.get("note") or ""),
    )


def parse_snapshot(document: dict, *, source: str | None = None) -> DailySnapshot:
    """
    Build an immutable DailySnapshot from a decoded archive document.

    Raises:
        SnapshotError: If the document is malformed
    """
    if not isinstance(document, dict):
        raise SnapshotError("snapshot document must be an object")

    try:
        snapshot_date = parse_iso_date(document.get("date"))
    except ValueError as exc:
        raise SnapshotError(f"invalid snapshot date: {exc}") from exc
    if snapshot_date is None:
        raise SnapshotError("snapshot date is missing")

    raw_stores = document.get("stores") or {}
    if not isinstance(raw_stores, dict):
        raise SnapshotError("stores must be an object")

    stores: dict[str, Mapping] = {}
    for store_code, raw_shifts in raw_stores.items():
        if not isinstance(raw_shifts, dict):
            raise SnapshotError(f"store {store_code} must map shifts to line items")
        shifts: dict[int | str, tuple[LineItem, ...]] = {}
        for shift_key, raw_lines in raw_shifts.items():
            if not isinstance(raw_lines, list):
                raise SnapshotError(f"{store_code}/{shift_key} must be a list of line items")
            shifts[parse_shift_key(shift_key)] = tuple(parse_line_item(r) for r in raw_lines)
        stores[str(store_code)] = MappingProxyType(shifts)

    return DailySnapshot(
        date=snapshot_date,
        stores=MappingProxyType(stores),
        exported_at=document.get("exported_at"),
        source=source,
    )


def summarize_snapshot(snapshot: DailySnapshot) -> list[dict]:
    """
    Per store/shift counts for one archived day.

    Lines without an actual count are "pending" and contribute nothing to
    the actual-stock or diff totals.
    """
    rows = []
    for store_code, shifts in snapshot.stores.items():
        for shift, lines in shifts.items():
            row = {
                "summary_date": snapshot.date.isoformat(),
                "store_code": store_code,
                "shift": shift,
                "total_items": len(lines),
                "matched_count": 0,
                "missing_count": 0,
                "over_count": 0,
                "pending_count": 0,
                "total_system_stock": 0,
                "total_actual_stock": 0,
                "total_diff": 0,
            }
            for line in lines:
                row["total_system_stock"] += line.system_stock
                if not line.is_audited:
                    row["pending_count"] += 1
                    continue
                row["total_actual_stock"] += line.actual_stock
                row["total_diff"] += line.diff
                if line.diff < 0:
                    row["missing_count"] += 1
                elif line.diff > 0:
                    row["over_count"] += 1
                else:
                    row["matched_count"] += 1
            rows.append(row)
    return rows


class SnapshotRepository(ABC):
    """Read-only access to archived daily snapshots."""

    @abstractmethod
    def list_snapshot_ids(self, year: int, month: int) -> list[str]:
        """Opaque handles for the month, in chronological order."""

    @abstractmethod
    def fetch_snapshot(self, handle: str) -> DailySnapshot:
        """Load one snapshot. Raises SnapshotError on any failure."""

    def fetch_snapshot_for_date(self, day: date) -> DailySnapshot | None:
        for handle in self.list_snapshot_ids(day.year, day.month):
            snapshot = self.fetch_snapshot(handle)
            if snapshot.date == day:
                return snapshot
        return None


class FileSystemSnapshotRepository(SnapshotRepository):
    """
    Snapshots stored as JSON files under a root directory.

    Handles are paths relative to the root ("2026/01/2026-01-05.json").
    Files are listed by name, which is chronological for ISO-dated names.
    """

    def __init__(self, root: str):
        self.root = root

    def _folder(self, year: int, month: int) -> str:
        return f"{year}/{month:02d}"

    def list_snapshot_ids(self, year: int, month: int) -> list[str]:
        folder = self._folder(year, month)
        path = os.path.join(self.root, folder)
        if not os.path.isdir(path):
            logger.info("No snapshot folder at %s", path)
            return []
        names = sorted(n for n in os.listdir(path) if n.endswith(".json"))
        return [f"{folder}/{name}" for name in names]

    def fetch_snapshot(self, handle: str) -> DailySnapshot:
        path = os.path.join(self.root, *handle.split("/"))
        try:
            with open(path, "r", encoding="utf-8") as fh:
                document = json.load(fh)
        except OSError as exc:
            raise SnapshotError(f"cannot read {handle}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise SnapshotError(f"invalid JSON in {handle}: {exc}") from exc
        return parse_snapshot(document, source=handle)
