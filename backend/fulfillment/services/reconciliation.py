# Overview: Barcode reconciliation for packing; pure in-memory logic, no database access.

"""
Barcode Reconciliation

Tracks how many units of each order line item have been physically scanned
and classifies every scan:

    ACCEPTED          item matched and still short; count incremented
    ALREADY_COMPLETE  item matched but its required count is already met
    UNKNOWN_ITEM      barcode is not part of this order

Only ACCEPTED changes state. Scans are applied strictly in submission order
by a single operator; the engine is not thread-safe and does not need to be.

Per-item counts never exceed the required quantity, which is what makes
total-count equality a valid completion test.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping


class ScanOutcome(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_COMPLETE = "already_complete"
    UNKNOWN_ITEM = "unknown_item"


@dataclass(frozen=True)
class LineItem:
    """What the engine needs to know about one order line."""
    item_id: str
    quantity: int
    barcode: str | None = None
    name: str | None = None

    @property
    def scan_code(self) -> str:
        """The code an operator scans: the real barcode, or the item id when there is none."""
        if self.barcode and self.barcode.strip():
            return self.barcode.strip()
        return self.item_id


@dataclass(frozen=True)
class ScanResult:
    outcome: ScanOutcome
    barcode: str
    item_id: str | None = None
    scanned: int | None = None
    required: int | None = None
    name: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is ScanOutcome.ACCEPTED

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "barcode": self.barcode,
            "item_id": self.item_id,
            "name": self.name,
            "scanned": self.scanned,
            "required": self.required,
        }


class ReconciliationEngine:
    """
    Scan state for one order.

    progress seeds the counts when resuming a packing session. Keys that
    are not line items are dropped and counts are clamped into
    [0, required], so a damaged saved map can never overshoot.
    """

    def __init__(self, items: Iterable[LineItem], progress: Mapping[str, int] | None = None):
        self._items = list(items)
        self._by_id = {item.item_id: item for item in self._items}
        self._counts: dict[str, int] = {item.item_id: 0 for item in self._items}

        for item_id, count in (progress or {}).items():
            item = self._by_id.get(str(item_id))
            if item is None:
                continue
            try:
                count = int(count)
            except (TypeError, ValueError):
                continue
            self._counts[item.item_id] = max(0, min(count, item.quantity))

    @property
    def items(self) -> list[LineItem]:
        return list(self._items)

    def _match(self, code: str) -> LineItem | None:
        for item in self._items:
            if item.scan_code == code:
                return item
        return None

    def submit_scan(self, raw_barcode: str | None) -> ScanResult | None:
        """Apply one scan. Blank input is ignored and returns None."""
        code = (raw_barcode or "").strip()
        if not code:
            return None

        item = self._match(code)
        if item is None:
            return ScanResult(outcome=ScanOutcome.UNKNOWN_ITEM, barcode=code)

        current = self._counts[item.item_id]
        if current >= item.quantity:
            return ScanResult(
                outcome=ScanOutcome.ALREADY_COMPLETE,
                barcode=code,
                item_id=item.item_id,
                scanned=current,
                required=item.quantity,
                name=item.name,
            )

        self._counts[item.item_id] = current + 1
        return ScanResult(
            outcome=ScanOutcome.ACCEPTED,
            barcode=code,
            item_id=item.item_id,
            scanned=current + 1,
            required=item.quantity,
            name=item.name,
        )

    def scanned_count(self, item_id: str) -> int:
        return self._counts.get(item_id, 0)

    @property
    def total_scanned(self) -> int:
        return sum(self._counts.values())

    @property
    def total_required(self) -> int:
        return sum(item.quantity for item in self._items)

    @property
    def is_fully_scanned(self) -> bool:
        return self.total_scanned == self.total_required

    def next_item(self) -> LineItem | None:
        """
        First line item (in order sequence) still short of its count.

        Display hint only; items may be scanned in any order.
        """
        for item in self._items:
            if self._counts[item.item_id] < item.quantity:
                return item
        return None

    def progress(self) -> dict[str, int]:
        return dict(self._counts)

    def summary(self) -> dict:
        required = self.total_required
        scanned = self.total_scanned
        next_item = self.next_item()
        return {
            "total_required": required,
            "total_scanned": scanned,
            "percent": round(scanned * 100 / required, 1) if required else 100.0,
            "is_fully_scanned": self.is_fully_scanned,
            "next_item_id": next_item.item_id if next_item else None,
            "items": [
                {
                    "item_id": item.item_id,
                    "name": item.name,
                    "scan_code": item.scan_code,
                    "required": item.quantity,
                    "scanned": self._counts[item.item_id],
                }
                for item in self._items
            ],
        }
