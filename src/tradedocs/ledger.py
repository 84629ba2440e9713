"""Inventory ledger: applies and reverses stock deltas against catalog items.

Stock only ever moves through :func:`apply_delta`. Lines reference their
catalog item by the ``item_id`` captured when the line was saved; lines
without one (older rows, free-text services) fall back to the first item
with the same name. Lines that match no item are services and are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from . import data_manager, log
from .errors import LedgerInconsistencyError


@dataclass(frozen=True)
class StockDelta:
    """A signed stock adjustment for one catalog item."""

    item_name: str
    quantity: int
    item_id: Optional[str] = None

    def inverted(self) -> "StockDelta":
        return StockDelta(item_name=self.item_name, quantity=-self.quantity, item_id=self.item_id)


def resolve_item(
    store: data_manager.WorkbookStore,
    item_name: str,
    item_id: Optional[str] = None,
) -> Optional[data_manager.ItemRow]:
    """Find the catalog item a line refers to.

    A captured ``item_id`` wins; a stale id (item since deleted) resolves to
    nothing rather than silently falling back to a same-named item.
    """

    if item_id:
        return store.items.get(item_id)
    for item in store.items.iter_records():
        if item.name == item_name:
            return item
    return None


def apply_delta(
    store: data_manager.WorkbookStore,
    item_name: str,
    quantity: int,
    *,
    item_id: Optional[str] = None,
) -> Optional[data_manager.ItemRow]:
    """Add ``quantity`` (signed) to the stock of the matching item.

    Stock is never clamped and may become negative.

    Returns:
        data_manager.ItemRow | None: The updated item, or ``None`` when the
            line does not match a tracked item.
    """

    item = resolve_item(store, item_name, item_id)
    if item is None:
        log.debug("No tracked item for '%s' (id=%s); stock unchanged", item_name, item_id)
        return None
    updated = store.items.update(item.item_id, {"stock": item.stock + quantity})
    log.info("Stock for '%s' moved %+d: %d -> %d", item.name, quantity, item.stock, updated.stock)
    return updated


def apply_deltas(store: data_manager.WorkbookStore, deltas: Iterable[StockDelta]) -> List[StockDelta]:
    """Apply ``deltas`` in order and return them once all have landed.

    The ledger does not undo anything on failure. Instead it raises
    :class:`LedgerInconsistencyError` naming exactly which deltas were applied
    so the caller can compensate or report.
    """

    deltas = list(deltas)
    applied: List[StockDelta] = []
    for delta in deltas:
        try:
            apply_delta(store, delta.item_name, delta.quantity, item_id=delta.item_id)
        except Exception as exc:
            log.error(
                "Ledger inconsistency: %d of %d stock deltas applied before '%s' (%+d) failed: %s",
                len(applied),
                len(deltas),
                delta.item_name,
                delta.quantity,
                exc,
            )
            raise LedgerInconsistencyError(
                f"Stock partially updated: {len(applied)} of {len(deltas)} deltas applied",
                applied=applied,
                failed=delta,
            ) from exc
        applied.append(delta)
    return applied


def deltas_for_lines(lines: Iterable[data_manager.LineItemRow], sign: int) -> List[StockDelta]:
    """Build one delta per line, ``sign`` being ``+1`` (credit) or ``-1`` (deduct)."""

    if sign not in (1, -1):
        raise ValueError("sign must be +1 or -1")
    return [
        StockDelta(item_name=line.item_name, quantity=sign * line.quantity, item_id=line.item_id)
        for line in lines
    ]


def reverse(deltas: Iterable[StockDelta]) -> List[StockDelta]:
    """Return the exact inverse of ``deltas``, in reverse order."""

    return [delta.inverted() for delta in reversed(list(deltas))]


def list_low_stock(store: data_manager.WorkbookStore) -> List[data_manager.ItemRow]:
    """Return items whose stock has fallen below their restock threshold."""

    return [item for item in store.items.iter_records() if item.stock < item.min_stock]
