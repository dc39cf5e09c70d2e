"""Stateless filtering and sorting over a stock snapshot."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from stock_ledger.enums import StockSort, StockStatus
from stock_ledger.models import GLOBAL_POOL_CODE
from stock_ledger.schemas import StockRow


def stock_status(available: int, min_stock: int) -> StockStatus:
    if available <= 0:
        return StockStatus.OUT_OF_STOCK
    if min_stock > 0 and available < min_stock:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def _matches_status(row: StockRow, status: StockStatus) -> bool:
    if status is StockStatus.ALL:
        return True
    if status is StockStatus.IN_STOCK:
        # low stock is still in stock
        return row.quantity_available > 0
    return row.status == status.value


def filter_levels(
    rows: Iterable[StockRow],
    status: StockStatus | str = StockStatus.ALL,
    search: Optional[str] = None,
    location: Optional[str] = None,
    category: Optional[str] = None,
) -> list[StockRow]:
    status = StockStatus(status)
    term = (search or "").strip().lower()
    out = []
    for row in rows:
        if term and term not in row.name.lower() and term not in row.sku.lower():
            continue
        if location is not None and (row.location_code or GLOBAL_POOL_CODE) != location:
            continue
        if category is not None and (row.category or "") != category:
            continue
        if not _matches_status(row, status):
            continue
        out.append(row)
    return out


_SORT_KEYS = {
    StockSort.NAME_ASC: (lambda r: r.name.lower(), False),
    StockSort.NAME_DESC: (lambda r: r.name.lower(), True),
    StockSort.STOCK_ASC: (lambda r: r.quantity_available, False),
    StockSort.STOCK_DESC: (lambda r: r.quantity_available, True),
    StockSort.PRICE_ASC: (lambda r: r.selling_price, False),
    StockSort.PRICE_DESC: (lambda r: r.selling_price, True),
}


def sort_levels(rows: Iterable[StockRow], sort_key: StockSort | str = StockSort.NAME_ASC) -> list[StockRow]:
    key, reverse = _SORT_KEYS[StockSort(sort_key)]
    return sorted(rows, key=key, reverse=reverse)
