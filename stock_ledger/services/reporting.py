from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from stock_ledger.enums import AGING_SEVERITY, AgingCategory, MovementType, ReferenceType, StockSort, StockStatus
from stock_ledger.ledger_config import AgingPolicy, LedgerConfig, load_ledger_config
from stock_ledger.models import ALL_LOCATIONS, Product, location_key
from stock_ledger.repositories.location_repository import LocationRepository
from stock_ledger.repositories.movement_repository import MovementRepository
from stock_ledger.repositories.product_repository import ProductRepository
from stock_ledger.repositories.stock_level_repository import StockLevelRepository
from stock_ledger.schemas import (
    AgingBatch,
    AgingReport,
    AgingRow,
    LocationMovementStats,
    MovementPage,
    MovementRead,
    MovementStats,
    MovementTypeStats,
    StockLevelRead,
    StockRow,
    ValuationReport,
    ValuationRow,
    ValuationSummary,
)
from stock_ledger.services.catalog import SqlProductCatalog, require_product
from stock_ledger.services.ledger import MovementLedger
from stock_ledger.services.location_service import LocationService
from stock_ledger.services.stock_views import filter_levels, sort_levels, stock_status
from stock_ledger.utils import as_utc, day_range, days_between, money, month_range, to_decimal, unit_cost, utcnow


@dataclass
class _Lot:
    batch_number: Optional[str]
    first_received_at: datetime
    expiry_date: Optional[datetime]
    remaining: int = 0


# transfer legs whose stock keeps the age and expiry of the lots it left
_TRANSIT_REFERENCE_TYPES = frozenset({ReferenceType.TRANSFER.value, ReferenceType.TRANSFER_COMPENSATION.value})


def consume_lots(lots: dict[Optional[str], _Lot], quantity: int, batch_number: Optional[str] = None) -> list[_Lot]:
    """Take ``quantity`` out of ``lots``: the named batch first, then oldest first.

    Returns one portion per lot touched, carrying that lot's batch, first
    receipt and expiry. A shortfall is whatever the portions do not cover.
    """
    taken: list[_Lot] = []
    remaining = quantity

    def take_from(lot: _Lot) -> None:
        nonlocal remaining
        amount = min(lot.remaining, remaining)
        if amount <= 0:
            return
        lot.remaining -= amount
        remaining -= amount
        taken.append(replace(lot, remaining=amount))

    if batch_number is not None and batch_number in lots:
        take_from(lots[batch_number])
    for lot in sorted(lots.values(), key=lambda lot: lot.first_received_at):
        if remaining <= 0:
            break
        take_from(lot)
    return taken


def _take_in_transit(portions: list[_Lot], quantity: int) -> tuple[list[_Lot], int]:
    moved: list[_Lot] = []
    remaining = quantity
    while portions and remaining > 0:
        portion = portions[0]
        amount = min(portion.remaining, remaining)
        moved.append(replace(portion, remaining=amount))
        portion.remaining -= amount
        remaining -= amount
        if portion.remaining == 0:
            portions.pop(0)
    return moved, remaining


def _add_to_lot(lots: dict[Optional[str], _Lot], portion: _Lot) -> None:
    lot = lots.get(portion.batch_number)
    if lot is None:
        lots[portion.batch_number] = replace(portion)
        return
    if lot.remaining <= 0 or portion.first_received_at < lot.first_received_at:
        lot.first_received_at = portion.first_received_at
    if lot.expiry_date is None:
        lot.expiry_date = portion.expiry_date
    lot.remaining += portion.remaining


def _receive(lots: dict[Optional[str], _Lot], movement, quantity: int) -> None:
    lot = lots.get(movement.batch_number)
    if lot is None:
        lot = _Lot(
            batch_number=movement.batch_number,
            first_received_at=as_utc(movement.created_at),
            expiry_date=as_utc(movement.expiry_date),
        )
        lots[movement.batch_number] = lot
    elif lot.expiry_date is None and movement.expiry_date is not None:
        lot.expiry_date = as_utc(movement.expiry_date)
    lot.remaining += quantity


def replay_lots(movements) -> dict[tuple[int, int], dict[Optional[str], _Lot]]:
    """Open lots on increases and consume them on decreases, per (product, location).

    A transfer's outgoing leg parks the portions it took under the transfer
    reference; the incoming leg (or its compensation) lands those portions
    with their original batch, first receipt and expiry.
    """
    pairs: dict[tuple[int, int], dict[Optional[str], _Lot]] = defaultdict(dict)
    in_transit: dict[tuple[int, str], list[_Lot]] = defaultdict(list)
    for movement in movements:
        lots = pairs[(movement.product_id, location_key(movement.location_id))]
        transit_key = (movement.product_id, movement.reference_id)
        in_transit_leg = movement.reference_type in _TRANSIT_REFERENCE_TYPES

        if movement.direction == "increase":
            quantity = movement.quantity
            if in_transit_leg and movement.movement_type == MovementType.TRANSFER_IN.value:
                moved, quantity = _take_in_transit(in_transit[transit_key], quantity)
                for portion in moved:
                    _add_to_lot(lots, portion)
            if quantity > 0:
                _receive(lots, movement, quantity)
        else:
            taken = consume_lots(lots, movement.quantity, movement.batch_number)
            if in_transit_leg and movement.movement_type == MovementType.TRANSFER_OUT.value:
                in_transit[transit_key].extend(taken)
    return pairs


def aging_category(age_days: int, expiry_date: Optional[datetime], now: datetime, policy: AgingPolicy) -> AgingCategory:
    if expiry_date is not None and as_utc(expiry_date) <= now:
        return AgingCategory.EXPIRED
    if age_days > policy.old_days:
        return AgingCategory.OLD
    if age_days > policy.aging_days:
        return AgingCategory.AGING
    return AgingCategory.FRESH


class ReportingService:
    """Read-only reports derived from the ledger and stock levels."""

    def __init__(self, db: Session, config: Optional[LedgerConfig] = None):
        self._db = db
        self._config = config or load_ledger_config()
        self._movements = MovementRepository(db)
        self._levels = StockLevelRepository(db)
        self._products = ProductRepository(db)
        self._locations = LocationRepository(db)

    def location_filter(self, code: Optional[str]) -> Any:
        return LocationService(self._db).resolve_filter(code)

    def valuation(self, location_id: Any = ALL_LOCATIONS) -> ValuationReport:
        rows: list[ValuationRow] = []
        total_quantity = 0
        low_stock = 0
        out_of_stock = 0
        location_keys = set()

        for level, product, location in self._levels.snapshot(location_id):
            on_hand = int(level.quantity_on_hand)
            cost = unit_cost(level.cost_per_unit)
            price = to_decimal(product.selling_price)
            stock_value = money(Decimal(on_hand) * cost)
            retail_value = money(Decimal(on_hand) * price)
            profit = retail_value - stock_value
            margin = money(profit / retail_value * 100) if retail_value else money(0)
            rows.append(
                ValuationRow(
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    location_id=level.location_id,
                    location_code=location.code if location is not None else None,
                    quantity_on_hand=on_hand,
                    cost_per_unit=cost,
                    selling_price=money(price),
                    stock_value=stock_value,
                    retail_value=retail_value,
                    potential_profit=profit,
                    margin_percentage=margin,
                )
            )
            total_quantity += on_hand
            location_keys.add(level.location_key)
            status = stock_status(level.quantity_available, int(product.min_stock or 0))
            if status is StockStatus.OUT_OF_STOCK:
                out_of_stock += 1
            elif status is StockStatus.LOW_STOCK:
                low_stock += 1

        summary = ValuationSummary(
            total_items=len(rows),
            total_quantity=total_quantity,
            total_stock_value=money(sum((r.stock_value for r in rows), Decimal("0"))),
            total_retail_value=money(sum((r.retail_value for r in rows), Decimal("0"))),
            total_potential_profit=money(sum((r.potential_profit for r in rows), Decimal("0"))),
            low_stock_count=low_stock,
            out_of_stock_count=out_of_stock,
            locations_count=len(location_keys),
        )
        return ValuationReport(rows=rows, summary=summary, generated_at=utcnow())

    def aging(self, now: Optional[datetime] = None, location_id: Any = ALL_LOCATIONS) -> AgingReport:
        now = as_utc(now) or utcnow()
        policy = self._config.aging
        soon = now + timedelta(days=policy.expiring_soon_days)

        # replay every location so transfer legs find the lots they carried
        pairs = replay_lots(self._movements.stream())
        wanted_key = None if location_id is ALL_LOCATIONS else location_key(location_id)

        batches_by_product: dict[int, list[AgingBatch]] = defaultdict(list)
        for (product_id, key), lots in pairs.items():
            if wanted_key is not None and key != wanted_key:
                continue
            for lot in lots.values():
                if lot.remaining <= 0:
                    continue
                age = max(days_between(lot.first_received_at, now), 0)
                expiry = lot.expiry_date
                category = aging_category(age, expiry, now, policy)
                batches_by_product[product_id].append(
                    AgingBatch(
                        product_id=product_id,
                        location_id=key or None,
                        batch_number=lot.batch_number,
                        quantity_remaining=lot.remaining,
                        first_received_at=lot.first_received_at,
                        age_days=age,
                        expiry_date=expiry,
                        expiring_soon=expiry is not None and now < expiry <= soon,
                        category=category.value,
                    )
                )

        products = self._products.by_ids(set(batches_by_product))
        rows = [
            self._aging_row(products[product_id], batches)
            for product_id, batches in batches_by_product.items()
            if product_id in products
        ]
        rows.sort(key=lambda r: (-AGING_SEVERITY[AgingCategory(r.category)], -r.oldest_age_days, r.sku))

        counts = defaultdict(int)
        for row in rows:
            counts[row.category] += 1
        return AgingReport(
            rows=rows,
            generated_at=now,
            fresh_count=counts[AgingCategory.FRESH.value],
            aging_count=counts[AgingCategory.AGING.value],
            old_count=counts[AgingCategory.OLD.value],
            expired_count=counts[AgingCategory.EXPIRED.value],
        )

    @staticmethod
    def _aging_row(product: Product, batches: list[AgingBatch]) -> AgingRow:
        batches.sort(key=lambda b: (b.first_received_at, b.batch_number or ""))
        total = sum(b.quantity_remaining for b in batches)
        weighted = sum(b.age_days * b.quantity_remaining for b in batches)
        worst = max((AgingCategory(b.category) for b in batches), key=lambda c: AGING_SEVERITY[c])
        return AgingRow(
            product_id=product.id,
            sku=product.sku,
            name=product.name,
            total_quantity=total,
            oldest_age_days=max(b.age_days for b in batches),
            average_age_days=money(Decimal(weighted) / Decimal(total)) if total else money(0),
            expiring_soon_quantity=sum(b.quantity_remaining for b in batches if b.expiring_soon),
            category=worst.value,
            batches=batches,
        )

    def movement_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> MovementStats:
        start = as_utc(start)
        end = as_utc(end)
        now = as_utc(now) or utcnow()

        by_type = [
            MovementTypeStats(movement_type=mtype, count=count, quantity=qty)
            for mtype, count, qty in sorted(self._movements.type_breakdown(start=start, end=end))
        ]

        per_location: dict[Optional[int], LocationMovementStats] = {}
        for location_id, direction, count, qty in self._movements.location_breakdown(start=start, end=end):
            stats = per_location.get(location_id)
            if stats is None:
                stats = LocationMovementStats(location_id=location_id, location_code=None)
                per_location[location_id] = stats
            if direction == "increase":
                stats.in_count += count
                stats.in_quantity += qty
            else:
                stats.out_count += count
                stats.out_quantity += qty
        codes = self._locations.by_ids({lid for lid in per_location if lid is not None})
        for location_id, stats in per_location.items():
            if location_id in codes:
                stats.location_code = codes[location_id].code

        day_start, _ = day_range(now)
        month_start, _ = month_range(now)
        return MovementStats(
            start=start,
            end=end,
            total_movements=sum(s.count for s in by_type),
            by_type=by_type,
            by_location=sorted(per_location.values(), key=lambda s: location_key(s.location_id)),
            today_count=self._movements.count_since(day_start),
            week_count=self._movements.count_since(now - timedelta(days=7)),
            month_count=self._movements.count_since(month_start),
        )

    def stock_list(
        self,
        status: StockStatus | str = StockStatus.ALL,
        search: Optional[str] = None,
        location: Optional[str] = None,
        category: Optional[str] = None,
        sort: StockSort | str = StockSort.NAME_ASC,
    ) -> list[StockRow]:
        rows = []
        for level, product, loc in self._levels.snapshot():
            min_stock = int(product.min_stock or 0)
            rows.append(
                StockRow(
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    category=product.category,
                    location_id=level.location_id,
                    location_code=loc.code if loc is not None else None,
                    quantity_on_hand=int(level.quantity_on_hand),
                    quantity_reserved=int(level.quantity_reserved),
                    quantity_available=level.quantity_available,
                    min_stock=min_stock,
                    cost_per_unit=unit_cost(level.cost_per_unit),
                    selling_price=money(product.selling_price),
                    status=stock_status(level.quantity_available, min_stock).value,
                )
            )
        filtered = filter_levels(rows, status=status, search=search, location=location, category=category)
        return sort_levels(filtered, sort)

    def product_levels(self, sku: str) -> list[StockLevelRead]:
        product = require_product(SqlProductCatalog(self._db), sku)
        return [StockLevelRead.model_validate(level) for level in self._levels.list_for_product(product.id)]

    def movement_history(
        self,
        sku: Optional[str] = None,
        location: Optional[str] = None,
        movement_type: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> MovementPage:
        product_id = None
        if sku:
            product_id = require_product(SqlProductCatalog(self._db), sku).id
        items, total = MovementLedger(self._db).history(
            product_id=product_id,
            location_id=LocationService(self._db).resolve_filter(location),
            movement_type=movement_type,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
        return MovementPage(
            items=[MovementRead.model_validate(m) for m in items],
            total=total,
            limit=limit,
            offset=offset,
        )
