"""Shared fixtures: a file-backed SQLite database per test, seeded catalog and
locations, services wired to that database, and log capture."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest

from stock_ledger.db import Base, make_engine, make_session_factory
from stock_ledger.ledger_config import LedgerConfig, StockPolicy
from stock_ledger.logging_config import configure_logging, reset_logging
from stock_ledger.models import Location, Product
from stock_ledger.schemas import MovementCreate
from stock_ledger.services.ledger import MovementDraft, Reference
from stock_ledger.services.locks import PairLockRegistry
from stock_ledger.services.orchestrator import StockOrchestrator
from stock_ledger.services.reporting import ReportingService


class ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self) -> list[str]:
        return [r.getMessage() for r in self.records]


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config() -> LedgerConfig:
    return LedgerConfig(stock=StockPolicy(apply_backoff_seconds=0))


@pytest.fixture
def products(db) -> dict[str, Product]:
    rows = [
        Product(sku="WIDGET", name="Widget", category="parts", min_stock=5,
                cost_price=Decimal("2.00"), selling_price=Decimal("5.00")),
        Product(sku="GADGET", name="Gadget", category="tools", min_stock=0,
                cost_price=Decimal("4.00"), selling_price=Decimal("10.00")),
        Product(sku="SPROCKET", name="sprocket", category="parts", min_stock=10,
                cost_price=Decimal("1.00"), selling_price=Decimal("1.50")),
    ]
    db.add_all(rows)
    db.commit()
    return {p.sku: p for p in rows}


@pytest.fixture
def locations(db) -> dict[str, Location]:
    rows = [
        Location(code="MAIN", name="Main Warehouse"),
        Location(code="BACK", name="Back Room"),
        Location(code="POS1", name="Front Counter"),
    ]
    db.add_all(rows)
    db.commit()
    return {loc.code: loc for loc in rows}


@pytest.fixture
def locks() -> PairLockRegistry:
    return PairLockRegistry()


@pytest.fixture
def orchestrator(db, config, products, locations, locks) -> StockOrchestrator:
    return StockOrchestrator(db, config, locks=locks)


@pytest.fixture
def reporting(db, config) -> ReportingService:
    return ReportingService(db, config)


@pytest.fixture
def receive(orchestrator):
    def _receive(
        sku: str,
        quantity: int,
        unit_cost: Optional[str] = None,
        location: Optional[str] = "MAIN",
        reference_id: Optional[str] = None,
        batch_number: Optional[str] = None,
    ):
        return orchestrator.apply_movement(
            MovementCreate(
                sku=sku,
                location=location,
                movement_type="in",
                quantity=quantity,
                unit_cost=Decimal(unit_cost) if unit_cost is not None else None,
                reference_id=reference_id,
                batch_number=batch_number,
            )
        )

    return _receive


@pytest.fixture
def record(orchestrator):
    """Post a movement with an explicit timestamp."""

    def _record(
        product: Product,
        location: Optional[Location],
        movement_type: str,
        quantity: int,
        reference_id: str,
        created_at: datetime,
        batch_number: Optional[str] = None,
        expiry_date: Optional[datetime] = None,
        unit_cost: Optional[str] = None,
    ):
        reference_type = "purchase_order" if movement_type == "in" else "sale"
        return orchestrator.record_movement(
            MovementDraft(
                product_id=product.id,
                location_id=location.id if location is not None else None,
                movement_type=movement_type,
                quantity=quantity,
                reference=Reference(reference_type, reference_id),
                unit_cost=Decimal(unit_cost) if unit_cost is not None else None,
                batch_number=batch_number,
                expiry_date=expiry_date,
                created_at=created_at,
            )
        )

    return _record


@pytest.fixture
def log_capture():
    reset_logging()
    handler = ListHandler()
    configure_logging(level=logging.DEBUG, handler=handler)
    yield handler
    reset_logging()
