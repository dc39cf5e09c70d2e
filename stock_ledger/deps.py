from __future__ import annotations

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from stock_ledger.db import get_session
from stock_ledger.ledger_config import LedgerConfig, load_ledger_config
from stock_ledger.services.location_service import LocationService
from stock_ledger.services.orchestrator import StockOrchestrator
from stock_ledger.services.product_service import ProductService
from stock_ledger.services.reporting import ReportingService


def session_dep() -> Generator[Session, None, None]:
    db = get_session()
    try:
        yield db
    finally:
        db.close()


def config_dep() -> LedgerConfig:
    return load_ledger_config()


def actor_dep(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    actor = (x_actor_id or "").strip()
    return actor or None


def orchestrator_dep(
    db: Session = Depends(session_dep),
    config: LedgerConfig = Depends(config_dep),
) -> StockOrchestrator:
    return StockOrchestrator(db, config)


def reporting_dep(
    db: Session = Depends(session_dep),
    config: LedgerConfig = Depends(config_dep),
) -> ReportingService:
    return ReportingService(db, config)


def product_service_dep(db: Session = Depends(session_dep)) -> ProductService:
    return ProductService(db)


def location_service_dep(db: Session = Depends(session_dep)) -> LocationService:
    return LocationService(db)
