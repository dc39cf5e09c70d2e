from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from stock_ledger.deps import orchestrator_dep, reporting_dep
from stock_ledger.enums import StockSort, StockStatus
from stock_ledger.schemas import DriftReport, ReserveRequest, StockLevelRead, StockRow
from stock_ledger.services.orchestrator import StockOrchestrator
from stock_ledger.services.reporting import ReportingService

router = APIRouter(tags=["stock"])


@router.get("/stock", response_model=list[StockRow])
def stock_list(
    status: StockStatus = StockStatus.ALL,
    q: Optional[str] = None,
    location: Optional[str] = None,
    category: Optional[str] = None,
    sort: StockSort = StockSort.NAME_ASC,
    service: ReportingService = Depends(reporting_dep),
) -> list[StockRow]:
    return service.stock_list(status=status, search=q, location=location, category=category, sort=sort)


@router.get("/stock/{sku}", response_model=list[StockLevelRead])
def stock_for_product(
    sku: str,
    service: ReportingService = Depends(reporting_dep),
) -> list[StockLevelRead]:
    return service.product_levels(sku)


@router.post("/stock/{sku}/verify", response_model=DriftReport)
def verify_stock(
    sku: str,
    location: Optional[str] = None,
    repair: bool = False,
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> DriftReport:
    return service.verify(sku, location=location, repair=repair)


@router.post("/stock/{sku}/reserve", response_model=StockLevelRead)
def reserve_stock(
    sku: str,
    payload: ReserveRequest,
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> StockLevelRead:
    return service.reserve(sku, payload)


@router.post("/stock/{sku}/release", response_model=StockLevelRead)
def release_stock(
    sku: str,
    payload: ReserveRequest,
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> StockLevelRead:
    return service.release(sku, payload)
