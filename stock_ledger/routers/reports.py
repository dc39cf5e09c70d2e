from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from stock_ledger.deps import reporting_dep
from stock_ledger.schemas import AgingReport, MovementStats, ValuationReport
from stock_ledger.services.reporting import ReportingService

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/valuation", response_model=ValuationReport)
def valuation_report(
    location: Optional[str] = None,
    service: ReportingService = Depends(reporting_dep),
) -> ValuationReport:
    return service.valuation(location_id=service.location_filter(location))


@router.get("/aging", response_model=AgingReport)
def aging_report(
    location: Optional[str] = None,
    now: Optional[datetime] = None,
    service: ReportingService = Depends(reporting_dep),
) -> AgingReport:
    return service.aging(now=now, location_id=service.location_filter(location))


@router.get("/movements", response_model=MovementStats)
def movement_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: ReportingService = Depends(reporting_dep),
) -> MovementStats:
    return service.movement_stats(start=start, end=end)
