from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from stock_ledger.deps import actor_dep, orchestrator_dep, reporting_dep
from stock_ledger.schemas import MovementCreate, MovementPage, MovementResult
from stock_ledger.services.orchestrator import StockOrchestrator
from stock_ledger.services.reporting import ReportingService

router = APIRouter(tags=["movements"])


@router.post("/movements", response_model=MovementResult)
def create_movement(
    payload: MovementCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> MovementResult:
    return service.apply_movement(payload, actor_id=actor_id)


@router.get("/movements", response_model=MovementPage)
def list_movements(
    sku: Optional[str] = None,
    location: Optional[str] = None,
    movement_type: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: ReportingService = Depends(reporting_dep),
) -> MovementPage:
    return service.movement_history(
        sku=sku,
        location=location,
        movement_type=movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
