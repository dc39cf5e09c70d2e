from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from stock_ledger.deps import actor_dep, orchestrator_dep
from stock_ledger.schemas import (
    AdjustmentCreate,
    BulkAdjustmentCreate,
    BulkAdjustmentResult,
    MovementResult,
)
from stock_ledger.services.orchestrator import StockOrchestrator

router = APIRouter(tags=["adjustments"])


@router.post("/adjustments", response_model=MovementResult)
def create_adjustment(
    payload: AdjustmentCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> MovementResult:
    return service.adjust(payload, actor_id=actor_id)


@router.post("/adjustments/bulk", response_model=BulkAdjustmentResult)
def create_bulk_adjustment(
    payload: BulkAdjustmentCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> BulkAdjustmentResult:
    return service.bulk_adjust(payload, actor_id=actor_id)
