from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from stock_ledger.deps import actor_dep, orchestrator_dep
from stock_ledger.schemas import StockCountCreate, StockCountResult
from stock_ledger.services.orchestrator import StockOrchestrator

router = APIRouter(tags=["counts"])


@router.post("/counts", response_model=StockCountResult)
def create_count(
    payload: StockCountCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> StockCountResult:
    return service.record_count(payload, actor_id=actor_id)
