from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from stock_ledger.deps import actor_dep, orchestrator_dep
from stock_ledger.schemas import TransferCreate, TransferResult
from stock_ledger.services.orchestrator import StockOrchestrator

router = APIRouter(tags=["transfers"])


@router.post("/transfers", response_model=TransferResult)
def create_transfer(
    payload: TransferCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> TransferResult:
    return service.transfer(payload, actor_id=actor_id)


@router.get("/transfers/{reference_id}", response_model=TransferResult)
def get_transfer(
    reference_id: str,
    service: StockOrchestrator = Depends(orchestrator_dep),
) -> TransferResult:
    return service.get_transfer(reference_id)
