from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from stock_ledger.audit import log_event
from stock_ledger.deps import actor_dep, product_service_dep
from stock_ledger.schemas import ProductCreate, ProductRead
from stock_ledger.services.product_service import ProductService

router = APIRouter(tags=["products"])


@router.post("/products", response_model=ProductRead, status_code=201)
def create_product(
    payload: ProductCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: ProductService = Depends(product_service_dep),
) -> ProductRead:
    created = service.create(payload)
    log_event(
        service._db,
        actor_id,
        action="product_create",
        entity_type="product",
        entity_id=created.sku,
        detail={"name": created.name},
    )
    return ProductRead.model_validate(created)


@router.get("/products", response_model=list[ProductRead])
def list_products(
    q: Optional[str] = Query(default=None),
    service: ProductService = Depends(product_service_dep),
) -> list[ProductRead]:
    return [ProductRead.model_validate(p) for p in service.list(query=q)]
