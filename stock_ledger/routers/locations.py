from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from stock_ledger.audit import log_event
from stock_ledger.deps import actor_dep, location_service_dep
from stock_ledger.schemas import LocationCreate, LocationRead
from stock_ledger.services.location_service import LocationService

router = APIRouter(tags=["locations"])


@router.post("/locations", response_model=LocationRead, status_code=201)
def create_location(
    payload: LocationCreate,
    actor_id: Optional[str] = Depends(actor_dep),
    service: LocationService = Depends(location_service_dep),
) -> LocationRead:
    created = service.create(payload)
    log_event(
        service._db,
        actor_id,
        action="location_create",
        entity_type="location",
        entity_id=created.code,
        detail={"name": created.name},
    )
    return LocationRead.model_validate(created)


@router.get("/locations", response_model=list[LocationRead])
def list_locations(service: LocationService = Depends(location_service_dep)) -> list[LocationRead]:
    return [LocationRead.model_validate(loc) for loc in service.list()]
