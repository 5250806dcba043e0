"""Garden API endpoints."""

from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from plantgate.auth import CurrentSubject
from plantgate.exceptions import GardenCapacityExceeded, TransientStorageFailure
from plantgate.models.entitlements import GardenAllowance
from plantgate.models.garden import GardenPlant
from plantgate.services.garden_service import GardenService

router = APIRouter(prefix="/garden", tags=["garden"])

_STORE_UNAVAILABLE = "Could not reach your garden. Try again shortly."


class AddPlantRequest(BaseModel):
    """Plant to add, usually the top match of an identification."""

    species_name: str = Field(min_length=1)
    common_name: str | None = None
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)


def _get_garden_service(request: Request) -> GardenService:
    service = getattr(request.app.state, "garden_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Garden service unavailable")
    return service


@router.get("/capacity", response_model=GardenAllowance)
async def garden_capacity(
    request: Request,
    subject: CurrentSubject,
    current_size: int = Query(ge=0),
) -> GardenAllowance:
    """Whether one more plant fits, given the client's garden size."""
    service = _get_garden_service(request)
    try:
        return await service.gate.garden_capacity(subject, current_size)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail=_STORE_UNAVAILABLE)


@router.get("", response_model=list[GardenPlant])
async def list_garden(request: Request, subject: CurrentSubject) -> list[GardenPlant]:
    service = _get_garden_service(request)
    try:
        return await service.list_plants(subject)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail=_STORE_UNAVAILABLE)


@router.post("", response_model=GardenPlant, status_code=201)
async def add_to_garden(
    body: AddPlantRequest,
    request: Request,
    subject: CurrentSubject,
) -> GardenPlant:
    service = _get_garden_service(request)
    try:
        return await service.add_plant(
            subject,
            body.species_name,
            common_name=body.common_name,
            confidence_score=body.confidence_score,
        )
    except GardenCapacityExceeded as e:
        raise HTTPException(
            status_code=402,
            detail={
                "code": "garden_full",
                "message": str(e),
                "capacity": e.capacity,
            },
        )
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail=_STORE_UNAVAILABLE)


@router.delete("/{plant_id}", status_code=204)
async def remove_from_garden(plant_id: str, request: Request, subject: CurrentSubject) -> Response:
    service = _get_garden_service(request)
    try:
        removed = await service.remove_plant(subject, plant_id)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail=_STORE_UNAVAILABLE)
    if not removed:
        raise HTTPException(status_code=404, detail="Plant not found in your garden")
    return Response(status_code=204)
