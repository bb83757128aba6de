"""Controller layer for vehicle registration."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from starlette.concurrency import run_in_threadpool

from parking_backend.controllers.dependencies import get_vehicle_service, require_identity
from parking_backend.domain.models import Identity
from parking_backend.repository.data_repository import DuplicateVehicleError
from parking_backend.services.vehicle_service import VehicleService
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])


class CreateVehicleRequest(BaseModel):
    plate_number: str = Field(min_length=1, max_length=32)
    vehicle_type: str = Field(min_length=1)
    size: str = Field(min_length=1)

    @field_validator("plate_number", "vehicle_type", "size")
    @classmethod
    def strip_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("value must not be blank")
        return stripped


class VehicleResponse(BaseModel):
    id: int = Field(gt=0)
    user_id: int
    plate_number: str
    vehicle_type: str
    size: str


@router.post(
    "",
    response_model=VehicleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_vehicle(
    payload: CreateVehicleRequest,
    identity: Identity = Depends(require_identity),
    service: VehicleService = Depends(get_vehicle_service),
) -> VehicleResponse:
    try:
        vehicle = await run_in_threadpool(
            service.register_vehicle,
            identity.user_id,
            payload.vehicle_type,
            payload.size,
            payload.plate_number,
        )
        return VehicleResponse(
            id=vehicle.vehicle_id,
            user_id=vehicle.user_id,
            plate_number=vehicle.plate_number,
            vehicle_type=vehicle.vehicle_type,
            size=vehicle.size,
        )
    except DuplicateVehicleError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected vehicle registration failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register vehicle",
        ) from exc
