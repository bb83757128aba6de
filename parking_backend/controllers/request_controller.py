"""HTTP controller layer for the slot request lifecycle."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, status
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from parking_backend.controllers.dependencies import (
    get_allocation_engine,
    get_request_service,
    require_admin,
    require_identity,
)
from parking_backend.domain.constraints import MAX_RECORD_ID
from parking_backend.domain.models import (
    EmailStatus,
    Identity,
    ParkingSlot,
    RequestStatus,
    SlotRequest,
    SlotStatus,
)
from parking_backend.repository.data_repository import PersistenceError
from parking_backend.services.allocation_service import (
    AllocationConflictError,
    AllocationEngine,
    AllocationValidationError,
    NoCompatibleSlotError,
    RequestNotFoundError,
)
from parking_backend.services.request_service import SlotRequestService, VehicleNotFoundError
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/api/slot-requests", tags=["slot-requests"])

RequestIdPath = Annotated[int, Path(gt=0, le=MAX_RECORD_ID)]


class SlotResponse(BaseModel):
    id: int = Field(gt=0)
    slot_number: str = Field(min_length=1)
    size: str
    vehicle_type: str
    status: SlotStatus
    location: str

    @classmethod
    def from_domain(cls, slot: ParkingSlot) -> "SlotResponse":
        return cls(**slot.to_dict())


class SlotRequestResponse(BaseModel):
    id: int = Field(gt=0)
    user_id: int
    vehicle_id: int
    request_status: RequestStatus
    slot_id: Optional[int] = None
    slot_number: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, request: SlotRequest) -> "SlotRequestResponse":
        return cls(
            id=request.request_id,
            user_id=request.user_id,
            vehicle_id=request.vehicle_id,
            request_status=request.status,
            slot_id=request.slot_id,
            slot_number=request.slot_number,
            requested_at=request.requested_at,
            approved_at=request.approved_at,
        )


class CreateSlotRequest(BaseModel):
    vehicle_id: int = Field(gt=0, le=MAX_RECORD_ID)


class UpdateSlotRequest(BaseModel):
    vehicle_id: int = Field(gt=0, le=MAX_RECORD_ID)


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class ApproveResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    slot: SlotResponse
    email_status: EmailStatus = Field(alias="emailStatus")


class RejectResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    request: SlotRequestResponse
    email_status: EmailStatus = Field(alias="emailStatus")


class MessageResponse(BaseModel):
    message: str


@router.put(
    "/{request_id}/approve",
    response_model=ApproveResponse,
    status_code=status.HTTP_200_OK,
)
async def approve_request(
    request_id: RequestIdPath,
    admin: Identity = Depends(require_admin),
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> ApproveResponse:
    """Bind the lowest-id compatible slot to a pending request."""
    try:
        outcome = await run_in_threadpool(engine.approve, request_id, admin.user_id)
        return ApproveResponse(
            message="Request approved",
            slot=SlotResponse.from_domain(outcome.slot),
            email_status=outcome.email_status,
        )
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except NoCompatibleSlotError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except AllocationConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server error",
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected approval failure | request_id=%s", request_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to approve request",
        ) from exc


@router.put(
    "/{request_id}/reject",
    response_model=RejectResponse,
    status_code=status.HTTP_200_OK,
)
async def reject_request(
    request_id: RequestIdPath,
    payload: Optional[RejectRequest] = None,
    admin: Identity = Depends(require_admin),
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> RejectResponse:
    reason = payload.reason if payload is not None else None
    try:
        outcome = await run_in_threadpool(engine.reject, request_id, admin.user_id, reason)
        return RejectResponse(
            message="Request rejected",
            request=SlotRequestResponse.from_domain(outcome.request),
            email_status=outcome.email_status,
        )
    except AllocationValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except AllocationConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server error",
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected rejection failure | request_id=%s", request_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reject request",
        ) from exc


@router.post(
    "",
    response_model=SlotRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_request(
    payload: CreateSlotRequest,
    identity: Identity = Depends(require_identity),
    service: SlotRequestService = Depends(get_request_service),
) -> SlotRequestResponse:
    try:
        created = await run_in_threadpool(service.create_request, identity.user_id, payload.vehicle_id)
        return SlotRequestResponse.from_domain(created)
    except VehicleNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected request creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create request",
        ) from exc


@router.get(
    "",
    response_model=list[SlotRequestResponse],
    status_code=status.HTTP_200_OK,
)
async def list_requests(
    identity: Identity = Depends(require_identity),
    service: SlotRequestService = Depends(get_request_service),
) -> list[SlotRequestResponse]:
    """Every request for admins, otherwise the caller's own requests."""
    try:
        found = await run_in_threadpool(service.list_requests, identity)
        return [SlotRequestResponse.from_domain(request) for request in found]
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected request listing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list requests",
        ) from exc


@router.get(
    "/{request_id}",
    response_model=SlotRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def get_request(
    request_id: RequestIdPath,
    identity: Identity = Depends(require_identity),
    service: SlotRequestService = Depends(get_request_service),
) -> SlotRequestResponse:
    try:
        found = await run_in_threadpool(service.get_request, request_id, identity)
        return SlotRequestResponse.from_domain(found)
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.exception("Unexpected request lookup failure | request_id=%s", request_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load request",
        ) from exc


@router.put(
    "/{request_id}",
    response_model=SlotRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def update_request(
    request_id: RequestIdPath,
    payload: UpdateSlotRequest,
    identity: Identity = Depends(require_identity),
    service: SlotRequestService = Depends(get_request_service),
) -> SlotRequestResponse:
    try:
        updated = await run_in_threadpool(
            service.change_vehicle,
            request_id,
            identity.user_id,
            payload.vehicle_id,
        )
        return SlotRequestResponse.from_domain(updated)
    except (VehicleNotFoundError, RequestNotFoundError) as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected request update failure | request_id=%s", request_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update request",
        ) from exc


@router.delete(
    "/{request_id}",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
)
async def delete_request(
    request_id: RequestIdPath,
    identity: Identity = Depends(require_identity),
    service: SlotRequestService = Depends(get_request_service),
) -> MessageResponse:
    try:
        await run_in_threadpool(service.withdraw_request, request_id, identity.user_id)
        return MessageResponse(message="Request deleted")
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected request deletion failure | request_id=%s", request_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete request",
        ) from exc
