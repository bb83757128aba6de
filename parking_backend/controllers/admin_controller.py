"""Controller layer for sessions, slot provisioning and the audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, field_validator
from starlette.concurrency import run_in_threadpool

from parking_backend.controllers.dependencies import (
    bearer_scheme,
    get_audit_logger,
    get_auth_service,
    get_slot_service,
    require_admin,
    require_identity,
)
from parking_backend.controllers.request_controller import SlotResponse
from parking_backend.domain.models import Identity, NewSlot
from parking_backend.repository.data_repository import DuplicateSlotError
from parking_backend.services.audit_service import AuditValidationError, RepositoryAuditLogger
from parking_backend.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from parking_backend.services.slot_service import SlotAdministrationService, SlotValidationError
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["admin"])


class LoginRequest(BaseModel):
    admin_token: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MessageResponse(BaseModel):
    message: str


class NewSlotRequest(BaseModel):
    slot_number: str = Field(min_length=1, max_length=32)
    size: str = Field(min_length=1)
    vehicle_type: str = Field(min_length=1)
    location: str = Field(min_length=1)

    @field_validator("slot_number", "size", "vehicle_type", "location")
    @classmethod
    def strip_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("value must not be blank")
        return stripped


class BulkCreateSlotsRequest(BaseModel):
    slots: list[NewSlotRequest] = Field(min_length=1)


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: int
    action: str
    timestamp: datetime


class AuditLogResponse(BaseModel):
    data: list[AuditEntryResponse]
    total: int = Field(ge=0)


@router.get("/api/ping", tags=["health"])
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
async def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        bearer = auth_service.login(payload.admin_token)
        return LoginResponse(access_token=bearer)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


@router.post("/logout", response_model=MessageResponse, status_code=status.HTTP_200_OK)
async def logout(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    if credentials is not None:
        auth_service.logout(credentials.credentials)
    return MessageResponse(message="Logged out")


@router.post(
    "/api/parking-slots",
    response_model=list[SlotResponse],
    status_code=status.HTTP_201_CREATED,
)
async def bulk_create_slots(
    payload: BulkCreateSlotsRequest,
    admin: Identity = Depends(require_admin),
    service: SlotAdministrationService = Depends(get_slot_service),
) -> list[SlotResponse]:
    slots = [
        NewSlot(
            slot_number=item.slot_number,
            size=item.size,
            vehicle_type=item.vehicle_type,
            location=item.location,
        )
        for item in payload.slots
    ]
    try:
        created = await run_in_threadpool(service.create_slots, admin.user_id, slots)
        return [SlotResponse.from_domain(slot) for slot in created]
    except (SlotValidationError, DuplicateSlotError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected slot creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create slots",
        ) from exc


@router.get(
    "/api/parking-slots",
    response_model=list[SlotResponse],
    status_code=status.HTTP_200_OK,
)
async def list_slots(
    identity: Identity = Depends(require_identity),
    service: SlotAdministrationService = Depends(get_slot_service),
) -> list[SlotResponse]:
    try:
        slots = await run_in_threadpool(service.list_slots, identity)
        return [SlotResponse.from_domain(slot) for slot in slots]
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected slot listing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list slots",
        ) from exc


@router.get(
    "/api/logs",
    response_model=AuditLogResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def list_logs(
    limit: Optional[int] = Query(default=None),
    audit_logger: RepositoryAuditLogger = Depends(get_audit_logger),
) -> AuditLogResponse:
    try:
        entries = await run_in_threadpool(audit_logger.recent, limit)
        total = await run_in_threadpool(audit_logger.total)
        return AuditLogResponse(
            data=[AuditEntryResponse(**entry.to_dict()) for entry in entries],
            total=total,
        )
    except AuditValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
