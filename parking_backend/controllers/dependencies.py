"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from parking_backend.domain.models import Identity
from parking_backend.services.allocation_service import AllocationEngine
from parking_backend.services.audit_service import RepositoryAuditLogger
from parking_backend.services.auth_service import AuthService, InvalidSessionError
from parking_backend.services.request_service import SlotRequestService
from parking_backend.services.slot_service import SlotAdministrationService
from parking_backend.services.vehicle_service import VehicleService
from parking_backend.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)


def _from_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_allocation_engine(request: Request) -> AllocationEngine:
    return _from_state(request, "allocation_engine", "Allocation engine")


def get_request_service(request: Request) -> SlotRequestService:
    return _from_state(request, "request_service", "Request service")


def get_slot_service(request: Request) -> SlotAdministrationService:
    return _from_state(request, "slot_service", "Slot service")


def get_vehicle_service(request: Request) -> VehicleService:
    return _from_state(request, "vehicle_service", "Vehicle service")


def get_audit_logger(request: Request) -> RepositoryAuditLogger:
    return _from_state(request, "audit_logger", "Audit logger")


async def require_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> Identity:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header with Bearer token is required",
        )
    try:
        return auth_service.resolve(credentials.credentials)
    except InvalidSessionError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


async def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return identity
