"""Requester-side lifecycle: create, edit, withdraw and read slot requests."""

from __future__ import annotations

from typing import Optional

from parking_backend.domain.models import Identity, SlotRequest
from parking_backend.domain.stores import AuditLogger
from parking_backend.repository.data_repository import DataRepository
from parking_backend.services.allocation_service import RequestNotFoundError
from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)


class VehicleNotFoundError(Exception):
    """Raised when the vehicle does not exist or belongs to another user."""


class SlotRequestService:
    """Only pending requests owned by the caller can be edited or withdrawn."""

    def __init__(
        self,
        audit_logger: AuditLogger,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._audit_logger = audit_logger

    def create_request(self, user_id: int, vehicle_id: int) -> SlotRequest:
        created = self._repository.create_request(user_id=user_id, vehicle_id=vehicle_id)
        if created is None:
            raise VehicleNotFoundError("Vehicle not found")
        self._audit(user_id, f"Slot request created for vehicle {vehicle_id}")
        return created

    def change_vehicle(self, request_id: int, user_id: int, vehicle_id: int) -> SlotRequest:
        if not self._repository.vehicle_belongs_to(vehicle_id, user_id):
            raise VehicleNotFoundError("Vehicle not found")
        updated = self._repository.update_pending_request_vehicle(
            request_id=request_id,
            user_id=user_id,
            vehicle_id=vehicle_id,
        )
        if updated is None:
            raise RequestNotFoundError("Request not found or not editable")
        self._audit(user_id, f"Slot request {request_id} updated")
        return updated

    def withdraw_request(self, request_id: int, user_id: int) -> None:
        if not self._repository.delete_pending_request(request_id=request_id, user_id=user_id):
            raise RequestNotFoundError("Request not found or not deletable")
        self._audit(user_id, f"Slot request {request_id} deleted")

    def get_request(self, request_id: int, identity: Identity) -> SlotRequest:
        request = self._repository.requests.get(request_id)
        if request is None or (not identity.is_admin and request.user_id != identity.user_id):
            raise RequestNotFoundError("Request not found")
        return request

    def list_requests(self, identity: Identity) -> list[SlotRequest]:
        """Admins see every request; everyone else sees only their own."""
        if identity.is_admin:
            return self._repository.list_requests()
        return self._repository.list_requests(user_id=identity.user_id)

    def _audit(self, actor_id: int, action: str) -> None:
        try:
            self._audit_logger.record(actor_id, action)
        except Exception:
            logger.warning("Audit append failed | actor_id=%s | action=%s", actor_id, action, exc_info=True)
