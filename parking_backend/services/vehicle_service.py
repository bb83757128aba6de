"""Vehicle registration for requesters."""

from __future__ import annotations

from typing import Optional

from parking_backend.domain.models import Vehicle
from parking_backend.domain.stores import AuditLogger
from parking_backend.repository.data_repository import DataRepository
from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)


class VehicleService:
    def __init__(
        self,
        audit_logger: AuditLogger,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._audit_logger = audit_logger

    def register_vehicle(
        self,
        user_id: int,
        vehicle_type: str,
        size: str,
        plate_number: str,
    ) -> Vehicle:
        """Raises DuplicateVehicleError when the plate is already registered."""
        vehicle_id = self._repository.create_vehicle(
            user_id=user_id,
            vehicle_type=vehicle_type,
            size=size,
            plate_number=plate_number,
        )
        try:
            self._audit_logger.record(user_id, f"Vehicle {plate_number} created")
        except Exception:
            logger.warning("Audit append failed | actor_id=%s", user_id, exc_info=True)
        return Vehicle(
            vehicle_id=vehicle_id,
            user_id=user_id,
            vehicle_type=vehicle_type,
            size=size,
            plate_number=plate_number,
        )
