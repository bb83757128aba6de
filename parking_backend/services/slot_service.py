"""Administrative slot provisioning."""

from __future__ import annotations

from typing import Optional, Sequence

from parking_backend.domain.models import Identity, NewSlot, ParkingSlot, SlotStatus
from parking_backend.domain.stores import AuditLogger
from parking_backend.repository.data_repository import DataRepository
from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)


class SlotValidationError(Exception):
    """Raised when a slot batch is empty or repeats a slot number."""


class SlotAdministrationService:
    def __init__(
        self,
        audit_logger: AuditLogger,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._audit_logger = audit_logger

    def create_slots(self, actor_id: int, slots: Sequence[NewSlot]) -> list[ParkingSlot]:
        """Insert the whole batch or nothing; raises DuplicateSlotError on collisions."""
        if not slots:
            raise SlotValidationError("slots must contain at least one slot")
        numbers = [slot.slot_number for slot in slots]
        if len(set(numbers)) != len(numbers):
            raise SlotValidationError("slot_number values must be unique within a batch")

        created = self._repository.create_slots(slots)
        try:
            self._audit_logger.record(actor_id, f"Bulk created {len(created)} slots")
        except Exception:
            logger.warning("Audit append failed | actor_id=%s", actor_id, exc_info=True)
        logger.info("Slots created | count=%s | actor_id=%s", len(created), actor_id)
        return created

    def list_slots(self, identity: Identity) -> list[ParkingSlot]:
        """Admins see every slot; requesters only see available ones."""
        if identity.is_admin:
            return self._repository.list_slots()
        return self._repository.list_slots(status=SlotStatus.AVAILABLE)
