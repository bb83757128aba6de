"""Storage and side-effect interfaces consumed by the allocation engine.

The engine only talks to these protocols. `DataRepository` implements them on
SQLite; tests substitute an in-memory fake with the same contract.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Optional, Protocol

from parking_backend.domain.models import (
    ParkingSlot,
    PendingRequestContext,
    SlotRequest,
)


class SlotStore(Protocol):
    def get(self, slot_id: int) -> Optional[ParkingSlot]:
        ...

    def find_first_available(self, vehicle_type: str, size: str) -> Optional[ParkingSlot]:
        """Lowest-id available slot with the given type and size."""
        ...

    def find_location(self, vehicle_type: str, size: str) -> Optional[str]:
        """Location of the lowest-id slot with the given type and size, any status."""
        ...

    def claim(self, slot_id: int) -> bool:
        """Flip available -> unavailable; False when the slot was not available."""
        ...

    def release(self, slot_id: int) -> bool:
        """Flip unavailable -> available for a slot no approved request holds."""
        ...


class RequestStore(Protocol):
    def get(self, request_id: int) -> Optional[SlotRequest]:
        ...

    def get_pending_context(self, request_id: int) -> Optional[PendingRequestContext]:
        ...

    def mark_approved(
        self,
        request_id: int,
        slot: ParkingSlot,
        approved_at: datetime,
    ) -> bool:
        """Flip pending -> approved and bind the slot; False when not pending."""
        ...

    def mark_rejected(self, request_id: int) -> bool:
        """Flip pending -> rejected; False when not pending."""
        ...


class TransactionScope(Protocol):
    slots: SlotStore
    requests: RequestStore


class AllocationStore(Protocol):
    """Read access outside a transaction plus an atomic write scope."""

    slots: SlotStore
    requests: RequestStore

    def transaction(self) -> AbstractContextManager[TransactionScope]:
        """Commit every write in the scope together, or none on exception."""
        ...


class NotificationGateway(Protocol):
    def send_approval(
        self,
        recipient: str,
        slot_number: str,
        vehicle_info: dict[str, str],
        location: str,
    ) -> None:
        ...

    def send_rejection(
        self,
        recipient: str,
        vehicle_info: dict[str, str],
        location: str,
        reason: str,
    ) -> None:
        ...


class AuditLogger(Protocol):
    def record(self, actor_id: int, action: str) -> None:
        ...
