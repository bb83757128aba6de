"""Domain models for the slot-request lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class EmailStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as resolved by the auth layer."""

    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(frozen=True)
class ParkingSlot:
    slot_id: int
    slot_number: str
    size: str
    vehicle_type: str
    location: str
    status: SlotStatus

    def to_dict(self) -> dict[str, str | int]:
        return {
            "id": self.slot_id,
            "slot_number": self.slot_number,
            "size": self.size,
            "vehicle_type": self.vehicle_type,
            "status": self.status.value,
            "location": self.location,
        }


@dataclass(frozen=True)
class NewSlot:
    slot_number: str
    size: str
    vehicle_type: str
    location: str


@dataclass(frozen=True)
class Vehicle:
    vehicle_id: int
    user_id: int
    vehicle_type: str
    size: str
    plate_number: str


@dataclass(frozen=True)
class SlotRequest:
    request_id: int
    user_id: int
    vehicle_id: int
    status: RequestStatus
    slot_id: Optional[int]
    slot_number: Optional[str]
    requested_at: datetime
    approved_at: Optional[datetime]

    def __post_init__(self) -> None:
        # slot binding and approval must always travel together
        if (self.slot_id is not None) != (self.status is RequestStatus.APPROVED):
            raise ValueError(
                f"request {self.request_id} has slot_id={self.slot_id} "
                f"with status={self.status.value}"
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.request_id,
            "user_id": self.user_id,
            "vehicle_id": self.vehicle_id,
            "request_status": self.status.value,
            "slot_id": self.slot_id,
            "slot_number": self.slot_number,
            "requested_at": self.requested_at.isoformat(),
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }


@dataclass(frozen=True)
class PendingRequestContext:
    """A pending request joined with its vehicle and requester contact."""

    request: SlotRequest
    vehicle: Vehicle
    requester_email: str


@dataclass(frozen=True)
class AuditEntry:
    entry_id: int
    actor_id: int
    action: str
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.entry_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ApprovalOutcome:
    request: SlotRequest
    slot: ParkingSlot
    email_status: EmailStatus


@dataclass(frozen=True)
class RejectionOutcome:
    request: SlotRequest
    email_status: EmailStatus
