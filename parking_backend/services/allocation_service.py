"""Approval and rejection of slot requests.

Approval matches a pending request to the lowest-id available slot of the same
vehicle type and size, then flips the request and the slot inside one
transaction. Both writes are conditional on the state read before the
transaction, so two approvals racing for one slot cannot both commit: the
loser sees zero affected rows, rolls back and re-runs the match.

Notification and audit run only after the commit and never change the
outcome of the transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from parking_backend.domain.constraints import (
    AllocationConfig,
    normalize_reason,
    validate_allocation_config,
)
from parking_backend.domain.models import (
    ApprovalOutcome,
    EmailStatus,
    ParkingSlot,
    PendingRequestContext,
    RejectionOutcome,
    SlotRequest,
)
from parking_backend.domain.stores import AllocationStore, AuditLogger, NotificationGateway
from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)

UNKNOWN_LOCATION = "unknown"


class AllocationError(Exception):
    """Base exception for slot request lifecycle failures."""


class AllocationValidationError(AllocationError):
    """Raised when input is invalid; no store access has happened."""


class RequestNotFoundError(AllocationError):
    """Raised when no pending request with the given id exists."""


class NoCompatibleSlotError(AllocationError):
    """Raised when no available slot matches the vehicle type and size."""


class AllocationConflictError(AllocationError):
    """Raised when a concurrent action won the request or every candidate slot."""


class _LostRace(Exception):
    """Aborts the transaction scope so its writes roll back."""

    def __init__(self, request_taken: bool) -> None:
        super().__init__("conditional update affected zero rows")
        self.request_taken = request_taken


@dataclass(frozen=True)
class _ClaimResult:
    request: SlotRequest
    slot: ParkingSlot


def _vehicle_info(context: PendingRequestContext) -> dict[str, str]:
    return {
        "plate_number": context.vehicle.plate_number,
        "vehicle_type": context.vehicle.vehicle_type,
        "size": context.vehicle.size,
    }


class AllocationEngine:
    """Moves slot requests from pending to approved or rejected."""

    def __init__(
        self,
        store: AllocationStore,
        notifier: NotificationGateway,
        audit_logger: AuditLogger,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings or get_settings()
        self._config = AllocationConfig(
            max_claim_attempts=self._settings.allocation_max_claim_attempts,
            busy_timeout_seconds=self._settings.database_busy_timeout_seconds,
        )
        validate_allocation_config(self._config)
        self._store = store
        self._notifier = notifier
        self._audit_logger = audit_logger
        self._clock = clock

    def approve(self, request_id: int, acting_admin_id: int) -> ApprovalOutcome:
        context = self._load_pending(request_id)
        try:
            claim = self._claim_with_retry(context)
        except (NoCompatibleSlotError, AllocationConflictError) as exc:
            self._audit(
                acting_admin_id,
                f"Slot request {request_id} approval failed: {exc}",
            )
            raise

        email_status = self._dispatch(
            "approval",
            request_id,
            lambda: self._notifier.send_approval(
                context.requester_email,
                claim.slot.slot_number,
                _vehicle_info(context),
                claim.slot.location,
            ),
        )
        self._audit(
            acting_admin_id,
            (
                f"Slot request {request_id} approved, assigned slot "
                f"{claim.slot.slot_number}, email {email_status.value}"
            ),
        )
        logger.info(
            "Request approved | request_id=%s | slot_id=%s | slot_number=%s | email_status=%s",
            request_id,
            claim.slot.slot_id,
            claim.slot.slot_number,
            email_status.value,
        )
        return ApprovalOutcome(
            request=claim.request,
            slot=claim.slot,
            email_status=email_status,
        )

    def reject(self, request_id: int, acting_admin_id: int, reason: str | None) -> RejectionOutcome:
        cleaned_reason = normalize_reason(reason)
        if cleaned_reason is None:
            raise AllocationValidationError("Rejection reason is required")

        context = self._load_pending(request_id)
        location = (
            self._store.slots.find_location(
                context.vehicle.vehicle_type,
                context.vehicle.size,
            )
            or UNKNOWN_LOCATION
        )

        with self._store.transaction() as scope:
            updated: Optional[SlotRequest] = None
            if scope.requests.mark_rejected(request_id):
                updated = scope.requests.get(request_id)
        if updated is None:
            error = AllocationConflictError(
                f"Slot request {request_id} was processed concurrently"
            )
            self._audit(acting_admin_id, f"Slot request {request_id} rejection failed: {error}")
            raise error

        email_status = self._dispatch(
            "rejection",
            request_id,
            lambda: self._notifier.send_rejection(
                context.requester_email,
                _vehicle_info(context),
                location,
                cleaned_reason,
            ),
        )
        self._audit(
            acting_admin_id,
            (
                f"Slot request {request_id} rejected with reason: {cleaned_reason}, "
                f"email {email_status.value}"
            ),
        )
        logger.info(
            "Request rejected | request_id=%s | email_status=%s",
            request_id,
            email_status.value,
        )
        return RejectionOutcome(request=updated, email_status=email_status)

    def _load_pending(self, request_id: int) -> PendingRequestContext:
        context = self._store.requests.get_pending_context(request_id)
        if context is None:
            raise RequestNotFoundError("Request not found or already processed")
        return context

    def _claim_with_retry(self, context: PendingRequestContext) -> _ClaimResult:
        request_id = context.request.request_id
        vehicle = context.vehicle
        for attempt in range(1, self._config.max_claim_attempts + 1):
            if attempt > 1 and self._store.requests.get_pending_context(request_id) is None:
                raise AllocationConflictError(
                    f"Slot request {request_id} was processed concurrently"
                )

            candidate = self._store.slots.find_first_available(vehicle.vehicle_type, vehicle.size)
            if candidate is None:
                raise NoCompatibleSlotError("No compatible slots available")

            try:
                with self._store.transaction() as scope:
                    # slot first: a taken slot must never reach the approved-slot index
                    if not scope.slots.claim(candidate.slot_id):
                        raise _LostRace(request_taken=False)
                    if not scope.requests.mark_approved(request_id, candidate, self._clock()):
                        raise _LostRace(request_taken=True)
                    request = scope.requests.get(request_id)
                    slot = scope.slots.get(candidate.slot_id)
            except _LostRace as race:
                if race.request_taken:
                    raise AllocationConflictError(
                        f"Slot request {request_id} was processed concurrently"
                    ) from race
                logger.warning(
                    "Slot claim lost race | request_id=%s | slot_id=%s | attempt=%s/%s",
                    request_id,
                    candidate.slot_id,
                    attempt,
                    self._config.max_claim_attempts,
                )
                continue

            if request is None or slot is None:
                raise AllocationConflictError(
                    f"Slot request {request_id} could not be re-read after commit"
                )
            return _ClaimResult(request=request, slot=slot)

        raise AllocationConflictError(
            f"Lost the race for a compatible slot {self._config.max_claim_attempts} times"
        )

    def _dispatch(
        self,
        kind: str,
        request_id: int,
        send: Callable[[], None],
    ) -> EmailStatus:
        try:
            send()
        except Exception:
            logger.exception(
                "Notification failed | kind=%s | request_id=%s",
                kind,
                request_id,
            )
            return EmailStatus.FAILED
        return EmailStatus.SENT

    def _audit(self, actor_id: int, action: str) -> None:
        try:
            self._audit_logger.record(actor_id, action)
        except Exception:
            logger.warning(
                "Audit append failed | actor_id=%s | action=%s",
                actor_id,
                action,
                exc_info=True,
            )
