from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from parking_backend.domain.models import NewSlot, RequestStatus, Role, SlotStatus
from parking_backend.repository.data_repository import DataRepository, utc_now
from parking_backend.services.allocation_service import (
    AllocationConflictError,
    AllocationEngine,
    NoCompatibleSlotError,
    RequestNotFoundError,
)
from parking_backend.services.audit_service import RepositoryAuditLogger
from parking_backend.services.notification_service import LoggingNotificationGateway
from parking_backend.utils.config import get_settings


ADMIN_ID = 1


def _create_user(repository, name: str, email: str, role: Role = Role.USER) -> int:
    # accounts come from outside this service, so tests insert them directly
    connection = sqlite3.connect(repository.database_path)
    try:
        with connection:
            cursor = connection.execute(
                "INSERT INTO users (name, email, role, created_at) VALUES (?, ?, ?, ?);",
                (name, email, role.value, utc_now().isoformat()),
            )
        return int(cursor.lastrowid)
    finally:
        connection.close()


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        admin_user_id=ADMIN_ID,
        allocation_max_claim_attempts=3,
        database_busy_timeout_seconds=30.0,
        smtp_host=None,
        seed_demo_data=False,
    )


def _setup(tmp_path, filename: str) -> tuple[DataRepository, AllocationEngine]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    _create_user(repository, "Admin", "admin@example.com", Role.ADMIN)
    engine = AllocationEngine(
        store=repository,
        notifier=LoggingNotificationGateway(),
        audit_logger=RepositoryAuditLogger(repository, settings),
        settings=settings,
    )
    return repository, engine


def _seed_requests(repository: DataRepository, count: int, vehicle_type="car", size="medium") -> list[int]:
    request_ids = []
    for index in range(count):
        plate = f"RCC{index:03d}{vehicle_type[:1].upper()}"
        user_id = _create_user(repository, f"Driver {plate}", f"{plate.lower()}@example.com")
        vehicle_id = repository.create_vehicle(user_id, vehicle_type, size, plate)
        request_ids.append(repository.create_request(user_id, vehicle_id).request_id)
    return request_ids


def _run_concurrently(calls):
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return ("ok", call())
        except (NoCompatibleSlotError, AllocationConflictError, RequestNotFoundError) as exc:
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def _assert_slot_invariant(repository: DataRepository) -> None:
    unavailable = {
        slot.slot_id for slot in repository.list_slots() if slot.status is SlotStatus.UNAVAILABLE
    }
    bound = [
        request.slot_id
        for request in repository.list_requests()
        if request.status is RequestStatus.APPROVED
    ]
    assert len(bound) == len(set(bound))
    assert unavailable == set(bound)


def test_two_approvals_for_one_slot_only_one_wins(tmp_path):
    repository, engine = _setup(tmp_path, "race_two.db")
    repository.create_slots([NewSlot("B1", "medium", "car", "basement")])
    first, second = _seed_requests(repository, 2)

    results = _run_concurrently(
        [lambda: engine.approve(first, ADMIN_ID), lambda: engine.approve(second, ADMIN_ID)]
    )

    winners = [value for kind, value in results if kind == "ok"]
    losers = [value for kind, value in results if kind == "error"]
    assert len(winners) == 1
    assert winners[0].slot.slot_number == "B1"
    assert len(losers) == 1
    assert isinstance(losers[0], (NoCompatibleSlotError, AllocationConflictError))

    statuses = {repository.requests.get(request_id).status for request_id in (first, second)}
    assert statuses == {RequestStatus.APPROVED, RequestStatus.PENDING}
    assert repository.list_slots()[0].status is SlotStatus.UNAVAILABLE
    _assert_slot_invariant(repository)


@pytest.mark.parametrize("contenders", [4, 8])
def test_many_approvals_for_one_slot_exactly_one_succeeds(tmp_path, contenders):
    repository, engine = _setup(tmp_path, f"race_{contenders}.db")
    repository.create_slots([NewSlot("B1", "medium", "car", "basement")])
    request_ids = _seed_requests(repository, contenders)

    results = _run_concurrently(
        [lambda request_id=request_id: engine.approve(request_id, ADMIN_ID) for request_id in request_ids]
    )

    assert sum(1 for kind, _ in results if kind == "ok") == 1
    approved = [
        request for request in repository.list_requests() if request.status is RequestStatus.APPROVED
    ]
    assert len(approved) == 1
    _assert_slot_invariant(repository)


def test_parallel_approvals_fill_distinct_slots(tmp_path):
    repository, engine = _setup(tmp_path, "race_fill.db")
    repository.create_slots(
        [NewSlot(f"C{index}", "medium", "car", "level-2") for index in range(1, 4)]
    )
    request_ids = _seed_requests(repository, 5)

    results = _run_concurrently(
        [lambda request_id=request_id: engine.approve(request_id, ADMIN_ID) for request_id in request_ids]
    )

    assigned = [value.slot.slot_number for kind, value in results if kind == "ok"]
    assert sorted(assigned) == ["C1", "C2", "C3"]
    assert all(slot.status is SlotStatus.UNAVAILABLE for slot in repository.list_slots())
    _assert_slot_invariant(repository)


def test_approve_and_reject_race_on_same_request(tmp_path):
    repository, engine = _setup(tmp_path, "race_approve_reject.db")
    repository.create_slots([NewSlot("A1", "medium", "car", "north")])
    (request_id,) = _seed_requests(repository, 1)

    results = _run_concurrently(
        [
            lambda: engine.approve(request_id, ADMIN_ID),
            lambda: engine.reject(request_id, ADMIN_ID, "Duplicate request"),
        ]
    )

    assert sum(1 for kind, _ in results if kind == "ok") == 1
    final = repository.requests.get(request_id)
    assert final.status.is_terminal
    _assert_slot_invariant(repository)


def test_lost_slot_claim_retries_with_next_slot(tmp_path):
    repository, engine = _setup(tmp_path, "retry_next.db")
    repository.create_slots(
        [NewSlot("A1", "medium", "car", "north"), NewSlot("A2", "medium", "car", "north")]
    )
    ours, rival = _seed_requests(repository, 2)
    original = repository.slots.find_first_available
    calls = {"count": 0}

    def find_then_steal(vehicle_type, size):
        candidate = original(vehicle_type, size)
        calls["count"] += 1
        if calls["count"] == 1:
            with repository.transaction() as scope:
                assert scope.requests.mark_approved(rival, candidate, utc_now())
                assert scope.slots.claim(candidate.slot_id)
        return candidate

    repository.slots.find_first_available = find_then_steal

    outcome = engine.approve(ours, ADMIN_ID)

    assert calls["count"] == 2
    assert outcome.slot.slot_number == "A2"
    assert repository.requests.get(rival).slot_number == "A1"
    _assert_slot_invariant(repository)


def test_repeatedly_lost_claims_end_in_conflict(tmp_path):
    repository, engine = _setup(tmp_path, "retry_exhausted.db")
    repository.create_slots(
        [NewSlot(f"A{index}", "medium", "car", "north") for index in range(1, 5)]
    )
    ours, *rivals = _seed_requests(repository, 4)
    original = repository.slots.find_first_available
    rival_queue = list(rivals)

    def find_then_steal(vehicle_type, size):
        candidate = original(vehicle_type, size)
        rival = rival_queue.pop(0)
        with repository.transaction() as scope:
            assert scope.requests.mark_approved(rival, candidate, utc_now())
            assert scope.slots.claim(candidate.slot_id)
        return candidate

    repository.slots.find_first_available = find_then_steal

    with pytest.raises(AllocationConflictError):
        engine.approve(ours, ADMIN_ID)

    assert repository.requests.get(ours).status is RequestStatus.PENDING
    assert repository.slots.get(4).status is SlotStatus.AVAILABLE
    _assert_slot_invariant(repository)
    actions = [entry.action for entry in repository.list_audit_entries(5)]
    assert any(f"Slot request {ours} approval failed" in action for action in actions)
