from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import replace

from fastapi.testclient import TestClient

from app import create_app
from parking_backend.domain.constraints import MAX_RECORD_ID
from parking_backend.domain.models import Identity, NewSlot, RequestStatus, Role, SlotStatus
from parking_backend.repository.data_repository import PersistenceError, utc_now
from parking_backend.utils.config import get_settings


ADMIN_TOKEN = "secret-admin-token"


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


def _build_test_settings(tmp_path, filename: str, admin_token: str | None = ADMIN_TOKEN):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        admin_token=admin_token,
        admin_user_id=1,
        smtp_host=None,
        seed_demo_data=False,
    )


def _admin_headers(client: TestClient) -> dict[str, str]:
    response = client.post("/login", json={"admin_token": ADMIN_TOKEN})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _user_headers(client: TestClient, user_id: int) -> dict[str, str]:
    token = client.app.state.auth_service.issue_session(Identity(user_id=user_id, role=Role.USER))
    return {"Authorization": f"Bearer {token}"}


def _seed_driver(client: TestClient, plate: str, vehicle_type="car", size="medium") -> tuple[int, int]:
    repository = client.app.state.repository
    user_id = _create_user(repository, f"Driver {plate}", f"{plate.lower()}@example.com")
    vehicle_id = repository.create_vehicle(user_id, vehicle_type, size, plate)
    return user_id, vehicle_id


def test_approve_endpoint_assigns_slot_and_reports_email_status(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_approve.db"))
    with TestClient(app) as client:
        repository = app.state.repository
        _create_user(repository, "Admin", "admin@example.com", Role.ADMIN)
        repository.create_slots([NewSlot("A1", "medium", "car", "north")])
        user_id, vehicle_id = _seed_driver(client, "RAB100")
        user_headers = _user_headers(client, user_id)

        created = client.post(
            "/api/slot-requests",
            json={"vehicle_id": vehicle_id},
            headers=user_headers,
        )
        assert created.status_code == 201
        request_id = created.json()["id"]
        assert created.json()["request_status"] == "pending"

        forbidden = client.put(f"/api/slot-requests/{request_id}/approve", headers=user_headers)
        assert forbidden.status_code == 403

        admin_headers = _admin_headers(client)
        approved = client.put(f"/api/slot-requests/{request_id}/approve", headers=admin_headers)
        assert approved.status_code == 200
        payload = approved.json()
        assert payload["message"] == "Request approved"
        assert payload["emailStatus"] == "sent"
        assert payload["slot"] == {
            "id": 1,
            "slot_number": "A1",
            "size": "medium",
            "vehicle_type": "car",
            "status": "unavailable",
            "location": "north",
        }

        again = client.put(f"/api/slot-requests/{request_id}/approve", headers=admin_headers)
        assert again.status_code == 404
        assert again.json()["detail"] == "Request not found or already processed"

        fetched = client.get(f"/api/slot-requests/{request_id}", headers=user_headers)
        assert fetched.status_code == 200
        assert fetched.json()["request_status"] == "approved"
        assert fetched.json()["slot_number"] == "A1"


def test_approve_endpoint_without_slot_returns_400(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_no_slot.db"))
    with TestClient(app) as client:
        user_id, vehicle_id = _seed_driver(client, "RAT101", "truck", "large")
        request_id = app.state.repository.create_request(user_id, vehicle_id).request_id

        response = client.put(
            f"/api/slot-requests/{request_id}/approve",
            headers=_admin_headers(client),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "No compatible slots available"
        assert app.state.repository.requests.get(request_id).status is RequestStatus.PENDING


def test_reject_endpoint_requires_reason(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_reject.db"))
    with TestClient(app) as client:
        user_id, vehicle_id = _seed_driver(client, "RAB102")
        request_id = app.state.repository.create_request(user_id, vehicle_id).request_id
        headers = _admin_headers(client)

        missing = client.put(f"/api/slot-requests/{request_id}/reject", headers=headers)
        assert missing.status_code == 400
        blank = client.put(
            f"/api/slot-requests/{request_id}/reject",
            json={"reason": "   "},
            headers=headers,
        )
        assert blank.status_code == 400
        assert blank.json()["detail"] == "Rejection reason is required"

        rejected = client.put(
            f"/api/slot-requests/{request_id}/reject",
            json={"reason": "Expired permit"},
            headers=headers,
        )
        assert rejected.status_code == 200
        payload = rejected.json()
        assert payload["request"]["request_status"] == "rejected"
        assert payload["request"]["slot_id"] is None
        assert payload["emailStatus"] == "sent"

        repeated = client.put(
            f"/api/slot-requests/{request_id}/reject",
            json={"reason": "Expired permit"},
            headers=headers,
        )
        assert repeated.status_code == 404


def test_lifecycle_routes_require_bearer_token(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_auth.db"))
    with TestClient(app) as client:
        assert client.put("/api/slot-requests/1/approve").status_code == 401
        assert client.put("/api/slot-requests/1/reject", json={"reason": "x"}).status_code == 401
        assert client.post("/api/slot-requests", json={"vehicle_id": 1}).status_code == 401
        invalid = {"Authorization": "Bearer not-a-session"}
        assert client.get("/api/slot-requests/1", headers=invalid).status_code == 401
        assert client.get("/api/logs", headers=_user_headers(client, 7)).status_code == 403


def test_requester_can_edit_and_withdraw_only_own_pending_request(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_owner.db"))
    with TestClient(app) as client:
        repository = app.state.repository
        owner_id, first_vehicle = _seed_driver(client, "RAB103")
        second_vehicle = repository.create_vehicle(owner_id, "motorcycle", "small", "RAC103")
        stranger_id, stranger_vehicle = _seed_driver(client, "RAB104")
        owner_headers = _user_headers(client, owner_id)
        stranger_headers = _user_headers(client, stranger_id)

        foreign = client.post(
            "/api/slot-requests",
            json={"vehicle_id": stranger_vehicle},
            headers=owner_headers,
        )
        assert foreign.status_code == 404

        request_id = client.post(
            "/api/slot-requests",
            json={"vehicle_id": first_vehicle},
            headers=owner_headers,
        ).json()["id"]

        assert client.get(f"/api/slot-requests/{request_id}", headers=stranger_headers).status_code == 404
        assert (
            client.put(
                f"/api/slot-requests/{request_id}",
                json={"vehicle_id": stranger_vehicle},
                headers=stranger_headers,
            ).status_code
            == 404
        )

        updated = client.put(
            f"/api/slot-requests/{request_id}",
            json={"vehicle_id": second_vehicle},
            headers=owner_headers,
        )
        assert updated.status_code == 200
        assert updated.json()["vehicle_id"] == second_vehicle

        assert client.delete(f"/api/slot-requests/{request_id}", headers=stranger_headers).status_code == 404
        deleted = client.delete(f"/api/slot-requests/{request_id}", headers=owner_headers)
        assert deleted.status_code == 200
        assert deleted.json() == {"message": "Request deleted"}
        assert repository.requests.get(request_id) is None


def test_processed_request_cannot_be_edited_or_withdrawn(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_processed.db"))
    with TestClient(app) as client:
        owner_id, vehicle_id = _seed_driver(client, "RAB105")
        owner_headers = _user_headers(client, owner_id)
        request_id = app.state.repository.create_request(owner_id, vehicle_id).request_id
        client.put(
            f"/api/slot-requests/{request_id}/reject",
            json={"reason": "Lot full"},
            headers=_admin_headers(client),
        )

        edit = client.put(
            f"/api/slot-requests/{request_id}",
            json={"vehicle_id": vehicle_id},
            headers=owner_headers,
        )
        assert edit.status_code == 404
        assert edit.json()["detail"] == "Request not found or not editable"
        withdraw = client.delete(f"/api/slot-requests/{request_id}", headers=owner_headers)
        assert withdraw.status_code == 404
        assert withdraw.json()["detail"] == "Request not found or not deletable"


def test_bulk_slot_creation_is_atomic(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_slots.db"))
    with TestClient(app) as client:
        headers = _admin_headers(client)
        first_batch = {
            "slots": [
                {"slot_number": " A1 ", "size": "medium", "vehicle_type": "car", "location": "north"},
                {"slot_number": "B1", "size": "small", "vehicle_type": "motorcycle", "location": "east"},
            ]
        }
        created = client.post("/api/parking-slots", json=first_batch, headers=headers)
        assert created.status_code == 201
        assert [slot["slot_number"] for slot in created.json()] == ["A1", "B1"]
        assert all(slot["status"] == "available" for slot in created.json())

        colliding = {
            "slots": [
                {"slot_number": "C1", "size": "large", "vehicle_type": "truck", "location": "south"},
                {"slot_number": "A1", "size": "medium", "vehicle_type": "car", "location": "north"},
            ]
        }
        duplicate = client.post("/api/parking-slots", json=colliding, headers=headers)
        assert duplicate.status_code == 400
        assert [slot.slot_number for slot in app.state.repository.list_slots()] == ["A1", "B1"]

        repeated_in_batch = {
            "slots": [
                {"slot_number": "D1", "size": "large", "vehicle_type": "truck", "location": "south"},
                {"slot_number": "D1", "size": "large", "vehicle_type": "truck", "location": "south"},
            ]
        }
        assert client.post("/api/parking-slots", json=repeated_in_batch, headers=headers).status_code == 400
        assert client.post("/api/parking-slots", json={"slots": []}, headers=headers).status_code == 422
        assert all(slot.status is SlotStatus.AVAILABLE for slot in app.state.repository.list_slots())


def test_audit_log_listing(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_logs.db"))
    with TestClient(app) as client:
        headers = _admin_headers(client)
        client.post(
            "/api/parking-slots",
            json={"slots": [{"slot_number": "A1", "size": "medium", "vehicle_type": "car", "location": "north"}]},
            headers=headers,
        )
        user_id, vehicle_id = _seed_driver(client, "RAB106")
        request_id = client.post(
            "/api/slot-requests",
            json={"vehicle_id": vehicle_id},
            headers=_user_headers(client, user_id),
        ).json()["id"]
        client.put(f"/api/slot-requests/{request_id}/approve", headers=headers)

        response = client.get("/api/logs", params={"limit": 2}, headers=headers)
        assert response.status_code == 200
        entries = response.json()["data"]
        assert len(entries) == 2
        assert entries[0]["action"] == f"Slot request {request_id} approved, assigned slot A1, email sent"
        assert entries[0]["actor_id"] == 1
        assert entries[1]["action"] == f"Slot request created for vehicle {vehicle_id}"

        full = client.get("/api/logs", headers=headers).json()["data"]
        assert full[-1]["action"] == "Bulk created 1 slots"

        assert client.get("/api/logs", params={"limit": 0}, headers=headers).status_code == 400
        assert client.get("/api/logs", params={"limit": 201}, headers=headers).status_code == 400


def test_login_logout_and_ping(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_session.db"))
    with TestClient(app) as client:
        assert client.get("/api/ping").json() == {"status": "ok"}
        assert client.post("/login", json={"admin_token": "wrong"}).status_code == 401

        headers = _admin_headers(client)
        assert client.get("/api/logs", headers=headers).status_code == 200
        assert client.post("/logout", headers=headers).json() == {"message": "Logged out"}
        assert client.get("/api/logs", headers=headers).status_code == 401


def test_login_fails_when_admin_token_not_configured(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_no_token.db", admin_token=None))
    with TestClient(app) as client:
        response = client.post("/login", json={"admin_token": "anything"})
        assert response.status_code == 401
        assert "ADMIN_TOKEN" in response.json()["detail"]


def test_non_ascii_credentials_are_rejected_as_unauthorized(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_non_ascii.db"))
    with TestClient(app) as client:
        admin_headers = _admin_headers(client)
        assert client.post("/login", json={"admin_token": "café"}).status_code == 401

        latin1_bearer = {"Authorization": "Bearer café".encode("latin-1")}
        assert client.put("/api/slot-requests/1/approve", headers=latin1_bearer).status_code == 401
        assert client.get("/api/slot-requests/1", headers=latin1_bearer).status_code == 401
        assert client.get("/api/logs", headers=admin_headers).status_code == 200


def test_new_login_replaces_previous_admin_session(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_relogin.db"))
    with TestClient(app) as client:
        first = _admin_headers(client)
        second = _admin_headers(client)

        assert client.get("/api/logs", headers=first).status_code == 401
        assert client.get("/api/logs", headers=second).status_code == 200


def test_out_of_range_ids_are_rejected_before_lookup(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_bounds.db"))
    with TestClient(app) as client:
        headers = _admin_headers(client)
        too_large = MAX_RECORD_ID + 1

        assert client.put(f"/api/slot-requests/{too_large}/approve", headers=headers).status_code == 422
        assert (
            client.put(
                f"/api/slot-requests/{too_large}/reject",
                json={"reason": "Lot full"},
                headers=headers,
            ).status_code
            == 422
        )
        assert client.get(f"/api/slot-requests/{too_large}", headers=headers).status_code == 422
        assert client.delete(f"/api/slot-requests/{too_large}", headers=headers).status_code == 422
        assert (
            client.put(
                f"/api/slot-requests/{too_large}",
                json={"vehicle_id": 1},
                headers=headers,
            ).status_code
            == 422
        )
        assert client.get("/api/slot-requests/0", headers=headers).status_code == 422
        assert (
            client.post("/api/slot-requests", json={"vehicle_id": too_large}, headers=headers).status_code
            == 422
        )
        assert client.get(f"/api/slot-requests/{MAX_RECORD_ID}", headers=headers).status_code == 404


def test_request_listing_is_scoped_to_caller(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_list.db"))
    with TestClient(app) as client:
        repository = app.state.repository
        first_user, first_vehicle = _seed_driver(client, "RAB110")
        second_user, second_vehicle = _seed_driver(client, "RAB111")
        first_request = repository.create_request(first_user, first_vehicle).request_id
        second_request = repository.create_request(second_user, second_vehicle).request_id

        own = client.get("/api/slot-requests", headers=_user_headers(client, first_user))
        assert own.status_code == 200
        assert [item["id"] for item in own.json()] == [first_request]

        everything = client.get("/api/slot-requests", headers=_admin_headers(client))
        assert everything.status_code == 200
        assert [item["id"] for item in everything.json()] == [first_request, second_request]

        assert client.get("/api/slot-requests").status_code == 401


def test_slot_listing_hides_taken_slots_from_requesters(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_slot_list.db"))
    with TestClient(app) as client:
        repository = app.state.repository
        repository.create_slots(
            [NewSlot("A1", "medium", "car", "north"), NewSlot("A2", "medium", "car", "north")]
        )
        assert repository.slots.claim(1)
        user_id, _ = _seed_driver(client, "RAB112")

        visible = client.get("/api/parking-slots", headers=_user_headers(client, user_id))
        assert visible.status_code == 200
        assert [slot["slot_number"] for slot in visible.json()] == ["A2"]

        everything = client.get("/api/parking-slots", headers=_admin_headers(client))
        assert [
            (slot["slot_number"], slot["status"]) for slot in everything.json()
        ] == [("A1", "unavailable"), ("A2", "available")]


def test_vehicle_registration_and_duplicate_plate(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_vehicles.db"))
    with TestClient(app) as client:
        user_id = _create_user(app.state.repository, "Driver", "driver@example.com")
        headers = _user_headers(client, user_id)
        body = {"plate_number": " RAB113 ", "vehicle_type": "car", "size": "medium"}

        created = client.post("/api/vehicles", json=body, headers=headers)
        assert created.status_code == 201
        assert created.json()["plate_number"] == "RAB113"
        assert created.json()["user_id"] == user_id

        duplicate = client.post("/api/vehicles", json=body, headers=headers)
        assert duplicate.status_code == 400
        assert duplicate.json()["detail"] == "Plate number already exists"

        blank = {"plate_number": "  ", "vehicle_type": "car", "size": "medium"}
        assert client.post("/api/vehicles", json=blank, headers=headers).status_code == 422

        request = client.post(
            "/api/slot-requests",
            json={"vehicle_id": created.json()["id"]},
            headers=headers,
        )
        assert request.status_code == 201

        logs = client.get("/api/logs", headers=_admin_headers(client)).json()
        assert logs["total"] == 2
        assert logs["data"][-1]["action"] == "Vehicle RAB113 created"


def test_approve_and_reject_report_conflict_when_request_taken_midway(tmp_path, monkeypatch):
    app = create_app(_build_test_settings(tmp_path, "api_conflict.db"))
    with TestClient(app) as client:
        repository = app.state.repository
        repository.create_slots([NewSlot("A1", "medium", "car", "north")])
        user_id, vehicle_id = _seed_driver(client, "RAB114")
        approve_target = repository.create_request(user_id, vehicle_id).request_id
        reject_target = repository.create_request(user_id, vehicle_id).request_id
        headers = _admin_headers(client)
        find_slot = repository.slots.find_first_available
        find_location = repository.slots.find_location

        def reject_then_find(vehicle_type, size):
            repository.requests.mark_rejected(approve_target)
            return find_slot(vehicle_type, size)

        def reject_then_locate(vehicle_type, size):
            repository.requests.mark_rejected(reject_target)
            return find_location(vehicle_type, size)

        monkeypatch.setattr(repository.slots, "find_first_available", reject_then_find)
        monkeypatch.setattr(repository.slots, "find_location", reject_then_locate)

        approve = client.put(f"/api/slot-requests/{approve_target}/approve", headers=headers)
        assert approve.status_code == 409
        assert "processed concurrently" in approve.json()["detail"]
        assert repository.slots.get(1).status is SlotStatus.AVAILABLE

        reject = client.put(
            f"/api/slot-requests/{reject_target}/reject",
            json={"reason": "Lot full"},
            headers=headers,
        )
        assert reject.status_code == 409
        assert "processed concurrently" in reject.json()["detail"]


def test_approve_and_reject_hide_persistence_failures(tmp_path, monkeypatch):
    app = create_app(_build_test_settings(tmp_path, "api_persistence.db"))
    with TestClient(app) as client:
        repository = app.state.repository
        repository.create_slots([NewSlot("A1", "medium", "car", "north")])
        user_id, vehicle_id = _seed_driver(client, "RAB115")
        request_id = repository.create_request(user_id, vehicle_id).request_id
        headers = _admin_headers(client)

        @contextmanager
        def failing_transaction():
            raise PersistenceError("Transaction failed: disk I/O error")
            yield

        monkeypatch.setattr(repository, "transaction", failing_transaction)

        approve = client.put(f"/api/slot-requests/{request_id}/approve", headers=headers)
        assert approve.status_code == 500
        assert approve.json()["detail"] == "Server error"

        reject = client.put(
            f"/api/slot-requests/{request_id}/reject",
            json={"reason": "Lot full"},
            headers=headers,
        )
        assert reject.status_code == 500
        assert reject.json()["detail"] == "Server error"

        monkeypatch.undo()
        assert repository.requests.get(request_id).status is RequestStatus.PENDING
        assert repository.slots.get(1).status is SlotStatus.AVAILABLE


class _BrokenRequestService:
    def get_request(self, request_id, identity):
        raise RuntimeError("database went away")


def test_request_lookup_failure_returns_500(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_lookup_failure.db"))
    with TestClient(app) as client:
        headers = _admin_headers(client)
        app.state.request_service = _BrokenRequestService()

        response = client.get("/api/slot-requests/1", headers=headers)

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to load request"
