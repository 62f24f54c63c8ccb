import os

import pytest
from fastapi.testclient import TestClient

ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin", "X-Actor-Name": "Warden"}


def as_student(student_id):
    return {"X-Actor-Id": student_id, "X-Actor-Role": "student"}


@pytest.fixture()
def client():
    # Ensure memory backend for tests
    os.environ["DB_BACKEND"] = "memory"
    import hostel_system as hs
    import server as srv
    srv.system = hs.HostelSystem()  # reset state per test
    with TestClient(srv.app) as c:
        yield c


def create_student(client, name="Alice", email="alice@example.com"):
    r = client.post("/api/students", json={"name": name, "email": email})
    assert r.status_code == 201, r.text
    return r.json()


def create_room(client, **kwargs):
    payload = {"number": "101", "floor": "1", "type": "single", "capacity": 1}
    payload.update(kwargs)
    r = client.post("/api/rooms", json=payload, headers=ADMIN)
    assert r.status_code == 201, r.text
    return r.json()


def test_room_request_and_approval_flow(client: TestClient):
    alice = create_student(client)
    room = create_room(client)
    other = create_room(client, number="102")

    r = client.post("/api/room-requests", json={"room_id": room["id"]}, headers=as_student(alice["id"]))
    assert r.status_code == 201, r.text
    request_id = r.json()["id"]

    pending = client.get("/api/room-requests", params={"status": "pending"}, headers=ADMIN).json()
    assert [p["id"] for p in pending] == [request_id]

    r = client.post(f"/api/room-requests/{request_id}/approve", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["status"] == "approved"
    assert r.json()["decided_by"] == "admin-1"

    rooms = {x["number"]: x for x in client.get("/api/rooms", headers=as_student(alice["id"])).json()}
    assert rooms["101"]["status"] == "occupied"
    assert rooms["101"]["occupancy"] == 1

    r = client.post("/api/room-requests", json={"room_id": other["id"]}, headers=as_student(alice["id"]))
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "student_has_room"


def test_student_cannot_act_as_admin_or_for_others(client: TestClient):
    alice = create_student(client)
    bob = create_student(client, "Bob", "bob@example.com")
    room = create_room(client)

    r = client.post("/api/rooms", json={"number": "999", "floor": "9"}, headers=as_student(alice["id"]))
    assert r.status_code == 403

    r = client.post(
        "/api/room-requests",
        json={"room_id": room["id"], "student_id": bob["id"]},
        headers=as_student(alice["id"]),
    )
    assert r.status_code == 403

    r = client.get("/api/rooms")
    assert r.status_code == 422


def test_direct_assignment_and_delete_occupied_room(client: TestClient):
    alice = create_student(client)
    bob = create_student(client, "Bob", "bob@example.com")
    room = create_room(client)

    r = client.post(f"/api/rooms/{room['id']}/assign", json={"student_id": alice["id"]}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["room_id"] == room["id"]

    r = client.post(f"/api/rooms/{room['id']}/assign", json={"student_id": bob["id"]}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "room_unavailable"

    r = client.delete(f"/api/rooms/{room['id']}", headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "room_occupied"

    r = client.post(f"/api/students/{alice['id']}/release", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["status"] == "available"
    assert client.delete(f"/api/rooms/{room['id']}", headers=ADMIN).status_code == 200
    assert client.get(f"/api/rooms/{room['id']}/occupants", headers=ADMIN).status_code == 404


def test_fee_validation_and_payment(client: TestClient):
    alice = create_student(client)

    r = client.post("/api/fees", json={"student_id": alice["id"], "amount": 0, "due_date": "2025-10-01"}, headers=ADMIN)
    assert r.status_code == 422
    assert r.json()["detail"]["reason"] == "invalid_amount"

    r = client.post("/api/fees", json={"student_id": alice["id"], "amount": 100, "due_date": "01/10/2025"}, headers=ADMIN)
    assert r.status_code == 422

    r = client.post("/api/fees", json={"student_id": alice["id"], "amount": 100, "due_date": "2000-01-01"}, headers=ADMIN)
    assert r.status_code == 201, r.text
    fee = r.json()
    assert fee["status"] == "pending"
    assert fee["display_status"] == "overdue"

    totals = client.get("/api/fees/totals", headers=as_student(alice["id"])).json()
    assert totals["overdue"] == 100
    assert totals["total"] == 100

    r = client.post(f"/api/fees/{fee['id']}/pay", json={"payment_details": "Cash"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["display_status"] == "paid"
    r = client.post(f"/api/fees/{fee['id']}/pay", json={}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "fee_already_paid"

    r = client.post("/api/fees/reminders", json={"student_id": alice["id"]}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "no_unpaid_fees"


def test_complaint_flow_and_stats(client: TestClient):
    alice = create_student(client)
    headers = as_student(alice["id"])

    r = client.post("/api/complaints", json={"title": "Leak", "description": "Tap drips", "priority": "low"}, headers=headers)
    assert r.status_code == 201, r.text
    complaint = r.json()
    assert complaint["room_number"] == "Not assigned"

    r = client.patch(f"/api/complaints/{complaint['id']}/priority", json={"priority": "high"}, headers=ADMIN)
    assert r.json()["priority"] == "high"
    r = client.post(f"/api/complaints/{complaint['id']}/assign", json={"assignee": "Ravi"}, headers=ADMIN)
    assert r.json()["status"] == "in-progress"
    r = client.post(f"/api/complaints/{complaint['id']}/resolve", json={"note": "Washer replaced"}, headers=ADMIN)
    assert r.json()["status"] == "resolved"
    assert r.json()["resolved_at"] is not None

    r = client.post(f"/api/complaints/{complaint['id']}/assign", json={"assignee": "Ravi"}, headers=ADMIN)
    assert r.status_code == 409

    mine = client.get("/api/complaints", headers=headers).json()
    assert [c["id"] for c in mine] == [complaint["id"]]
    stats = client.get("/api/complaints/stats", headers=ADMIN).json()
    assert stats == {"total": 1, "pending": 0, "in_progress": 0, "resolved": 1, "high_priority": 1}


def test_notifications_read_all(client: TestClient):
    alice = create_student(client)
    headers = as_student(alice["id"])

    r = client.post(
        "/api/notifications",
        json={"targets": [alice["id"], "student", "all"], "title": "Water cut", "message": "No water 2-4pm"},
        headers=ADMIN,
    )
    assert r.status_code == 201
    assert r.json()["sent"] == 3

    feed = client.get("/api/notifications", headers=headers).json()
    assert feed["unread"] == 3
    first = feed["items"][0]["id"]
    assert client.post(f"/api/notifications/{first}/read", headers=headers).json() == {"ok": True, "changed": True}
    assert client.post(f"/api/notifications/{first}/read", headers=headers).json() == {"ok": True, "changed": False}

    assert client.post("/api/notifications/read-all", headers=headers).json() == {"marked": 2}
    assert client.get("/api/notifications", headers=headers).json()["unread"] == 0
    assert client.post("/api/notifications/missing/read", headers=headers).status_code == 404


def test_seed_endpoint_is_repeatable(client: TestClient):
    r = client.post("/api/mock/seed")
    assert r.status_code == 200
    data = r.json()
    assert data["inserted"]["rooms"] == 4
    assert data["inserted"]["students"] == 4
    assert data["occupancy"]["occupied"] == 1
    assert data["occupancy"]["maintenance"] == 1
    assert data["complaints"]["total"] == 2

    again = client.post("/api/mock/seed").json()
    assert sum(again["inserted"].values()) == 0
    assert again["complaints"]["total"] == 2


def test_student_cannot_mark_another_students_notification(client: TestClient):
    alice = create_student(client)
    bob = create_student(client, "Bob", "bob@example.com")
    r = client.post(
        "/api/notifications",
        json={"targets": [alice["id"]], "title": "Fee due", "message": "Pay by Friday"},
        headers=ADMIN,
    )
    (note_id,) = r.json()["ids"]

    r = client.post(f"/api/notifications/{note_id}/read", headers=as_student(bob["id"]))
    assert r.status_code == 404
    assert r.json()["detail"]["reason"] == "notification_not_found"
    assert client.get("/api/notifications", headers=as_student(alice["id"])).json()["unread"] == 1

    r = client.post(f"/api/notifications/{note_id}/read", headers=as_student(alice["id"]))
    assert r.json() == {"ok": True, "changed": True}


def test_profile_update_self_or_admin(client: TestClient):
    alice = create_student(client)
    bob = create_student(client, "Bob", "bob@example.com")

    r = client.patch(f"/api/students/{alice['id']}", json={"phone": "555-0101", "year": 2}, headers=as_student(alice["id"]))
    assert r.status_code == 200, r.text
    assert (r.json()["phone"], r.json()["year"], r.json()["name"]) == ("555-0101", 2, "Alice")

    r = client.patch(f"/api/students/{alice['id']}", json={"name": "Mallory"}, headers=as_student(bob["id"]))
    assert r.status_code == 403

    r = client.patch(f"/api/students/{alice['id']}", json={"course": "ECE"}, headers=ADMIN)
    assert r.json()["course"] == "ECE"

    r = client.patch(f"/api/students/{alice['id']}", json={"year": 0}, headers=ADMIN)
    assert r.status_code == 422
    assert r.json()["detail"]["reason"] == "invalid_year"


def test_room_edit_applies_only_sent_fields(client: TestClient):
    room = create_room(client, amenities="Fan", block="A")

    r = client.patch(f"/api/rooms/{room['id']}", json={"amenities": "AC"}, headers=ADMIN)
    assert r.status_code == 200, r.text
    assert (r.json()["amenities"], r.json()["block"], r.json()["capacity"]) == ("AC", "A", 1)

    r = client.patch(f"/api/rooms/{room['id']}", json={"capacity": 9}, headers=ADMIN)
    assert r.status_code == 422
    assert r.json()["detail"]["reason"] == "invalid_capacity"
