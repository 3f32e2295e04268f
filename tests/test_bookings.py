from datetime import timedelta

from hallbook.dates import local_now
from hallbook.models import RoleEnum

ADMIN_PAYLOAD = {
    "name": "Admin",
    "email": "admin@campus.edu",
    "password": "Passw0rd!",
    "role": RoleEnum.ADMIN.value,
}


def auth_header(client, email: str, password: str = "Passw0rd!") -> dict[str, str]:
    response = client.post(
        "/users/login",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def register_faculty(users_client, admin_headers, email: str, approve: bool = True) -> dict[str, str]:
    users_client.post("/users/register", json={"name": email.split("@")[0], "email": email, "password": "Passw0rd!"})
    if approve:
        users_client.post(f"/users/approvals/{email}/approve", headers=admin_headers)
    return auth_header(users_client, email)


def setup_campus(users_client, halls_client):
    users_client.post("/users/register", json=ADMIN_PAYLOAD)
    admin_headers = auth_header(users_client, ADMIN_PAYLOAD["email"])
    hall = halls_client.post(
        "/halls",
        json={"name": "Seminar Hall A", "capacity": 80, "location": "Main Block"},
        headers=admin_headers,
    ).json()
    return admin_headers, hall["id"]


def booking_body(hall_id: int, days_ahead: int = 5, start: str = "10:00", end: str = "11:00", **extra):
    day = local_now().date() + timedelta(days=days_ahead)
    return {
        "hall_id": hall_id,
        "booking_date": day.isoformat(),
        "start_time": start,
        "end_time": end,
        "purpose": "Guest lecture",
        "attendees_count": 40,
        **extra,
    }


def test_create_and_approve_notifies_owner(users_client, halls_client, bookings_client, notifications_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    before = notifications_client.get("/notifications/unread-count", headers=u1).json()["unread_count"]

    created = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1)
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending"
    assert body["duration_minutes"] == 60
    assert body["start_time"] == "10:00"
    assert body["conflict_warning"] is None

    approved = bookings_client.post(f"/bookings/{body['id']}/approve", json={"admin_notes": "ok"}, headers=admin_headers)
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert approved.json()["approved_by"] is not None

    after = notifications_client.get("/notifications/unread-count", headers=u1).json()["unread_count"]
    assert after == before + 1
    latest = notifications_client.get("/notifications", headers=u1).json()["items"][0]
    assert latest["type"] == "booking"
    assert latest["data"]["booking_id"] == body["id"]


def test_second_approval_in_same_window_conflicts(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    u2 = register_faculty(users_client, admin_headers, "u2@campus.edu")

    first = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1).json()
    bookings_client.post(f"/bookings/{first['id']}/approve", headers=admin_headers)

    second = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u2)
    assert second.status_code == 201
    second_body = second.json()
    assert second_body["conflict_warning"]["conflicting_booking_ids"] == [first["id"]]

    resp = bookings_client.post(f"/bookings/{second_body['id']}/approve", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["errorKind"] == "Conflict"

    still = bookings_client.get(f"/bookings/{second_body['id']}", headers=u2)
    assert still.json()["status"] == "pending"


def test_cancel_then_cancel_again(users_client, halls_client, bookings_client, notifications_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")

    booking = bookings_client.post("/bookings", json=booking_body(hall_id, days_ahead=1), headers=u1).json()
    bookings_client.post(f"/bookings/{booking['id']}/approve", headers=admin_headers)

    cancelled = bookings_client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Speaker ill"}, headers=u1)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["cancellation_reason"] == "Speaker ill"

    items = notifications_client.get("/notifications", headers=u1).json()["items"]
    assert items[0]["type"] == "cancellation"
    assert items[0]["title"] == "Booking Cancelled"

    again = bookings_client.post(f"/bookings/{booking['id']}/cancel", headers=u1)
    assert again.status_code == 409
    assert again.json()["errorKind"] == "InvalidTransition"


def test_admin_cancellation_is_labelled(users_client, halls_client, bookings_client, notifications_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    booking = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1).json()

    resp = bookings_client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Exam week"}, headers=admin_headers)
    assert resp.status_code == 200

    latest = notifications_client.get("/notifications", headers=u1).json()["items"][0]
    assert latest["title"] == "Booking Cancelled by Administrator"
    assert latest["data"]["cancelled_by_admin"] is True
    assert latest["data"]["cancellation_reason"] == "Exam week"


def test_pending_faculty_cannot_book_until_approved(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    newcomer = register_faculty(users_client, admin_headers, "new@campus.edu", approve=False)

    me = users_client.get("/users/me", headers=newcomer).json()
    assert me["approved_by_admin"] is False

    denied = bookings_client.post("/bookings", json=booking_body(hall_id), headers=newcomer)
    assert denied.status_code == 403
    assert denied.json()["errorKind"] == "AccountNotApproved"

    users_client.post("/users/approvals/new@campus.edu/approve", headers=admin_headers)
    allowed = bookings_client.post("/bookings", json=booking_body(hall_id), headers=newcomer)
    assert allowed.status_code == 201


def test_window_validation(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")

    past = bookings_client.post("/bookings", json=booking_body(hall_id, days_ahead=-1), headers=u1)
    assert past.status_code == 400
    assert past.json()["message"] == "Cannot book halls for past dates"

    backwards = bookings_client.post("/bookings", json=booking_body(hall_id, start="11:00", end="10:00"), headers=u1)
    assert backwards.json()["message"] == "End time must be after start time"

    too_short = bookings_client.post("/bookings", json=booking_body(hall_id, start="10:00", end="10:15"), headers=u1)
    assert too_short.status_code == 400

    too_late = bookings_client.post("/bookings", json=booking_body(hall_id, start="22:30", end="23:30"), headers=u1)
    assert too_late.status_code == 400

    crowded = bookings_client.post("/bookings", json=booking_body(hall_id, attendees_count=500), headers=u1)
    assert crowded.status_code == 400

    bad_date = bookings_client.post("/bookings", json=booking_body(hall_id, booking_date="2025/03/10"), headers=u1)
    assert bad_date.status_code == 400
    assert bad_date.json()["details"]["field"] == "booking_date"


def test_compact_date_is_accepted(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    day = local_now().date() + timedelta(days=4)

    resp = bookings_client.post(
        "/bookings", json=booking_body(hall_id, booking_date=day.strftime("%d%m%Y")), headers=u1
    )
    assert resp.status_code == 201
    assert resp.json()["booking_date"] == day.isoformat()


def test_hall_under_maintenance_is_unavailable(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    halls_client.put(f"/halls/{hall_id}/maintenance", json={"is_maintenance": True}, headers=admin_headers)

    resp = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1)
    assert resp.status_code == 409
    assert resp.json()["errorKind"] == "HallUnavailable"


def test_owner_only_visibility(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    u2 = register_faculty(users_client, admin_headers, "u2@campus.edu")
    booking = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1).json()

    assert bookings_client.get(f"/bookings/{booking['id']}", headers=u2).status_code == 403
    assert bookings_client.post(f"/bookings/{booking['id']}/cancel", headers=u2).status_code == 403
    assert bookings_client.post(f"/bookings/{booking['id']}/approve", headers=u1).json()["errorKind"] == "InsufficientRole"

    mine = bookings_client.get("/bookings/me", headers=u1).json()
    assert [b["id"] for b in mine] == [booking["id"]]
    assert bookings_client.get("/bookings/me", headers=u2).json() == []


def test_reject_requires_reason(users_client, halls_client, bookings_client, notifications_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    booking = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1).json()

    blank = bookings_client.post(f"/bookings/{booking['id']}/reject", json={"reason": "  "}, headers=admin_headers)
    assert blank.status_code == 400

    rejected = bookings_client.post(
        f"/bookings/{booking['id']}/reject", json={"reason": "Hall reserved for exams"}, headers=admin_headers
    )
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["rejected_reason"] == "Hall reserved for exams"

    latest = notifications_client.get("/notifications", headers=u1).json()["items"][0]
    assert latest["type"] == "rejection"
    assert latest["data"]["rejection_reason"] == "Hall reserved for exams"


def test_admin_listing_and_statistics(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    first = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1).json()
    bookings_client.post("/bookings", json=booking_body(hall_id, start="14:00", end="16:00"), headers=u1)
    bookings_client.post(f"/bookings/{first['id']}/approve", headers=admin_headers)

    page = bookings_client.get("/bookings", params={"status": "pending"}, headers=admin_headers)
    assert page.status_code == 200
    assert page.json()["total"] == 1

    searched = bookings_client.get("/bookings", params={"search": "u1@campus"}, headers=admin_headers)
    assert searched.json()["total"] == 2

    stats = bookings_client.get("/bookings/statistics", headers=admin_headers).json()
    assert stats["total_bookings"] == 2
    assert stats["approved_bookings"] == 1
    assert stats["pending_bookings"] == 1
    assert stats["hall_popularity"][0]["booking_count"] == 2

    mine = bookings_client.get("/bookings/me/stats", headers=u1).json()
    assert mine["total_bookings"] == 2
    assert mine["average_rating"] == 0.0


def test_conflict_check_endpoint(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    body = booking_body(hall_id)
    booking = bookings_client.post("/bookings", json=body, headers=u1).json()

    overlap = bookings_client.get(
        "/bookings/conflicts",
        params={
            "hall_id": hall_id,
            "booking_date": body["booking_date"],
            "start_time": "10:30",
            "end_time": "11:30",
        },
        headers=u1,
    ).json()
    assert overlap["has_conflict"] is True
    assert overlap["conflicting_booking_ids"] == [booking["id"]]
    assert overlap["approved_conflict"] is False

    adjacent = bookings_client.get(
        "/bookings/conflicts",
        params={"hall_id": hall_id, "booking_date": body["booking_date"], "start_time": "11:00", "end_time": "12:00"},
        headers=u1,
    ).json()
    assert adjacent["has_conflict"] is False


def test_owner_edits_pending_booking(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    u2 = register_faculty(users_client, admin_headers, "u2@campus.edu")
    mine = bookings_client.post("/bookings", json=booking_body(hall_id), headers=u1).json()
    theirs = bookings_client.post("/bookings", json=booking_body(hall_id, start="14:00", end="16:00"), headers=u2).json()
    bookings_client.post(f"/bookings/{theirs['id']}/approve", headers=admin_headers)

    edited = bookings_client.put(
        f"/bookings/{mine['id']}",
        json={"start_time": "09:00", "end_time": "11:30", "equipment_needed": ["projector"]},
        headers=u1,
    )
    assert edited.status_code == 200
    assert edited.json()["duration_minutes"] == 150
    assert edited.json()["equipment_needed"] == ["projector"]
    assert edited.json()["status"] == "pending"

    clash = bookings_client.put(f"/bookings/{mine['id']}", json={"start_time": "13:00", "end_time": "15:00"}, headers=u1)
    assert clash.status_code == 409
    assert clash.json()["errorKind"] == "Conflict"

    assert bookings_client.put(f"/bookings/{mine['id']}", json={"purpose": "Hijack"}, headers=u2).status_code == 403
    decided = bookings_client.put(f"/bookings/{theirs['id']}", json={"purpose": "Changed"}, headers=u2)
    assert decided.status_code == 409
    assert decided.json()["errorKind"] == "InvalidTransition"


def test_trends_and_hall_performance_are_admin_reports(users_client, halls_client, bookings_client):
    admin_headers, hall_id = setup_campus(users_client, halls_client)
    u1 = register_faculty(users_client, admin_headers, "u1@campus.edu")
    bookings_client.post("/bookings", json=booking_body(hall_id, days_ahead=0, start="22:00", end="23:00"), headers=u1)

    trends = bookings_client.get("/bookings/statistics/trends", params={"days": 7}, headers=admin_headers)
    assert trends.status_code == 200
    assert len(trends.json()) == 7
    assert sum(day["bookings"] for day in trends.json()) == 1
    assert trends.json()[-1]["bookings"] == 1

    halls = bookings_client.get("/bookings/statistics/halls", params={"days": 1}, headers=admin_headers).json()
    assert halls[0]["hall_id"] == hall_id
    assert halls[0]["total_bookings"] == 1
    assert halls[0]["average_duration_minutes"] == 60
    assert halls[0]["utilization_rate"] == 0.0

    assert bookings_client.get("/bookings/statistics/trends", headers=u1).status_code == 403
    assert bookings_client.get("/bookings/statistics/trends", params={"days": 0}, headers=admin_headers).status_code == 400


def test_completion_sweep_requires_service_key(bookings_client):
    assert bookings_client.post("/bookings/sweeps/complete").status_code == 403
    resp = bookings_client.post("/bookings/sweeps/complete", headers={"X-Service-Key": "service-key"})
    assert resp.status_code == 200
    assert resp.json() == {"completed": 0}
