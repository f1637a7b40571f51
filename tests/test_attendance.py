from datetime import datetime, timedelta

import pytest

from conftest import auth


def today() -> str:
    return datetime.utcnow().strftime("%Y-%m-%d")


@pytest.fixture
def two_students(make_student, classroom, parent):
    return make_student(classroom, parent), make_student(classroom)


def _payload(classroom, entries, day=None):
    return {
        "class": str(classroom["_id"]),
        "date": day or today(),
        "attendanceData": [{"student": str(s["_id"]), "status": status} for s, status in entries],
    }


def test_teacher_marks_class_attendance(client, teacher, classroom, two_students, db):
    first, second = two_students
    res = client.post("/api/attendance/mark", headers=auth(teacher),
                      json=_payload(classroom, [(first, "Present"), (second, "Absent")]))
    assert res.status_code == 201
    assert res.json()["data"]["recordsCreated"] == 2
    stored = db["attendance"].find_one({"student": first["_id"]})
    assert stored["markedBy"] == teacher["_id"]
    assert stored["session"] == classroom["session"]


def test_second_submission_for_same_day_is_rejected(client, admin, classroom, two_students):
    first, second = two_students
    payload = _payload(classroom, [(first, "Present"), (second, "Present")])
    assert client.post("/api/attendance/mark", headers=auth(admin), json=payload).status_code == 201
    res = client.post("/api/attendance/mark", headers=auth(admin), json=payload)
    assert res.status_code == 400
    assert "already marked" in res.json()["message"]


def test_student_is_marked_once_per_day_across_subjects(client, admin, classroom, subject, two_students, db):
    first, _ = two_students
    science = db["subject"].insert_one({"name": "Science", "code": "SCI", "classes": [classroom["_id"]],
                                        "isActive": True}).inserted_id
    payload = _payload(classroom, [(first, "Present")])
    res = client.post("/api/attendance/mark", headers=auth(admin), json={**payload, "subject": str(subject["_id"])})
    assert res.status_code == 201
    res = client.post("/api/attendance/mark", headers=auth(admin),
                      json={**_payload(classroom, [(first, "Absent")]), "subject": str(science)})
    assert res.status_code == 400
    assert "already marked" in res.json()["message"]
    assert db["attendance"].count_documents({"student": first["_id"]}) == 1


def test_marked_date_is_stored_as_start_of_day(client, admin, classroom, two_students, db):
    first, _ = two_students
    stamp = datetime.utcnow().replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%S")
    assert client.post("/api/attendance/mark", headers=auth(admin),
                       json=_payload(classroom, [(first, "Present")], stamp)).status_code == 201
    stored = db["attendance"].find_one({"student": first["_id"]})["date"]
    assert (stored.hour, stored.minute, stored.second) == (0, 0, 0)


def test_future_dates_are_rejected(client, admin, classroom, two_students):
    tomorrow = (datetime.utcnow() + timedelta(days=1)).strftime("%Y-%m-%d")
    res = client.post("/api/attendance/mark", headers=auth(admin),
                      json=_payload(classroom, [(two_students[0], "Present")], tomorrow))
    assert res.status_code == 400


def test_students_outside_the_class_are_rejected(client, admin, classroom, make_class, make_student):
    stranger = make_student(make_class("Grade 9", 9))
    res = client.post("/api/attendance/mark", headers=auth(admin),
                      json=_payload(classroom, [(stranger, "Present")]))
    assert res.status_code == 400
    assert "do not belong" in res.json()["message"]


def test_teacher_cannot_mark_unassigned_class(client, teacher, make_class, make_student):
    other = make_class("Grade 10", 10)
    pupil = make_student(other)
    res = client.post("/api/attendance/mark", headers=auth(teacher), json=_payload(other, [(pupil, "Present")]))
    assert res.status_code == 403


def test_invalid_status_fails_validation(client, admin, classroom, two_students):
    res = client.post("/api/attendance/mark", headers=auth(admin),
                      json=_payload(classroom, [(two_students[0], "Sleeping")]))
    assert res.status_code == 400
    assert res.json()["message"] == "Validation failed"


def test_parent_sees_only_their_childs_records(client, admin, parent, classroom, two_students):
    first, second = two_students
    client.post("/api/attendance/mark", headers=auth(admin),
                json=_payload(classroom, [(first, "Present"), (second, "Late")]))
    res = client.get("/api/attendance", headers=auth(parent))
    assert res.status_code == 200
    items = res.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["student"]["id"] == str(first["_id"])


def test_update_record(client, teacher, classroom, two_students, db):
    first, second = two_students
    client.post("/api/attendance/mark", headers=auth(teacher),
                json=_payload(classroom, [(first, "Present"), (second, "Present")]))
    record = db["attendance"].find_one({"student": second["_id"]})
    res = client.put(f"/api/attendance/{record['_id']}", headers=auth(teacher),
                     json={"status": "Excused", "remarks": "Doctor visit"})
    assert res.status_code == 200
    assert res.json()["data"]["attendance"]["status"] == "Excused"


def test_student_summary(client, admin, classroom, two_students, db):
    first, _ = two_students
    for days_ago, status in ((3, "Present"), (2, "Late"), (1, "Absent"), (0, "Present")):
        day = datetime.utcnow() - timedelta(days=days_ago)
        db["attendance"].insert_one({"student": first["_id"], "class": classroom["_id"], "status": status,
                                     "date": datetime(day.year, day.month, day.day)})
    res = client.get(f"/api/attendance/student/{first['_id']}/summary", headers=auth(first["account"]))
    assert res.status_code == 200
    summary = res.json()["data"]["summary"]
    assert summary["totalDays"] == 4
    assert summary["presentDays"] == 2
    assert summary["lateDays"] == 1
    assert summary["attendancePercentage"] == 75


def test_stats_require_staff(client, parent):
    assert client.get("/api/attendance/stats", headers=auth(parent)).status_code == 403
