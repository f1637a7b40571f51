from datetime import datetime, timedelta

import pytest

from conftest import auth


def in_days(days: int) -> str:
    return (datetime.utcnow() + timedelta(days=days)).strftime("%Y-%m-%d")


@pytest.fixture
def exam_type(client, admin, session_doc):
    res = client.post("/api/exams/types", headers=auth(admin), json={"name": "Unit Test", "totalMarks": 50,
                                                                     "passingMarks": 20})
    assert res.status_code == 201
    return res.json()["data"]["examType"]


def _exam(classroom, subject, exam_type, **overrides):
    return {
        "name": "Maths Unit 1", "examType": exam_type["id"], "class": str(classroom["_id"]),
        "subject": str(subject["_id"]), "date": in_days(5), "startTime": "09:00", "endTime": "10:30",
        "totalMarks": 50, "passingMarks": 20, **overrides,
    }


def test_teacher_schedules_exam_for_assigned_class(client, teacher, classroom, subject, exam_type):
    res = client.post("/api/exams", headers=auth(teacher), json=_exam(classroom, subject, exam_type))
    assert res.status_code == 201
    exam = res.json()["data"]["exam"]
    assert exam["teacher"]["id"] == str(teacher["_id"])
    assert exam["subject"]["code"] == "MATH"
    assert exam["status"] == "Scheduled"


def test_overlapping_slot_rejected(client, admin, classroom, subject, exam_type):
    assert client.post("/api/exams", headers=auth(admin),
                       json=_exam(classroom, subject, exam_type)).status_code == 201
    res = client.post("/api/exams", headers=auth(admin),
                      json=_exam(classroom, subject, exam_type, name="Clash", startTime="10:00", endTime="11:00"))
    assert res.status_code == 400
    res = client.post("/api/exams", headers=auth(admin),
                      json=_exam(classroom, subject, exam_type, name="Later", startTime="10:30", endTime="11:30"))
    assert res.status_code == 201


def test_exam_validation(client, admin, classroom, subject, exam_type):
    res = client.post("/api/exams", headers=auth(admin),
                      json=_exam(classroom, subject, exam_type, passingMarks=60))
    assert res.status_code == 400
    res = client.post("/api/exams", headers=auth(admin),
                      json=_exam(classroom, subject, exam_type, endTime="08:00"))
    assert res.status_code == 400
    res = client.post("/api/exams", headers=auth(admin),
                      json=_exam(classroom, subject, exam_type, date=in_days(-2)))
    assert res.status_code == 400
    assert res.json()["message"] == "Exam date cannot be in the past"


def test_teacher_cannot_schedule_elsewhere(client, teacher, make_class, subject, exam_type):
    other = make_class("Grade 12", 12)
    res = client.post("/api/exams", headers=auth(teacher), json=_exam(other, subject, exam_type))
    assert res.status_code == 403


def test_students_see_only_their_class_exams(client, admin, student, classroom, make_class, subject, exam_type):
    other = make_class("Grade 4", 4)
    client.post("/api/exams", headers=auth(admin), json=_exam(classroom, subject, exam_type))
    client.post("/api/exams", headers=auth(admin), json=_exam(other, subject, exam_type, name="Other class"))
    items = client.get("/api/exams", headers=auth(student["account"])).json()["data"]["items"]
    assert [e["name"] for e in items] == ["Maths Unit 1"]


def test_delete_cancels_or_is_blocked_by_marks(client, admin, classroom, subject, exam_type, student, db):
    exam = client.post("/api/exams", headers=auth(admin), json=_exam(classroom, subject, exam_type)).json()["data"]["exam"]
    client.post("/api/marks", headers=auth(admin),
                json={"exam": exam["id"], "marks": [{"student": str(student["_id"]), "marksObtained": 30}]})
    res = client.delete(f"/api/exams/{exam['id']}", headers=auth(admin))
    assert res.status_code == 400
    assert "1 mark entries" in res.json()["message"]

    other = client.post("/api/exams", headers=auth(admin),
                        json=_exam(classroom, subject, exam_type, name="Spare", date=in_days(6))).json()["data"]["exam"]
    assert client.delete(f"/api/exams/{other['id']}", headers=auth(admin)).status_code == 200
    assert db["exam"].find_one({"name": "Spare"})["status"] == "Cancelled"


def test_publish_requires_all_marks(client, admin, classroom, subject, exam_type, student, make_student):
    second = make_student(classroom)
    exam = client.post("/api/exams", headers=auth(admin), json=_exam(classroom, subject, exam_type)).json()["data"]["exam"]
    client.post("/api/marks", headers=auth(admin),
                json={"exam": exam["id"], "marks": [{"student": str(student["_id"]), "marksObtained": 30}]})
    res = client.post(f"/api/exams/{exam['id']}/publish", headers=auth(admin))
    assert res.status_code == 400
    assert "1 out of 2" in res.json()["message"]

    client.post("/api/marks", headers=auth(admin),
                json={"exam": exam["id"], "marks": [{"student": str(second["_id"]), "marksObtained": 10}]})
    assert client.post(f"/api/exams/{exam['id']}/publish", headers=auth(admin)).status_code == 200

    results = client.get(f"/api/exams/{exam['id']}/results", headers=auth(admin)).json()["data"]
    assert results["stats"]["passCount"] == 1
    assert results["stats"]["passPercentage"] == 50
    assert results["results"][0]["marksObtained"] == 30


def test_update_exam(client, admin, classroom, subject, exam_type):
    exam = client.post("/api/exams", headers=auth(admin), json=_exam(classroom, subject, exam_type)).json()["data"]["exam"]
    res = client.put(f"/api/exams/{exam['id']}", headers=auth(admin), json={"room": "Hall B"})
    assert res.status_code == 200
    assert res.json()["data"]["exam"]["room"] == "Hall B"


def test_teacher_cannot_move_exam_to_unassigned_class(client, teacher, classroom, make_class, subject, exam_type):
    other = make_class("Grade 11", 11)
    exam = client.post("/api/exams", headers=auth(teacher), json=_exam(classroom, subject, exam_type)).json()["data"]["exam"]
    res = client.put(f"/api/exams/{exam['id']}", headers=auth(teacher), json={"class": str(other["_id"])})
    assert res.status_code == 403
    res = client.put(f"/api/exams/{exam['id']}", headers=auth(teacher), json={"room": "Lab 2"})
    assert res.status_code == 200
