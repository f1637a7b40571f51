from datetime import datetime

import pytest
from bson import ObjectId

from conftest import auth
from exceptions import NotFoundError
from routers.sessions import activate_session
from seed import create_admin, create_default_session


def test_creating_active_session_deactivates_others(client, admin, session_doc, db):
    res = client.post("/api/sessions", headers=auth(admin), json={
        "name": "2099-2100", "startDate": "2099-04-01", "endDate": "2100-03-31", "isActive": True,
    })
    assert res.status_code == 201
    assert res.json()["data"]["session"]["isActive"] is True
    assert db["session"].count_documents({"isActive": True}) == 1
    assert db["session"].find_one({"_id": session_doc["_id"]})["isActive"] is False


def test_activate_switches_active_session(client, admin, session_doc, db):
    other = db["session"].insert_one({"name": "2000-2001", "startDate": datetime(2000, 4, 1),
                                      "endDate": datetime(2001, 3, 31), "isActive": False}).inserted_id
    res = client.put(f"/api/sessions/{other}/activate", headers=auth(admin))
    assert res.status_code == 200
    active = client.get("/api/sessions/active", headers=auth(admin)).json()["data"]["session"]
    assert active["id"] == str(other)
    assert db["session"].count_documents({"isActive": True}) == 1


def test_session_end_must_follow_start(client, admin):
    res = client.post("/api/sessions", headers=auth(admin), json={
        "name": "bad", "startDate": "2030-04-01", "endDate": "2030-03-01",
    })
    assert res.status_code == 400


def test_cannot_delete_active_or_used_session(client, admin, session_doc, classroom, db):
    assert client.delete(f"/api/sessions/{session_doc['_id']}", headers=auth(admin)).status_code == 400
    db["session"].update_one({"_id": session_doc["_id"]}, {"$set": {"isActive": False}})
    res = client.delete(f"/api/sessions/{session_doc['_id']}", headers=auth(admin))
    assert res.status_code == 400
    assert "1 classes" in res.json()["message"]


def test_no_active_session(client, admin):
    res = client.get("/api/sessions/active", headers=auth(admin))
    assert res.status_code == 404
    assert res.json()["message"] == "No active session found"


def test_create_class_defaults_to_active_session(client, admin, session_doc, subject):
    res = client.post("/api/classes", headers=auth(admin), json={
        "name": "Grade 3", "grade": 3, "capacity": 30, "subjects": [str(subject["_id"])],
    })
    assert res.status_code == 201
    created = res.json()["data"]["class"]
    assert created["session"]["id"] == str(session_doc["_id"])

    detail = client.get(f"/api/classes/{created['id']}", headers=auth(admin)).json()["data"]
    assert [s["code"] for s in detail["subjects"]] == ["MATH"]


def test_duplicate_class_rejected(client, admin, classroom):
    res = client.post("/api/classes", headers=auth(admin),
                      json={"name": classroom["name"], "grade": classroom["grade"]})
    assert res.status_code == 400


def test_grade_out_of_range(client, admin):
    res = client.post("/api/classes", headers=auth(admin), json={"name": "Grade 13", "grade": 13})
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "grade"


def test_class_with_active_students_cannot_be_deleted(client, admin, classroom, student):
    res = client.delete(f"/api/classes/{classroom['_id']}", headers=auth(admin))
    assert res.status_code == 400
    assert "1 active students" in res.json()["message"]


def test_class_delete_cascades(client, admin, classroom, subject, make_student, db):
    db["section"].insert_one({"name": "A", "class": classroom["_id"]})
    leaver = make_student(classroom)
    db["student"].update_one({"_id": leaver["_id"]}, {"$set": {"status": "Graduated"}})

    res = client.delete(f"/api/classes/{classroom['_id']}", headers=auth(admin))
    assert res.status_code == 200
    assert db["classroom"].count_documents({}) == 0
    assert db["section"].count_documents({"class": classroom["_id"]}) == 0
    assert db["subject"].find_one({"_id": subject["_id"]})["classes"] == []
    assert "class" not in db["student"].find_one({"_id": leaver["_id"]})


def test_classes_hidden_from_students(client, student):
    assert client.get("/api/classes", headers=auth(student["account"])).status_code == 403


def test_class_stats(client, teacher, classroom, student):
    res = client.get("/api/classes/stats", headers=auth(teacher))
    assert res.status_code == 200
    row = res.json()["data"]["classWise"][0]
    assert row["totalStudents"] == 1
    assert row["utilizationRate"] == 2.5


def test_seed_is_idempotent(db):
    admin = create_admin()
    session = create_default_session(admin["_id"], now=datetime(2024, 6, 1))
    assert session["name"] == "2024-2025"
    assert session["isActive"] is True
    assert isinstance(session["_id"], ObjectId)

    assert create_admin()["_id"] == admin["_id"]
    assert create_default_session(admin["_id"])["_id"] == session["_id"]
    assert db["user"].count_documents({"email": "admin@school.com"}) == 1


def test_activating_unknown_session_keeps_current_one(client, admin, session_doc, db):
    res = client.put(f"/api/sessions/{ObjectId()}/activate", headers=auth(admin))
    assert res.status_code == 404
    with pytest.raises(NotFoundError):
        activate_session(ObjectId())
    assert db["session"].find_one({"_id": session_doc["_id"]})["isActive"] is True


def test_activation_flips_every_session_in_one_pass(admin, session_doc, db):
    stale = db["session"].insert_one({"name": "1999-2000", "startDate": datetime(1999, 4, 1),
                                      "endDate": datetime(2000, 3, 31), "isActive": True}).inserted_id
    target = db["session"].insert_one({"name": "2001-2002", "startDate": datetime(2001, 4, 1),
                                       "endDate": datetime(2002, 3, 31), "isActive": False}).inserted_id
    activated = activate_session(target, admin["_id"])
    assert activated["isActive"] is True
    assert activated["updatedBy"] == admin["_id"]
    assert [s["_id"] for s in db["session"].find({"isActive": True})] == [target]
    assert db["session"].find_one({"_id": stale})["isActive"] is False
