from pymongo.errors import DuplicateKeyError

import routers.students
from conftest import auth, oid


def _new_student(classroom, **extra):
    return {
        "firstName": "Arjun",
        "lastName": "Mehta",
        "email": extra.pop("email", "arjun.mehta@example.com"),
        "password": "Student1",
        "class": str(classroom["_id"]),
        **extra,
    }


def test_admin_enrolls_student_with_generated_id(client, admin, classroom, session_doc, db):
    res = client.post("/api/students", json=_new_student(classroom), headers=auth(admin))
    assert res.status_code == 201
    student = res.json()["data"]["student"]
    year = session_doc["name"][:4]
    assert student["studentId"] == f"{year}0001"
    assert student["admissionNumber"] == student["studentId"]
    assert student["class"]["name"] == classroom["name"]
    assert student["user"]["role"] == "Student"
    assert db["user"].count_documents({"email": "arjun.mehta@example.com"}) == 1

    res = client.post("/api/students", json=_new_student(classroom, email="second@example.com"),
                      headers=auth(admin))
    assert res.json()["data"]["student"]["studentId"] == f"{year}0002"


def test_enrolment_rejects_unknown_class_and_parent(client, admin, classroom, teacher):
    res = client.post("/api/students", json={**_new_student(classroom), "class": oid()}, headers=auth(admin))
    assert res.status_code == 404
    res = client.post("/api/students", json=_new_student(classroom, parent=str(teacher["_id"])),
                      headers=auth(admin))
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "parent"


def test_teacher_cannot_enrol(client, teacher, classroom):
    res = client.post("/api/students", json=_new_student(classroom), headers=auth(teacher))
    assert res.status_code == 403


def test_list_is_scoped_by_role(client, admin, teacher, parent, student, make_student, make_class):
    other_class = make_class("Grade 6", 6)
    outsider = make_student(other_class)

    def listed(user):
        res = client.get("/api/students", headers=auth(user))
        assert res.status_code == 200
        return {s["id"] for s in res.json()["data"]["items"]}

    assert listed(admin) == {str(student["_id"]), str(outsider["_id"])}
    assert listed(teacher) == {str(student["_id"])}
    assert listed(parent) == {str(student["_id"])}
    assert listed(student["account"]) == {str(student["_id"])}


def test_caller_filter_cannot_widen_scope(client, teacher, make_student, make_class):
    other_class = make_class("Grade 7", 7)
    make_student(other_class)
    res = client.get(f"/api/students?class={other_class['_id']}", headers=auth(teacher))
    assert res.status_code == 200
    assert res.json()["data"]["items"] == []


def test_student_cannot_view_classmate(client, student, make_student, classroom):
    classmate = make_student(classroom)
    res = client.get(f"/api/students/{classmate['_id']}", headers=auth(student["account"]))
    assert res.status_code == 403
    res = client.get(f"/api/students/{student['_id']}", headers=auth(student["account"]))
    assert res.status_code == 200


def test_malformed_id_is_not_found(client, admin):
    res = client.get("/api/students/not-an-id", headers=auth(admin))
    assert res.status_code == 404
    assert res.json()["message"] == "Student not found"


def test_update_touches_student_and_account(client, admin, student, db):
    res = client.put(f"/api/students/{student['_id']}", headers=auth(admin),
                     json={"firstName": "Renamed", "rollNumber": "42"})
    assert res.status_code == 200
    assert res.json()["data"]["student"]["rollNumber"] == "42"
    assert db["user"].find_one({"_id": student["user"]})["firstName"] == "Renamed"


def test_delete_is_soft(client, admin, student, db):
    res = client.delete(f"/api/students/{student['_id']}", headers=auth(admin))
    assert res.status_code == 200
    assert db["student"].find_one({"_id": student["_id"]})["status"] == "Inactive"
    assert db["user"].find_one({"_id": student["user"]})["isActive"] is False


def test_stats_overview(client, admin, student):
    res = client.get("/api/students/stats", headers=auth(admin))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["overview"]["total"] == 1
    assert data["overview"]["active"] == 1
    assert data["classWise"][0]["count"] == 1


def test_failed_enrolment_leaves_no_login_behind(client, admin, classroom, session_doc, db, monkeypatch):
    def clash(collection, data):
        raise DuplicateKeyError("E11000 duplicate key error", 11000, {"keyValue": {"studentId": data["studentId"]}})

    monkeypatch.setattr(routers.students, "create_document", clash)
    res = client.post("/api/students", json=_new_student(classroom), headers=auth(admin))
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "studentId"
    assert db["user"].count_documents({"email": "arjun.mehta@example.com"}) == 0
