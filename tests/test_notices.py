from datetime import datetime, timedelta

from conftest import auth


def _create(client, admin, **fields):
    payload = {"title": "Notice", "content": "Body text", **fields}
    res = client.post("/api/notices", headers=auth(admin), json=payload)
    assert res.status_code == 201, res.json()
    return res.json()["data"]["notice"]


def _titles(client, user, path="/api/notices"):
    res = client.get(path, headers=auth(user))
    assert res.status_code == 200
    data = res.json()["data"]
    return {n["title"] for n in data.get("items", data.get("notices", []))}


def test_audience_filtering(client, admin, teacher, parent, student):
    _create(client, admin, title="Everyone")
    _create(client, admin, title="Staff meeting", targetAudience=["Teachers"])
    _create(client, admin, title="PTA", targetAudience=["Parents"])
    _create(client, admin, title="Draft", isPublished=False)

    assert _titles(client, teacher) == {"Everyone", "Staff meeting"}
    assert _titles(client, parent) == {"Everyone", "PTA"}
    assert _titles(client, student["account"]) == {"Everyone"}
    assert _titles(client, admin) == {"Everyone", "Staff meeting", "PTA", "Draft"}


def test_class_targeting_for_students(client, admin, student, classroom, make_class, make_student):
    other = make_class("Grade 11", 11)
    outsider = make_student(other)
    _create(client, admin, title="Grade 5 trip", targetClasses=[str(classroom["_id"])])
    assert _titles(client, student["account"]) == {"Grade 5 trip"}
    assert _titles(client, outsider["account"]) == set()


def test_unknown_target_class_rejected(client, admin):
    res = client.post("/api/notices", headers=auth(admin), json={
        "title": "Bad", "content": "x", "targetClasses": ["0123456789abcdef01234567"],
    })
    assert res.status_code == 400


def test_expiry_must_follow_publish(client, admin):
    now = datetime.utcnow()
    res = client.post("/api/notices", headers=auth(admin), json={
        "title": "Backwards", "content": "x", "publishDate": now.isoformat(),
        "expiryDate": (now - timedelta(days=1)).isoformat(),
    })
    assert res.status_code == 400


def test_expired_notices_hidden_unless_requested(client, admin, parent, db):
    notice = _create(client, admin, title="Old news")
    db["notice"].update_one({"title": "Old news"}, {"$set": {"expiryDate": datetime.utcnow() - timedelta(minutes=1)}})
    assert _titles(client, parent) == set()
    assert _titles(client, parent, "/api/notices?includeExpired=true") == {"Old news"}
    assert client.get(f"/api/notices/{notice['id']}", headers=auth(parent)).status_code == 404


def test_views_counted_once_per_user(client, admin, teacher, parent, db):
    notice = _create(client, admin, title="Sports day")
    for _ in range(3):
        assert client.get(f"/api/notices/{notice['id']}", headers=auth(teacher)).status_code == 200
    client.get(f"/api/notices/{notice['id']}", headers=auth(parent))
    assert db["notice"].find_one({"title": "Sports day"})["viewCount"] == 2

    body = client.get(f"/api/notices/{notice['id']}", headers=auth(parent)).json()["data"]["notice"]
    assert "viewedBy" not in body


def test_hidden_notice_reads_as_not_found(client, admin, parent):
    notice = _create(client, admin, title="Teachers only", targetAudience=["Teachers"])
    res = client.get(f"/api/notices/{notice['id']}", headers=auth(parent))
    assert res.status_code == 404
    assert res.json()["message"] == "Notice not found"


def test_pin_sorts_first_and_pinned_listing(client, admin, parent):
    _create(client, admin, title="First")
    second = _create(client, admin, title="Second")
    client.put(f"/api/notices/{second['id']}/pin", headers=auth(admin))
    res = client.get("/api/notices", headers=auth(parent)).json()["data"]["items"]
    assert res[0]["title"] == "Second"
    assert _titles(client, parent, "/api/notices/pinned") == {"Second"}


def test_only_admin_manages_notices(client, teacher):
    res = client.post("/api/notices", headers=auth(teacher), json={"title": "x", "content": "y"})
    assert res.status_code == 403


def test_update_and_soft_delete(client, admin, parent, db):
    notice = _create(client, admin, title="Typo")
    res = client.put(f"/api/notices/{notice['id']}", headers=auth(admin), json={"title": "Fixed"})
    assert res.json()["data"]["notice"]["title"] == "Fixed"
    assert client.delete(f"/api/notices/{notice['id']}", headers=auth(admin)).status_code == 200
    assert db["notice"].find_one({"title": "Fixed"})["isActive"] is False
    assert _titles(client, parent) == set()


def test_search_respects_visibility(client, admin, parent):
    _create(client, admin, title="Exam timetable", content="Final exams start Monday")
    _create(client, admin, title="Exam invigilation", targetAudience=["Teachers"])
    assert _titles(client, parent, "/api/notices/search?q=exam") == {"Exam timetable"}
