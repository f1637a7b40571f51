import pytest

from conftest import auth, oid


@pytest.fixture
def sent(client, teacher, parent):
    res = client.post("/api/messages", headers=auth(teacher), json={
        "recipient": str(parent["_id"]), "subject": "Homework", "message": "Please check the homework diary.",
    })
    assert res.status_code == 201
    return res.json()["data"]["message"]


def test_send_starts_a_thread(sent, teacher):
    assert sent["threadId"] == sent["id"]
    assert sent["sender"]["id"] == str(teacher["_id"])
    assert sent["isRead"] is False


def test_send_to_unknown_recipient(client, teacher):
    res = client.post("/api/messages", headers=auth(teacher),
                      json={"recipient": oid(), "subject": "Hi", "message": "Hello"})
    assert res.status_code == 404
    assert res.json()["message"] == "Recipient not found"


def test_inbox_unread_count_and_reading(client, parent, sent):
    assert client.get("/api/messages/unread-count", headers=auth(parent)).json()["data"]["unreadCount"] == 1
    inbox = client.get("/api/messages/inbox", headers=auth(parent)).json()["data"]["items"]
    assert [m["id"] for m in inbox] == [sent["id"]]

    res = client.get(f"/api/messages/{sent['id']}", headers=auth(parent))
    assert res.json()["data"]["message"]["isRead"] is True
    assert client.get("/api/messages/unread-count", headers=auth(parent)).json()["data"]["unreadCount"] == 0


def test_sender_viewing_does_not_mark_read(client, teacher, sent):
    res = client.get(f"/api/messages/{sent['id']}", headers=auth(teacher))
    assert res.json()["data"]["message"]["isRead"] is False


def test_only_recipient_marks_read(client, teacher, parent, sent):
    assert client.put(f"/api/messages/{sent['id']}/read", headers=auth(teacher)).status_code == 403
    assert client.put(f"/api/messages/{sent['id']}/read", headers=auth(parent)).status_code == 200


def test_outsider_cannot_open_message(client, admin, sent):
    assert client.get(f"/api/messages/{sent['id']}", headers=auth(admin)).status_code == 403


def test_reply_joins_thread(client, teacher, parent, sent):
    res = client.post(f"/api/messages/{sent['id']}/reply", headers=auth(parent),
                      json={"message": "Done, thank you."})
    assert res.status_code == 201
    reply = res.json()["data"]["message"]
    assert reply["subject"] == "Re: Homework"
    assert reply["threadId"] == sent["id"]
    assert reply["recipient"]["id"] == str(teacher["_id"])

    thread = client.get(f"/api/messages/thread/{sent['id']}", headers=auth(teacher)).json()["data"]["messages"]
    assert [m["id"] for m in thread] == [sent["id"], reply["id"]]

    again = client.post(f"/api/messages/{reply['id']}/reply", headers=auth(teacher),
                        json={"message": "Great"}).json()["data"]["message"]
    assert again["subject"] == "Re: Homework"
    assert again["threadId"] == sent["id"]


def test_delete_is_per_user(client, teacher, parent, sent, db):
    assert client.delete(f"/api/messages/{sent['id']}", headers=auth(parent)).status_code == 200
    assert client.get("/api/messages/inbox", headers=auth(parent)).json()["data"]["items"] == []
    assert client.get(f"/api/messages/{sent['id']}", headers=auth(parent)).status_code == 404

    sent_box = client.get("/api/messages/sent", headers=auth(teacher)).json()["data"]["items"]
    assert len(sent_box) == 1
    client.delete(f"/api/messages/{sent['id']}", headers=auth(teacher))
    stored = db["message"].find_one({})
    assert stored["isDeleted"] is True


def test_star_and_search(client, parent, sent):
    res = client.put(f"/api/messages/{sent['id']}/star", headers=auth(parent))
    assert res.json()["data"]["isStarred"] is True
    starred = client.get("/api/messages/starred", headers=auth(parent)).json()["data"]["items"]
    assert len(starred) == 1

    found = client.get("/api/messages/search?q=diary", headers=auth(parent)).json()["data"]["items"]
    assert len(found) == 1
    assert client.get("/api/messages/search?q=", headers=auth(parent)).status_code == 400


def test_archive_hides_from_inbox(client, parent, sent):
    assert client.put(f"/api/messages/{sent['id']}/archive", headers=auth(parent)).status_code == 200
    assert client.get("/api/messages/inbox", headers=auth(parent)).json()["data"]["items"] == []


def test_messaging_users_excludes_self(client, teacher, parent, admin):
    users = client.get("/api/messages/users", headers=auth(teacher)).json()["data"]["users"]
    ids = {u["id"] for u in users}
    assert str(teacher["_id"]) not in ids
    assert {str(parent["_id"]), str(admin["_id"])} <= ids
