from conftest import auth


def test_health(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["environment"] == "test"


def test_unknown_route(client):
    res = client.get("/api/nowhere")
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Route not found"}


def test_request_id_echoed(client):
    res = client.get("/api/health", headers={"X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"
    assert client.get("/api/health").headers["X-Request-ID"]


def test_missing_token(client):
    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_failed_writes_are_not_audited(client, admin, db):
    client.post("/api/classes", headers=auth(admin), json={"name": "Grade 13", "grade": 13})
    assert db["auditlog"].count_documents({}) == 0
