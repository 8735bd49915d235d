from sqlalchemy import text

PASSWORD = "password123"


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_anonymous_is_unauthorized(client):
    r = client.get("/surveys")
    assert r.status_code == 401
    assert r.json["error"] == "unauthorized"
    assert client.get("/auth/session").json["user"] is None


def test_anonymous_write_is_unauthorized_not_csrf(client):
    r = client.post("/surveys/1/response", json={"answers": []})
    assert r.status_code == 401
    assert r.json["error"] == "unauthorized"
    assert client.post("/admin/invoices/approve", json={"ids": [1]}).status_code == 401


def test_login_and_session(client):
    r = client.post("/auth/login", json={"email": "Alice@Example.com", "password": PASSWORD})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "user"

    session = client.get("/auth/session").json
    assert session["user"]["email"] == "alice@example.com"
    assert session["csrf_token"] == r.json["csrf_token"]


def test_bad_credentials(client):
    r = client.post("/auth/login", json={"email": "alice@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid credentials"


def test_login_rate_limit(app, client):
    app.config["LOGIN_RATE_LIMIT"] = 2
    for _ in range(2):
        assert client.post("/auth/login", json={"email": "alice@example.com", "password": "nope"}).status_code == 401
    r = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert r.status_code == 429


def test_post_without_csrf_token_is_rejected(login):
    alice = login("alice@example.com")
    alice.environ_base.pop("HTTP_X_CSRF_TOKEN")
    r = alice.post("/me", json={"profile": {"position": "主将"}})
    assert r.status_code == 400
    assert r.json["error"] == "csrf token missing or invalid"

    r = alice.post("/me", json={"profile": {"position": "主将"}}, headers={"X-CSRF-Token": "forged"})
    assert r.status_code == 400


def test_audit_failure_does_not_fail_the_request(app, login):
    alice = login("alice@example.com")
    with app.extensions["sqlalchemy_engine"].begin() as conn:
        conn.execute(text("DROP TABLE audit_events"))

    r = alice.post("/me", json={"profile": {"position": "副将"}})
    assert r.status_code == 200
    assert alice.get("/me").json["profile"]["position"] == "副将"


def test_logout(login):
    alice = login("alice@example.com")
    assert alice.post("/auth/logout").json == {"ok": True}
    assert alice.get("/me").status_code == 401
