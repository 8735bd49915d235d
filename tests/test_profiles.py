import pytest


@pytest.fixture()
def admin(login):
    return login("admin@example.com")


@pytest.fixture()
def alice(login):
    return login("alice@example.com")


def test_me(alice):
    body = alice.get("/me").json
    assert body["user"]["email"] == "alice@example.com"
    assert body["subPermissions"] == []
    assert body["profile"]["display_name"] == "Alice"


def test_me_update(alice):
    r = alice.post("/me", json={"profile": {"ryuha": "日置流", "restricted_note": "連絡先は部室", "gender": "female"}})
    assert r.status_code == 200
    assert r.json["profile"]["ryuha"] == "日置流"

    r = alice.post("/me", json={"profile": {"gender": "other"}})
    assert r.status_code == 400
    assert r.json["error"] == "gender invalid"
    r = alice.post("/me", json={"profile": {"sub_permissions": ["bow_admin"]}})
    assert r.json["error"] == "no fields to update"


def test_profiles_projection(admin, alice):
    alice.post("/me", json={"profile": {"restricted_note": "secret"}})

    members = alice.get("/profiles").json["users"]
    assert all("email" not in m and "restricted_note" not in m for m in members)
    assert "Carol" in [m["display_name"] for m in members]

    rows = {m["email"]: m for m in admin.get("/profiles").json["users"]}
    assert rows["alice@example.com"]["restricted_note"] == "secret"
    assert rows["dave@example.com"]["role"] == "user"


def test_admin_profile_edit(admin, alice, ids):
    r = admin.get("/admin/profile?email=alice@example.com")
    assert r.json["profile"]["id"] == ids["alice@example.com"]
    assert admin.get("/admin/profile").status_code == 400
    assert admin.get("/admin/profile?id=999").status_code == 404

    r = admin.post("/admin/profile", json={"id": ids["alice@example.com"], "profile": {"position": "主将"}})
    assert r.json == {"ok": True, "id": ids["alice@example.com"]}
    assert alice.get("/me").json["profile"]["position"] == "主将"

    assert alice.get("/admin/profile?id=1").status_code == 403


def test_create_account_and_permissions(admin, login):
    r = admin.post(
        "/admin/accounts",
        json={"email": "Eve@Example.com", "password": "short", "display_name": "Eve"},
    )
    assert r.status_code == 400
    r = admin.post(
        "/admin/accounts",
        json={"email": "Eve@Example.com", "password": "password123", "display_name": "Eve"},
    )
    assert r.status_code == 200
    eve_id = r.json["id"]
    r = admin.post("/admin/accounts", json={"email": "eve@example.com", "password": "password123"})
    assert r.json["error"] == "email already registered"

    r = admin.post(f"/admin/accounts/{eve_id}/permissions", json={"subPermissions": ["bow_admin", "bogus"]})
    assert r.json == {"ok": True, "role": "user", "subPermissions": ["bow_admin"]}

    eve = login("eve@example.com")
    assert eve.get("/me").json["subPermissions"] == ["bow_admin"]
    assert eve.post("/bows", json={"bowNumber": "B-1", "name": "x", "strength": 1, "length": "並寸"}).status_code == 200


def test_admin_cannot_drop_own_admin_role(admin, ids):
    r = admin.post(f"/admin/accounts/{ids['admin@example.com']}/permissions", json={"role": "user"})
    assert r.status_code == 400
    assert r.json["error"] == "cannot remove own admin role"


def test_reset_password(admin, app, ids):
    r = admin.post(
        f"/admin/accounts/{ids['alice@example.com']}/reset-password",
        json={"password": "new-password", "password_confirm": "different"},
    )
    assert r.json["error"] == "passwords do not match"
    r = admin.post(
        f"/admin/accounts/{ids['alice@example.com']}/reset-password",
        json={"password": "new-password", "password_confirm": "new-password"},
    )
    assert r.json == {"ok": True}
    client = app.test_client()
    assert client.post("/auth/login", json={"email": "alice@example.com", "password": "new-password"}).status_code == 200


def test_change_own_password(alice):
    r = alice.post("/auth/password", json={"current_password": "wrong", "password": "another-pass", "password_confirm": "another-pass"})
    assert r.json["error"] == "current password is incorrect"
    r = alice.post(
        "/auth/password",
        json={"current_password": "password123", "password": "another-pass", "password_confirm": "another-pass"},
    )
    assert r.json == {"ok": True}


def test_delete_account(admin, alice, ids):
    users = admin.get("/admin/profile-delete").json["users"]
    assert ids["admin@example.com"] not in [u["id"] for u in users]

    r = admin.post("/admin/profile-delete", json={"id": ids["admin@example.com"]})
    assert r.json["error"] == "cannot delete self"

    assert admin.post("/admin/profile-delete", json={"id": ids["carol@example.com"]}).json == {"ok": True}
    assert "Carol" not in [m["display_name"] for m in alice.get("/profiles").json["users"]]

    actions = [row["action"] for row in admin.get("/logs/account").json["logs"]]
    assert actions[0] == "account.delete"
    assert "account.delete_list" in actions
    assert alice.get("/logs/account").status_code == 403


def test_deleting_borrower_returns_their_bows(admin, login, ids):
    bob = login("bob@example.com")
    r = admin.post("/bows", json={"bowNumber": "B-1", "name": "竹弓", "strength": 13, "length": "並寸"})
    bow_id = r.json["id"]
    assert bob.post("/bows/loan", json={"bowId": bow_id}).status_code == 200

    assert admin.post("/admin/profile-delete", json={"id": ids["bob@example.com"]}).json == {"ok": True}

    assert [b["id"] for b in admin.get("/bows?status=available").json["bows"]] == [bow_id]
    loans = admin.get(f"/bows/{bow_id}/loans").json["loans"]
    assert loans[0]["returned_at"] is not None
    assert admin.post("/bows/loan", json={"bowId": bow_id}).status_code == 200

    returns = [row for row in admin.get("/logs/bows").json["logs"] if row["action"] == "bow.return"]
    assert returns[0]["reason"] == "account deleted"
