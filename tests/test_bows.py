import pytest

from app.kyudo.db import session_scope
from app.kyudo.modules.bows.models import BowLoan
from app.kyudo.utils import utcnow


@pytest.fixture()
def admin(login):
    return login("admin@example.com")


@pytest.fixture()
def alice(login):
    return login("alice@example.com")


@pytest.fixture()
def bob(login):
    return login("bob@example.com")


def _bow(admin, **overrides):
    payload = {"bowNumber": "B-01", "name": "小山弓具 並寸", "strength": 14.5, "length": "並寸", "note": "部有"}
    payload.update(overrides)
    r = admin.post("/bows", json=payload)
    assert r.status_code == 200, r.json
    return r.json["id"]


def test_create_and_filter(admin, alice):
    _bow(admin)
    _bow(admin, bowNumber="B-02", name="伸弓", length="二寸伸", strength=16)
    bows = alice.get("/bows").json["bows"]
    assert [b["bow_number"] for b in bows] == ["B-01", "B-02"]
    assert [b["bow_number"] for b in alice.get("/bows?length=二寸伸").json["bows"]] == ["B-02"]
    assert [b["bow_number"] for b in alice.get("/bows?q=b-01").json["bows"]] == ["B-01"]
    assert [b["bow_number"] for b in alice.get("/bows?strength=16").json["bows"]] == ["B-02"]


def test_bow_validation(admin):
    r = admin.post("/bows", json={"bowNumber": "B-09", "name": "x", "strength": -1, "length": "並寸"})
    assert r.status_code == 400
    assert r.json["error"] == "strength must be 0 or greater"
    r = admin.post("/bows", json={"bowNumber": "B-09", "name": "x", "strength": 10, "length": "五寸伸"})
    assert r.json["error"] == "length invalid"
    r = admin.post("/bows", json={"name": "x", "strength": 10, "length": "並寸"})
    assert r.json["error"] == "bowNumber required"


def test_bow_writes_need_bow_admin(alice):
    r = alice.post("/bows", json={"bowNumber": "B-01", "name": "x", "strength": 1, "length": "並寸"})
    assert r.status_code == 403


def test_loan_and_return(admin, alice, bob, ids):
    bow_id = _bow(admin)
    r = alice.post("/bows/loan", json={"bowId": bow_id})
    assert r.status_code == 200
    assert r.json["ok"] is True

    borrowed = alice.get("/bows?status=borrowed").json["bows"]
    assert [b["borrower_profile_id"] for b in borrowed] == [ids["alice@example.com"]]
    assert [b["id"] for b in alice.get("/bows?borrower=me").json["bows"]] == [bow_id]
    assert alice.get("/bows?status=available").json["bows"] == []

    r = bob.post("/bows/loan", json={"bowId": bow_id})
    assert r.status_code == 400
    assert r.json["error"] == "bow already borrowed"

    assert bob.post("/bows/return", json={"bowId": bow_id}).status_code == 403
    assert alice.post("/bows/return", json={"bowId": bow_id}).json == {"ok": True}
    assert [b["id"] for b in alice.get("/bows?status=available").json["bows"]] == [bow_id]

    loans = alice.get(f"/bows/{bow_id}/loans").json["loans"]
    assert len(loans) == 1
    assert loans[0]["returned_at"] is not None

    r = alice.post("/bows/return", json={"bowId": bow_id})
    assert r.status_code == 404
    assert r.json["error"] == "open loan not found"


def test_loan_for_someone_else_needs_bow_admin(admin, bob, ids):
    bow_id = _bow(admin)
    r = bob.post("/bows/loan", json={"bowId": bow_id, "borrowerProfileId": ids["alice@example.com"]})
    assert r.status_code == 403
    r = admin.post("/bows/loan", json={"bowId": bow_id, "borrowerProfileId": ids["alice@example.com"]})
    assert r.status_code == 200


def test_open_loan_blocks_borrow_even_if_bow_row_is_free(app, admin, bob, ids):
    bow_id = _bow(admin)
    with session_scope(app) as s:
        s.add(BowLoan(bow_id=bow_id, borrower_profile_id=ids["alice@example.com"], loaned_at=utcnow()))

    r = bob.post("/bows/loan", json={"bowId": bow_id})
    assert r.status_code == 400
    assert r.json["error"] == "open loan exists"


def test_return_before_loan_is_rejected(admin, alice):
    bow_id = _bow(admin)
    alice.post("/bows/loan", json={"bowId": bow_id, "loanedAt": "2026-04-10T09:00:00Z"})
    r = alice.post("/bows/return", json={"bowId": bow_id, "returnedAt": "2026-04-09T09:00:00Z"})
    assert r.status_code == 400
    assert r.json["error"] == "returnedAt must not be before loanedAt"


def test_loan_unknown_bow(alice):
    r = alice.post("/bows/loan", json={"bowId": 999})
    assert r.status_code == 404
    assert r.json["error"] == "bow not found"


def test_update_delete_and_logs(admin, alice):
    bow_id = _bow(admin)
    r = admin.post(
        "/bows/update",
        json={"id": bow_id, "bowNumber": "B-01", "name": "改名", "strength": 15, "length": "四寸伸"},
    )
    assert r.json == {"ok": True}
    bow = alice.get("/bows").json["bows"][0]
    assert (bow["name"], bow["strength"], bow["length"]) == ("改名", 15.0, "四寸伸")

    assert admin.post("/bows/delete", json={"id": bow_id}).json == {"ok": True}
    assert alice.get("/bows").json["bows"] == []
    assert admin.post("/bows/delete", json={"id": bow_id}).status_code == 404

    actions = [row["action"] for row in alice.get("/logs/bows").json["logs"]]
    assert actions[:3] == ["bow.delete", "bow.update", "bow.create"]
