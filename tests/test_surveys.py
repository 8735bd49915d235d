"""Survey flows through the JSON endpoints."""
import pytest


def _payload(**overrides):
    payload = {
        "title": "合宿参加調査",
        "description": "夏合宿に参加しますか",
        "status": "open",
        "targetGroups": [{"conditions": [{"field": "department", "op": "eq", "value": "engineering"}]}],
        "questions": [{"prompt": "参加しますか", "type": "single", "options": ["参加", "不参加"]}],
    }
    payload.update(overrides)
    return payload


def _create(admin, **overrides):
    r = admin.post("/admin/surveys", json=_payload(**overrides))
    assert r.status_code == 200, r.json
    survey_id = r.json["id"]
    detail = admin.get(f"/admin/surveys/{survey_id}").json
    question = detail["questions"][0]
    return survey_id, question["id"], [o["id"] for o in question["options"]]


def _answer(client, survey_id, question_id, option_ids):
    return client.post(
        f"/surveys/{survey_id}/response",
        json={"answers": [{"questionId": question_id, "optionIds": option_ids}]},
    )


@pytest.fixture()
def admin(login):
    return login("admin@example.com")


@pytest.fixture()
def alice(login):
    return login("alice@example.com")


@pytest.fixture()
def bob(login):
    return login("bob@example.com")


def test_department_targeted_survey(admin, alice, bob, ids):
    survey_id, qid, (yes, no) = _create(admin)

    listed = {row["id"]: row for row in alice.get("/surveys").json["surveys"]}
    assert listed[survey_id]["eligible"] is True
    assert listed[survey_id]["requiresResponse"] is True
    assert listed[survey_id]["canAnswer"] is True

    r = _answer(bob, survey_id, qid, [yes])
    assert r.status_code == 403
    assert r.json["error"] == "not eligible"

    assert _answer(alice, survey_id, qid, [yes]).json == {"ok": True}

    results = admin.get(f"/surveys/{survey_id}").json["results"]
    assert results["eligibleCount"] == 1
    assert results["respondedCount"] == 1
    assert results["responseRate"] == 100.0
    assert results["countsByOption"] == {str(yes): 1, str(no): 0}
    assert [p["id"] for p in results["respondentsByOption"][str(yes)]] == [ids["alice@example.com"]]
    assert results["unresponded"] == []


def test_generation_or_department_groups(admin, alice, bob, login, ids):
    for email, generation, department in (
        ("alice@example.com", "60", "science"),
        ("bob@example.com", "59", "Engineering Club"),
        ("carol@example.com", "59", "science"),
    ):
        r = admin.post(
            "/admin/profile",
            json={"email": email, "profile": {"generation": generation, "department": department}},
        )
        assert r.status_code == 200
    groups = [
        {"conditions": [{"field": "generation", "op": "eq", "value": "60"}]},
        {"conditions": [{"field": "department", "op": "ilike", "value": "eng"}]},
    ]
    survey_id, qid, (yes, _no) = _create(admin, targetGroups=groups)
    carol = login("carol@example.com")

    assert alice.get(f"/surveys/{survey_id}").json["eligible"] is True
    assert bob.get(f"/surveys/{survey_id}").json["eligible"] is True
    assert carol.get(f"/surveys/{survey_id}").json["eligible"] is False

    assert _answer(bob, survey_id, qid, [yes]).status_code == 200
    assert _answer(carol, survey_id, qid, [yes]).status_code == 403

    results = admin.get(f"/surveys/{survey_id}").json["results"]
    assert results["eligibleCount"] == 2
    assert results["responseRate"] == 50.0
    assert [p["id"] for p in results["unresponded"]] == [ids["alice@example.com"]]


def test_resubmission_replaces_previous_answers(admin, alice):
    survey_id, qid, (yes, no) = _create(admin)
    assert _answer(alice, survey_id, qid, [yes]).status_code == 200
    assert _answer(alice, survey_id, qid, [no]).status_code == 200

    detail = alice.get(f"/surveys/{survey_id}").json
    assert detail["response"]["answers"] == {str(qid): [no]}
    assert detail["results"]["respondedCount"] == 1
    assert detail["results"]["countsByOption"] == {str(yes): 0, str(no): 1}


def test_single_choice_needs_exactly_one_option(admin, alice):
    survey_id, qid, (yes, no) = _create(admin)
    r = _answer(alice, survey_id, qid, [yes, no])
    assert r.status_code == 400
    assert r.json["error"] == "single choice requires one option"

    r = _answer(alice, survey_id, qid, [])
    assert r.status_code == 400
    assert r.json["error"] == "all questions must be answered"

    r = _answer(alice, survey_id, qid, [987654])
    assert r.status_code == 400
    assert r.json["error"] == "invalid option"


def test_submit_by_body_requires_survey_id(alice):
    r = alice.post("/surveys/response", json={"answers": []})
    assert r.status_code == 400
    assert r.json["error"] == "surveyId required"


def test_anonymous_survey_hides_respondents(admin, alice):
    survey_id, qid, (yes, _no) = _create(admin, is_anonymous=True)
    _answer(alice, survey_id, qid, [yes])
    results = admin.get(f"/surveys/{survey_id}").json["results"]
    assert results["countsByOption"][str(yes)] == 1
    assert results["respondentsByOption"] == {}

    member_view = alice.get(f"/surveys/{survey_id}").json["results"]
    assert member_view["countsByOption"][str(yes)] == 1
    assert member_view["respondentsByOption"] == {}


def test_unresponded_and_rate(admin, alice, ids):
    groups = [{"conditions": [{"field": "generation", "op": "eq", "value": "60"}]}]
    survey_id, qid, (yes, _no) = _create(admin, targetGroups=groups)
    _answer(alice, survey_id, qid, [yes])
    results = admin.get(f"/surveys/{survey_id}").json["results"]
    assert results["eligibleCount"] == 2
    assert results["responseRate"] == 50.0
    assert [p["id"] for p in results["unresponded"]] == [ids["carol@example.com"]]


def test_explicit_targets_override_groups(admin, alice, bob, ids):
    survey_id, qid, (yes, _no) = _create(admin, accountIds=[ids["bob@example.com"]])

    assert _answer(alice, survey_id, qid, [yes]).status_code == 403
    assert _answer(bob, survey_id, qid, [yes]).status_code == 200

    detail = alice.get(f"/surveys/{survey_id}").json
    assert detail["eligible"] is False
    assert detail["results"]["eligibleCount"] == 1
    assert detail["results"]["respondedCount"] == 1


def test_member_without_profile_sees_but_cannot_answer(admin, login):
    survey_id, qid, (yes, _no) = _create(admin, targetGroups=[{"conditions": [{"field": "gender", "value": "male"}]}])
    dave = login("dave@example.com")
    assert dave.get(f"/surveys/{survey_id}").json["eligible"] is False
    assert _answer(dave, survey_id, qid, [yes]).status_code == 403


def test_draft_is_hidden_from_members(admin, alice):
    survey_id, _qid, _opts = _create(admin, status="draft")
    assert survey_id not in [row["id"] for row in alice.get("/surveys").json["surveys"]]
    r = alice.get(f"/surveys/{survey_id}")
    assert r.status_code == 403
    assert survey_id in [row["id"] for row in admin.get("/surveys").json["surveys"]]


def test_closed_survey_rejects_responses(admin, alice):
    survey_id, qid, (yes, _no) = _create(admin)
    r = admin.post(f"/admin/surveys/{survey_id}/status", json={"status": "closed"})
    assert r.json == {"ok": True, "status": "closed"}
    r = _answer(alice, survey_id, qid, [yes])
    assert r.status_code == 400
    assert r.json["error"] == "survey is not accepting responses"


def test_status_transitions(admin):
    survey_id, _qid, _opts = _create(admin, status="draft")
    assert admin.post(f"/admin/surveys/{survey_id}/status", json={"status": "open"}).status_code == 200
    r = admin.post(f"/admin/surveys/{survey_id}/status", json={"status": "draft"})
    assert r.status_code == 400
    assert r.json["error"] == "cannot change status from open to draft"
    assert admin.post(f"/admin/surveys/{survey_id}/status", json={"status": "closed"}).status_code == 200
    assert admin.post(f"/admin/surveys/{survey_id}/status", json={"status": "open"}).status_code == 200


def test_create_validation(admin):
    r = admin.post("/admin/surveys", json=_payload(title=" "))
    assert r.json["error"] == "title required"
    r = admin.post("/admin/surveys", json=_payload(questions=[]))
    assert r.json["error"] == "questions required"
    r = admin.post("/admin/surveys", json=_payload(questions=[{"prompt": "Q", "options": []}]))
    assert r.json["error"] == "each question needs at least one option"
    r = admin.post("/admin/surveys", json=_payload(targetGroups=[]))
    assert r.json["error"] == "accountIds required"
    r = admin.post("/admin/surveys", json=_payload(accountIds=[424242]))
    assert r.json["error"] == "unknown account"
    r = admin.post(
        "/admin/surveys",
        json=_payload(opens_at="2026-05-02T00:00:00Z", closes_at="2026-05-01T00:00:00Z"),
    )
    assert r.status_code == 400
    assert r.json["error"] == "closes_at must not be before opens_at"


def test_survey_admin_routes_need_permission(alice):
    r = alice.post("/admin/surveys", json=_payload())
    assert r.status_code == 403
    assert alice.get("/admin/surveys/analytics?start=2020-01-01&end=2030-01-01").status_code == 403


def test_replace_draft(admin):
    survey_id, _qid, _opts = _create(admin, status="draft")
    r = admin.post(
        f"/admin/surveys/{survey_id}",
        json=_payload(
            status="draft",
            title="改訂版",
            questions=[
                {"prompt": "日程", "type": "multiple", "options": ["土", "日", "祝"]},
                {"prompt": "宿泊", "options": ["する", "しない"]},
            ],
        ),
    )
    assert r.json == {"ok": True}
    detail = admin.get(f"/admin/surveys/{survey_id}").json
    assert detail["survey"]["title"] == "改訂版"
    assert [q["prompt"] for q in detail["questions"]] == ["日程", "宿泊"]
    assert [len(q["options"]) for q in detail["questions"]] == [3, 2]
    assert detail["targetGroups"][0]["conditions"] == [{"field": "department", "op": "eq", "value": "engineering"}]


def test_replace_rejects_non_draft(admin):
    survey_id, _qid, _opts = _create(admin)
    r = admin.post(f"/admin/surveys/{survey_id}", json=_payload())
    assert r.status_code == 400
    assert r.json["error"] == "only draft can be edited"


def test_add_option(admin, alice, bob):
    questions = [{"prompt": "希望日", "type": "multiple", "allowOptionAdd": True, "options": ["5/1"]}]
    survey_id, qid, _opts = _create(admin, questions=questions)

    r = alice.post(f"/surveys/{survey_id}/option", json={"questionId": qid, "label": "5/2"})
    assert r.status_code == 200
    assert r.json["option"]["label"] == "5/2"

    assert bob.post("/surveys/option", json={"questionId": qid, "label": "5/3"}).status_code == 403
    r = alice.post("/surveys/option", json={"questionId": qid})
    assert r.json["error"] == "questionId and label required"

    labels = [o["label"] for o in alice.get(f"/surveys/{survey_id}").json["questions"][0]["options"]]
    assert labels == ["5/1", "5/2"]


def test_delete_survey(admin):
    survey_id, _qid, _opts = _create(admin)
    assert admin.post("/admin/surveys/delete", json={"id": survey_id}).json == {"ok": True}
    assert admin.get(f"/surveys/{survey_id}").status_code == 404
    assert admin.post("/admin/surveys/delete", json={}).json["error"] == "id required"


def test_participation_analytics(admin, alice, ids):
    groups = [{"conditions": [{"field": "generation", "op": "eq", "value": "60"}]}]
    first, qid, (yes, _no) = _create(admin, targetGroups=groups)
    _create(admin, targetGroups=groups)
    _answer(alice, first, qid, [yes])

    r = admin.get("/admin/surveys/analytics")
    assert r.status_code == 400

    rows = admin.get("/admin/surveys/analytics?start=2000-01-01T00:00:00Z&end=2100-01-01T00:00:00Z").json["rows"]
    by_id = {row["account_id"]: row for row in rows}
    assert set(by_id) == {ids["alice@example.com"], ids["carol@example.com"]}
    assert by_id[ids["alice@example.com"]]["eligible"] == 2
    assert by_id[ids["alice@example.com"]]["responded"] == 1
    assert by_id[ids["alice@example.com"]]["responseRate"] == 50.0
    assert by_id[ids["carol@example.com"]]["responded"] == 0


def test_survey_actions_are_logged(admin):
    _create(admin)
    actions = [row["action"] for row in admin.get("/logs/surveys").json["logs"]]
    assert "survey.create" in actions
