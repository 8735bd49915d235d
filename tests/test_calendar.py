import pytest


@pytest.fixture()
def bob(login):
    # bob holds calendar_admin
    return login("bob@example.com")


@pytest.fixture()
def alice(login):
    return login("alice@example.com")


def _event(client, **overrides):
    payload = {
        "title": "月例射会",
        "description": "道場にて",
        "startsAt": "2026-05-01T10:00:00Z",
        "endsAt": "2026-05-01T12:00:00Z",
        "allDay": False,
        "color": "#cfe8d8",
    }
    payload.update(overrides)
    return client.post("/calendar", json=payload)


def test_range_overlap_is_inclusive(bob, alice):
    r = _event(bob)
    assert r.status_code == 200
    event_id = r.json["id"]

    def listed(start, end):
        return [e["id"] for e in alice.get(f"/calendar?start={start}&end={end}").json["events"]]

    assert listed("2026-05-01T12:00:00Z", "2026-05-01T13:00:00Z") == [event_id]
    assert listed("2026-04-30T00:00:00Z", "2026-05-01T10:00:00Z") == [event_id]
    assert listed("2026-04-01T00:00:00Z", "2026-06-01T00:00:00Z") == [event_id]
    assert listed("2026-05-01T12:00:01Z", "2026-05-02T00:00:00Z") == []


def test_list_requires_range(alice):
    r = alice.get("/calendar?start=2026-05-01")
    assert r.status_code == 400
    assert r.json["error"] == "start and end are required"


def test_validation(bob):
    assert _event(bob, title="  ").json["error"] == "title required"
    r = _event(bob, endsAt="2026-05-01T09:00:00Z")
    assert r.status_code == 400
    assert r.json["error"] == "invalid start or end"
    assert _event(bob, color="#000000").json["error"] == "invalid color"
    assert _event(bob, color=None).status_code == 200
    assert _event(bob, endsAt="2026-05-01T10:00:00Z").status_code == 200


def test_writes_need_calendar_admin(alice):
    assert _event(alice).status_code == 403


def test_update_and_delete(bob, alice):
    event_id = _event(bob).json["id"]
    r = bob.put(
        f"/calendar/{event_id}",
        json={"title": "昇段審査", "startsAt": "2026-05-03", "endsAt": "2026-05-03", "allDay": True},
    )
    assert r.json == {"id": event_id}

    event = alice.get(f"/calendar/{event_id}").json["event"]
    assert event["title"] == "昇段審査"
    assert event["all_day"] is True
    assert event["color"] is None

    assert alice.delete(f"/calendar/{event_id}").status_code == 403
    assert bob.delete(f"/calendar/{event_id}").json == {"ok": True}
    r = alice.get(f"/calendar/{event_id}")
    assert r.status_code == 404
    assert r.json["error"] == "event not found"
