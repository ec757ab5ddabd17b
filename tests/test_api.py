import random

import pytest
from fastapi.testclient import TestClient

import config
import main
from citysync.engine import CityEngine
from citysync.store import MemoryWorldStore

ALICE = {"X-User-Id": "u1", "X-Username": "alice"}
BOB = {"X-User-Id": "u2", "X-Username": "bob"}


@pytest.fixture
def api_engine(monkeypatch):
    monkeypatch.setattr(config, "WATER_RATIO", 0.0)
    # tick 間隔拉長，測試期間不會自己跑 tick
    engine = CityEngine(store=MemoryWorldStore(), rng=random.Random(0), tick_interval=3600)
    monkeypatch.setattr(main, "engine", engine)
    return engine


@pytest.fixture
def client(api_engine):
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def two_cities(api_engine, make_world):
    a = api_engine.registry.add(make_world(world_id="wa", owner_id="u1"))
    b = api_engine.registry.add(make_world(world_id="wb", owner_id="u2"))
    return a, b


def test_home_and_catalog(client):
    home = client.get("/").json()
    assert home["status"] == "running"
    assert home["active_cities"] == 0

    catalog = client.get("/api/buildings").json()
    assert len(catalog["buildings"]) == len(config.BUILDINGS)
    assert catalog["buildings"]["residential_small"]["cost"] == 100
    assert "utility" in catalog["categories"]
    assert "power_plant" in catalog["by_category"]["utility"]
    assert sorted(sum(catalog["by_category"].values(), [])) == sorted(config.BUILDINGS)


def test_state(client, two_cities):
    body = client.get("/api/state").json()
    assert {c["id"] for c in body["cities"]} == {"wa", "wb"}
    assert set(body["cities"][0]["resources"]) == {"money", "population", "happiness", "power", "water", "jobs"}

    body = client.get("/api/state", params={"world_id": "wa"}).json()
    assert body["city"]["width"] == 3
    assert len(body["city"]["grid"]) == 3

    res = client.get("/api/state", params={"world_id": "nope"})
    assert res.status_code == 404
    assert res.json()["code"] == "WORLD_NOT_ACTIVE"


def test_trade_over_http(client, two_cities):
    a, b = two_cities

    res = client.post("/api/trades", json={"offered_to": "u2", "offer_money": 250, "request_money": 50}, headers=ALICE)
    assert res.status_code == 201
    trade_id = res.json()["trade"]["id"]

    listed = client.get("/api/trades", params={"status": "pending"}, headers=BOB).json()
    assert listed["count"] == 1
    assert listed["trades"][0]["id"] == trade_id
    assert client.get(f"/api/trades/{trade_id}", headers=ALICE).json()["trade"]["status"] == "pending"

    res = client.post(f"/api/trades/{trade_id}/accept", headers=BOB)
    assert res.status_code == 200
    assert res.json()["trade"]["status"] == "completed"
    assert a.treasury == 10000 - 250 + 50
    assert b.treasury == 10000 - 50 + 250

    res = client.post(f"/api/trades/{trade_id}/accept", headers=BOB)
    assert res.status_code == 409
    assert res.json()["code"] == "TRADE_NOT_PENDING"


def test_trade_reject_and_cancel_over_http(client, two_cities):
    first = client.post("/api/trades", json={"offered_to": "u2", "offer_money": 10}, headers=ALICE).json()["trade"]["id"]
    second = client.post("/api/trades", json={"offered_to": "u2", "offer_money": 20}, headers=ALICE).json()["trade"]["id"]

    res = client.post(f"/api/trades/{first}/reject", json={"reason": "no thanks"}, headers=BOB)
    assert res.json()["trade"]["status"] == "rejected"

    assert client.post(f"/api/trades/{second}/cancel", headers=BOB).status_code == 403
    assert client.post(f"/api/trades/{second}/cancel", headers=ALICE).json()["trade"]["status"] == "canceled"


def test_trade_errors_over_http(client, two_cities):
    assert client.get("/api/trades").status_code == 403
    assert client.get("/api/trades/nope", headers=ALICE).status_code == 404

    res = client.post("/api/trades", json={"offered_to": "u1", "offer_money": 10}, headers=ALICE)
    assert res.status_code == 400
    assert res.json() == {"status": "error", "code": "SELF_TRADE", "message": "Cannot send trade offer to yourself"}


def test_admin_controls(client, api_engine, two_cities):
    a, _ = two_cities
    a.treasury = 99999

    data = client.get("/admin/data").json()
    assert [c["id"] for c in data["cities"]] == ["wa", "wb"]
    assert [c["online"] for c in data["cities"]] == [False, False]
    assert data["paused"] is False

    assert client.post("/admin/pause").json()["paused"] is True
    assert api_engine.paused
    assert client.post("/admin/resume").json()["paused"] is False

    assert client.post("/admin/speed", json={"speed": 2}).json()["simulation_speed"] == 2
    res = client.post("/admin/speed", json={"speed": 50})
    assert res.status_code == 400
    assert res.json()["code"] == "BAD_SPEED"

    assert client.post("/admin/revive/wb").status_code == 404
    api_engine.registry.mark_degraded("wb", "boom")
    assert client.get("/admin/data").json()["cities"][1]["degraded"] == "boom"
    assert client.post("/admin/revive/wb").status_code == 200

    logs = client.get("/admin/data").json()["logs"]
    assert logs[0].startswith("[") and "恢復" in logs[0]


def test_websocket_build_flow(client, api_engine):
    with client.websocket_connect("/ws?user_id=u1&username=alice") as ws:
        ws.send_json({"type": "createCity", "name": "Socketville", "width": 2, "height": 2})
        created = ws.receive_json()
        assert created["type"] == "cityCreated"
        world_id = created["city"]["id"]

        ws.send_json({"type": "placeBuilding", "action_id": "a1", "x": 1, "y": 1, "building_type": "park"})
        assert ws.receive_json() == {"type": "buildingConfirmed", "action_id": "a1", "x": 1, "y": 1, "building_type": "park", "cost": 500}

        ws.send_json({"type": "placeBuilding", "action_id": "a2", "x": 1, "y": 1, "building_type": "road"})
        rejected = ws.receive_json()
        assert rejected["type"] == "buildingRejected"
        assert rejected["reason"] == "CELL_OCCUPIED"

        ws.send_text("not json")
        assert ws.receive_json()["code"] == "BAD_MESSAGE"

    world = api_engine.registry.get(world_id)
    assert world.grid[1][1].building == "park"
    assert world.treasury == config.INITIAL_MONEY - 500
    assert len(api_engine.hub) == 0


def test_websocket_viewers_see_each_other(client, api_engine):
    with client.websocket_connect("/ws?user_id=u1&username=alice") as alice:
        alice.send_json({"type": "createCity", "name": "Sharedton", "width": 2, "height": 2})
        world_id = alice.receive_json()["city"]["id"]

        with client.websocket_connect("/ws?user_id=u2&username=bob") as bob:
            bob.send_json({"type": "loadCity", "city_id": world_id})
            assert bob.receive_json()["type"] == "cityLoaded"
            assert alice.receive_json() == {"type": "playerJoined", "username": "bob", "world_id": world_id, "world_name": "Sharedton"}
            assert client.get("/admin/data").json()["cities"][0]["online"] is True

            alice.send_json({"type": "placeBuilding", "action_id": "a1", "x": 0, "y": 0, "building_type": "tree"})
            assert alice.receive_json()["type"] == "buildingConfirmed"
            remote = bob.receive_json()
            assert remote == {"type": "buildingPlaced", "world_id": world_id, "x": 0, "y": 0, "building_type": "tree"}

        assert alice.receive_json() == {"type": "playerLeft", "username": "bob", "world_id": None, "world_name": None}
