import json

from localman.errors import RemoteError
from localman.event_store import Scope


def create_relay(client, **data):
    payload = {"description": "orders", "relay_to_url": "http://myapp.test/hooks"}
    payload.update(data)
    return client.post("/api/projects/default/relays", json=payload)


def test_health(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_capture_webhook_into_project(client):
    resp = client.post(
        "/webhook?project=default&source=stripe",
        json={"webhook": "test", "data": {"value": 123}},
        headers={"User-Agent": "curl/8"},
    )
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "success", "message": "Webhook received"}

    webhooks = client.get("/api/projects/default/webhooks").get_json()["webhooks"]
    assert len(webhooks) == 1
    captured = webhooks[0]
    assert captured["method"] == "POST"
    assert captured["query"] == {"source": "stripe"}
    assert json.loads(captured["body"])["data"] == {"value": 123}
    assert captured["user_agent"] == "curl/8"
    assert client.get("/api/projects/default/webhooks/unread").get_json() == {"unread": 1}

    resp = client.post(f"/api/projects/default/webhooks/{captured['id']}/read")
    assert resp.get_json()["read"] is True
    assert client.get("/api/projects/default/webhooks/unread").get_json() == {"unread": 0}


def test_capture_requires_existing_project(client):
    assert client.get("/webhook").status_code == 404
    resp = client.get("/webhook?project=nonexistent")
    assert resp.status_code == 404
    assert "nonexistent" in resp.get_json()["error"]


def test_clear_webhooks(client):
    client.get("/webhook?project=default")
    client.get("/webhook?project=default")
    assert client.delete("/api/projects/default/webhooks").get_json() == {"deleted": 2}
    assert client.get("/api/projects/default/webhooks").get_json() == {"webhooks": []}


def test_create_relay(client):
    resp = create_relay(client)
    assert resp.status_code == 201
    relay = resp.get_json()
    assert relay["webhook_uuid"] == "wh-1"
    assert relay["webhook_url"] == "https://broker.example.com/wh-1"
    assert relay["relay_count"] == 0

    relays = client.get("/api/projects/default/relays").get_json()["relays"]
    assert [r["id"] for r in relays] == [relay["id"]]


def test_create_relay_requires_target(client):
    resp = client.post("/api/projects/default/relays", json={"description": "x"})
    assert resp.status_code == 400
    assert "relay_to_url" in resp.get_json()["error"]

    resp = create_relay(client, relay_to_url="myapp.test")
    assert resp.status_code == 400


def test_create_capture_only_relay_without_target(client):
    resp = client.post("/api/projects/default/relays", json={"capture_only": True})
    assert resp.status_code == 201
    assert resp.get_json()["capture_only"] is True


def test_create_relay_surfaces_broker_message(client, broker):
    broker.create_error = RemoteError(402, "Free plan allows 1 endpoint")
    resp = create_relay(client)
    assert resp.status_code == 502
    assert resp.get_json() == {"error": "Free plan allows 1 endpoint"}


def test_update_relay(client):
    relay = create_relay(client).get_json()
    resp = client.patch(f"/api/relays/{relay['id']}", json={"polling_enabled": False, "description": "new"})
    assert resp.status_code == 200
    assert resp.get_json()["polling_enabled"] is False
    assert resp.get_json()["description"] == "new"

    resp = client.patch(f"/api/relays/{relay['id']}", json={"enabled": "yes"})
    assert resp.status_code == 400


def test_unknown_relay_is_404(client):
    assert client.get("/api/relays/missing").status_code == 404
    assert client.get("/api/relays/missing/history").status_code == 404
    assert client.post("/api/relays/missing/poll").status_code == 404


def test_poll_history_and_read_state(client, broker):
    relay = create_relay(client).get_json()
    broker.add_call(relay["webhook_uuid"], "c1")
    broker.add_call(relay["webhook_uuid"], "c2", status="relayed")
    broker.add_call(relay["webhook_uuid"], "c3")

    resp = client.post(f"/api/relays/{relay['id']}/poll")
    assert resp.status_code == 200
    result = resp.get_json()
    assert result["relayed_count"] == 2
    assert result["total_count"] == 2
    assert result["errors"] == []

    history = client.get(f"/api/relays/{relay['id']}/history?limit=1").get_json()["history"]
    assert len(history) == 1
    assert client.get(f"/api/relays/{relay['id']}/unread").get_json() == {"unread": 2}

    client.post(f"/api/relays/{relay['id']}/history/{history[0]['id']}/read")
    client.post(f"/api/relays/{relay['id']}/history/{history[0]['id']}/read")
    assert client.get(f"/api/relays/{relay['id']}/unread").get_json() == {"unread": 1}

    assert client.post(f"/api/relays/{relay['id']}/history/read-all").get_json() == {"marked": 1}
    assert client.get(f"/api/relays/{relay['id']}").get_json()["unread"] == 0
    assert client.get(f"/api/relays/{relay['id']}").get_json()["relay_count"] == 2


def test_relay_again_endpoint(client, broker, forwarder):
    relay = create_relay(client).get_json()
    broker.add_call(relay["webhook_uuid"], "c1")
    forwarder.failing.add("c1")
    client.post(f"/api/relays/{relay['id']}/poll")
    failed = client.get(f"/api/relays/{relay['id']}/history").get_json()["history"][0]
    assert failed["status"] == "failed"

    forwarder.failing.clear()
    resp = client.post(f"/api/relays/{relay['id']}/history/{failed['id']}/relay-again")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "success"
    assert len(client.get(f"/api/relays/{relay['id']}/history").get_json()["history"]) == 2


def test_relay_again_rejected_for_capture_only(client, broker):
    relay = client.post("/api/projects/default/relays", json={"capture_only": True}).get_json()
    broker.add_call(relay["webhook_uuid"], "c1")
    client.post(f"/api/relays/{relay['id']}/poll")
    entry = client.get(f"/api/relays/{relay['id']}/history").get_json()["history"][0]

    resp = client.post(f"/api/relays/{relay['id']}/history/{entry['id']}/relay-again")
    assert resp.status_code == 400


def test_delete_relay_cascades_history(app, client, broker):
    relay = create_relay(client).get_json()
    broker.add_call(relay["webhook_uuid"], "c1")
    client.post(f"/api/relays/{relay['id']}/poll")

    resp = client.delete(f"/api/relays/{relay['id']}")
    assert resp.get_json() == {"ok": True, "history_deleted": 1}
    assert client.get(f"/api/relays/{relay['id']}").status_code == 404
    events = app.extensions["localman"].events
    assert list(events.list(Scope.relay(relay["id"]))) == []


def test_poll_all_endpoint(client, broker):
    first = create_relay(client).get_json()
    second = create_relay(client).get_json()
    broker.add_call(first["webhook_uuid"], "c1")
    broker.add_call(second["webhook_uuid"], "c2")

    results = client.post("/api/poll?project=default").get_json()["results"]

    assert sorted(r["relay_id"] for r in results) == sorted([first["id"], second["id"]])
    assert sum(r["relayed_count"] for r in results) == 2
    assert client.post("/api/poll?project=nope").status_code == 404
