import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from statuswatch.main import create_app
from statuswatch.metrics.base import Unit
from statuswatch.metrics.channel import ChannelGroup, MetricChannel
from statuswatch.metrics.registry import MetricRegistry
from statuswatch.metrics.samplers import GaugeSampler
from statuswatch.services.engine import MetricsEngine


@pytest.fixture()
def engine(make_source):
    registry = MetricRegistry()
    registry.register(
        MetricChannel("cpu.usage", GaugeSampler("value", Unit.PERCENT), make_source("cpu"),
                      capacity=10, interval_seconds=10.0)
    )
    registry.register(
        ChannelGroup(
            "dashboard",
            [MetricChannel("dashboard.load", GaugeSampler("value", Unit.LOAD), make_source("load"),
                           capacity=10, interval_seconds=10.0)],
            interval_seconds=10.0,
        )
    )
    return MetricsEngine(registry)


@pytest.fixture()
def client(engine):
    with TestClient(create_app(engine)) as client:
        yield client


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_list_metrics(client):
    response = client.get("/api/metrics")
    assert response.status_code == 200
    payload = response.json()
    assert [item["definition"]["id"] for item in payload] == ["cpu.usage", "dashboard"]
    assert payload[0]["polling"] is False
    assert payload[1]["channels"][0]["id"] == "dashboard.load"


def test_snapshot_before_polling_is_unavailable(client):
    response = client.get("/api/metrics/cpu.usage")
    assert response.status_code == 200
    body = response.json()
    assert body["available"] is False
    assert body["value"] == {"value": None, "unit": "percent"}


def test_unknown_metric_is_404(client):
    assert client.get("/api/metrics/nope").status_code == 404
    assert client.get("/api/metrics/nope/history").status_code == 404


def test_websocket_drives_polling(client, engine):
    with client.websocket_connect("/ws/cpu.usage") as websocket:
        message = websocket.receive_json()
        assert message["channel_id"] == "cpu.usage"
        assert message["value"] == {"value": 1.0, "unit": "percent"}
        assert _wait_for(lambda: engine.is_polling("cpu.usage"))

    assert _wait_for(lambda: engine.subscriptions.subscriber_count("cpu.usage") == 0)
    assert not engine.is_polling("cpu.usage")

    history = client.get("/api/metrics/cpu.usage/history", params={"limit": 5})
    assert history.json() == [{"value": 1.0, "unit": "percent"}]


def test_websocket_group_stream(client):
    with client.websocket_connect("/ws/dashboard") as websocket:
        message = websocket.receive_json()
    assert message["group_id"] == "dashboard"
    assert message["channels"]["dashboard.load"]["value"]["value"] == 1.0


def test_websocket_unknown_metric(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/nope") as websocket:
            websocket.receive_json()


def test_list_metrics_includes_history(client):
    with client.websocket_connect("/ws/cpu.usage") as websocket:
        websocket.receive_json()
    with client.websocket_connect("/ws/dashboard") as websocket:
        websocket.receive_json()

    cpu, dashboard = client.get("/api/metrics").json()
    assert cpu["history"] == [{"value": 1.0, "unit": "percent"}]
    assert dashboard["channels"][0]["history"] == [{"value": 1.0, "unit": "load"}]
    assert "history" not in dashboard


def test_group_history_is_per_member(client):
    assert client.get("/api/metrics/dashboard/history").json() == {"dashboard.load": []}
    with client.websocket_connect("/ws/dashboard") as websocket:
        websocket.receive_json()
    response = client.get("/api/metrics/dashboard/history", params={"limit": 5})
    assert response.status_code == 200
    assert response.json() == {"dashboard.load": [{"value": 1.0, "unit": "load"}]}
    member = client.get("/api/metrics/dashboard.load/history")
    assert member.json() == [{"value": 1.0, "unit": "load"}]


def test_update_interval(client, engine):
    response = client.put("/api/metrics/cpu.usage/interval", json={"interval_seconds": 5})
    assert response.status_code == 200
    assert response.json()["interval_seconds"] == 5.0
    assert engine.registry.get("cpu.usage").interval_seconds == 5.0

    assert client.put("/api/metrics/cpu.usage/interval", json={"interval_seconds": 0}).status_code == 422
    assert client.put("/api/metrics/cpu.usage/interval", json={"interval_seconds": 0.2}).status_code == 422
    assert client.put("/api/metrics/nope/interval", json={"interval_seconds": 5}).status_code == 404
