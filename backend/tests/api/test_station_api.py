"""API tests: station connection, connector operations, firmware and the message log."""
import inspect
import random
import time

import pytest
from fastapi.testclient import TestClient

from api import station as station_routes
from main import app
from station_core import store
from station_core.central_system import SimulatedCentralSystem
from station_core.session import SessionManager

pytestmark = pytest.mark.api


def _connect(client):
    r = client.post("/api/station/connect")
    assert r.status_code == 202
    for _ in range(100):
        if client.get("/api/station").json()["boot_accepted"]:
            break
        time.sleep(0.01)
    else:
        pytest.fail("BootNotification was not accepted")
    return r


def _connector(client, connector_id):
    station = client.get("/api/station").json()
    return next(c for c in station["connectors"] if c["connector_id"] == connector_id)


def test_get_station(client):
    r = client.get("/api/station")
    assert r.status_code == 200
    data = r.json()
    assert data["charge_point_id"] == "CP-TEST"
    assert data["charge_point_vendor"] == "ElectroTech"
    assert data["connection_state"] == "Disconnected"
    assert [c["connector_id"] for c in data["connectors"]] == [1, 2]
    assert all(c["status"] == "Available" and c["transaction"] is None for c in data["connectors"])
    assert data["firmware"]["status"] == "Idle"


def test_connect_and_disconnect(client):
    r = _connect(client)
    assert r.json() == {"connection_state": "Connected"}
    assert client.get("/api/station").json()["address"] == "ws://csms.test/ocpp/CP-TEST"
    assert client.post("/api/station/connect").json() == {"connection_state": "Connected"}

    assert client.post("/api/station/disconnect").status_code == 204
    assert client.get("/api/station").json()["connection_state"] == "Disconnected"
    assert client.post("/api/station/disconnect").status_code == 204


def test_connect_with_explicit_address(client):
    r = client.post("/api/station/connect", json={"address": "ws://other.test/ocpp/CP-TEST"})
    assert r.status_code == 202
    assert client.get("/api/station").json()["address"] == "ws://other.test/ocpp/CP-TEST"


def test_heartbeat_requires_connection(client):
    assert client.post("/api/station/heartbeat").status_code == 400
    _connect(client)
    assert client.post("/api/station/heartbeat").status_code == 204


def test_start_transaction(client):
    _connect(client)
    r = client.post("/api/connectors/1/transactions/start", json={"id_tag": "TAG-1"})
    assert r.status_code == 200
    transaction_id = r.json()["transaction_id"]
    assert transaction_id >= 1000
    connector = _connector(client, 1)
    assert connector["status"] in ("Preparing", "Charging")
    assert connector["transaction"]["transaction_id"] == transaction_id
    assert connector["transaction"]["id_tag"] == "TAG-1"

    r = client.post("/api/connectors/1/transactions/start", json={"id_tag": "TAG-2"})
    assert r.status_code == 400


def test_start_transaction_errors(client):
    r = client.post("/api/connectors/1/transactions/start", json={"id_tag": "TAG-1"})
    assert r.status_code == 400
    _connect(client)
    r = client.post("/api/connectors/9/transactions/start", json={"id_tag": "TAG-1"})
    assert r.status_code == 404
    r = client.post("/api/connectors/1/transactions/start", json={"id_tag": ""})
    assert r.status_code == 422


def test_stop_transaction(client):
    _connect(client)
    assert client.post("/api/connectors/1/transactions/stop").status_code == 400
    client.post("/api/connectors/1/transactions/start", json={"id_tag": "TAG-1"})
    assert client.post("/api/connectors/1/transactions/stop").status_code == 204
    assert _connector(client, 1)["status"] in ("Finishing", "Available")


def test_set_connector_status(client):
    _connect(client)
    r = client.post("/api/connectors/2/status", json={"status": "Unavailable"})
    assert r.status_code == 204
    assert _connector(client, 2)["status"] == "Unavailable"

    r = client.post("/api/connectors/2/status", json={"status": "Faulted", "error_code": "GroundFailure"})
    assert r.status_code == 204
    connector = _connector(client, 2)
    assert (connector["status"], connector["error_code"]) == ("Faulted", "GroundFailure")


def test_set_connector_status_validation(client):
    _connect(client)
    assert client.post("/api/connectors/1/status", json={"status": "Sleeping"}).status_code == 422
    r = client.post("/api/connectors/1/status", json={"status": "Faulted", "error_code": "Nope"})
    assert r.status_code == 400
    assert client.post("/api/connectors/9/status", json={"status": "Faulted"}).status_code == 404


def test_status_override_ends_transaction(client):
    _connect(client)
    client.post("/api/connectors/1/transactions/start", json={"id_tag": "TAG-1"})
    client.post("/api/connectors/1/status", json={"status": "Unavailable"})
    connector = _connector(client, 1)
    assert connector["status"] == "Unavailable"
    assert connector["transaction"] is None


def test_power_limit_is_clamped(client):
    r = client.put("/api/connectors/1/power_limit", json={"watts": 500})
    assert r.status_code == 200
    assert r.json() == {"power_limit_W": 1000}
    r = client.put("/api/connectors/1/power_limit", json={"watts": 99999})
    assert r.json() == {"power_limit_W": 22000}
    assert _connector(client, 1)["power_limit_W"] == 22000
    assert client.put("/api/connectors/9/power_limit", json={"watts": 5000}).status_code == 404


def test_report_meter_values(client):
    assert client.post("/api/connectors/1/meter_values").status_code == 400
    _connect(client)
    assert client.post("/api/connectors/1/meter_values").status_code == 204
    types = [e["messageType"] for e in client.get("/api/logs").json()]
    assert "MeterValues" in types


def test_firmware_update(client):
    r = client.post("/api/firmware/update", json={"location": "https://fw.example.com/v2.bin"})
    assert r.status_code == 202
    data = r.json()
    assert data["status"] == "Downloading"
    assert data["download_progress"] == 0
    assert data["location"] == "https://fw.example.com/v2.bin"

    r = client.post("/api/firmware/update", json={"location": "https://fw.example.com/v3.bin"})
    assert r.status_code == 400
    assert client.get("/api/firmware").json()["location"] == "https://fw.example.com/v2.bin"
    assert client.post("/api/firmware/update", json={"location": ""}).status_code == 422


def test_logs_newest_first(client):
    assert client.get("/api/logs").json() == []
    _connect(client)
    logs = client.get("/api/logs").json()
    assert logs[-1]["messageType"] == "Connection"
    assert logs[-1]["direction"] == "sent"
    assert {"id", "timestamp", "direction", "messageType", "payload"} <= set(logs[0])
    client.post("/api/station/disconnect")
    assert client.get("/api/logs").json()[0]["messageType"] == "Disconnect"


@pytest.fixture
def pending_boot_client(station_factory):
    """Client whose central system never answers BootNotification."""
    store.clear()
    central = SimulatedCentralSystem(random.Random(7), min_latency_s=0.0, max_latency_s=0.0)
    central.drop_actions.add("BootNotification")
    store.set_session(SessionManager(station_factory(config={}), central, rng=random.Random(42)))
    try:
        with TestClient(app) as c:
            yield c
    finally:
        store.clear()


def test_operations_refused_until_boot_accepted(pending_boot_client):
    client = pending_boot_client
    assert client.post("/api/station/connect").status_code == 202
    station = client.get("/api/station").json()
    assert station["connection_state"] == "Connected"
    assert station["boot_accepted"] is False

    assert client.post("/api/station/heartbeat").status_code == 400
    r = client.post("/api/connectors/1/transactions/start", json={"id_tag": "TAG-1"})
    assert r.status_code == 400
    assert client.post("/api/connectors/1/meter_values").status_code == 400
    assert _connector(client, 1)["status"] == "Available"
    sent = [e["messageType"] for e in client.get("/api/logs").json() if e["direction"] == "sent"]
    assert "Heartbeat" not in sent
    assert "StartTransaction" not in sent
    assert "MeterValues" not in sent


def test_read_endpoints_run_on_the_event_loop():
    """Session state is owned by the event loop, so reads must not be dispatched to the threadpool."""
    for endpoint in (station_routes.get_station, station_routes.get_firmware, station_routes.get_logs):
        assert inspect.iscoroutinefunction(endpoint), endpoint.__name__
