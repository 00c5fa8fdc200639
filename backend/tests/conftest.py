import asyncio
import json
import random

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from main import app
from station_core import store
from station_core.central_system import SimulatedCentralSystem
from station_core.connector import Connector
from station_core.correlator import MessageCorrelator
from station_core.message_log import MessageLog
from station_core.session import SessionManager
from station_core.station import Station
from station_core.transport import Transport

CSMS_ADDRESS = "ws://csms.test/ocpp/CP-TEST"

# Short intervals so timer-driven behaviour is observable within a test.
FAST_CONFIG = {
    "HeartbeatInterval": 0.05,
    "MeterValuesSampleInterval": 0.05,
    "ResponseTimeout": 0.2,
    "EnergyAccrualInterval": 0.02,
    "FirmwareProgressInterval": 0.005,
}


class RecordingTransport(Transport):
    """Transport double: records frames, never replies on its own."""

    def __init__(self, accept: bool = True) -> None:
        super().__init__()
        self.accept = accept
        self.sent: list[list] = []
        self.closed = False

    async def open(self, address: str) -> bool:
        return self.accept

    def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True

    def calls(self, action: str | None = None) -> list[list]:
        return [m for m in self.sent if m[0] == 2 and (action is None or m[2] == action)]

    def receive(self, message: str) -> None:
        """Push a frame to the station as if it came off the wire."""
        self._deliver(message)

    def drop(self) -> None:
        self._closed_by_peer()


def make_station(config: dict | None = None, connector_count: int = 2) -> Station:
    return Station(
        charge_point_id="CP-TEST",
        connectors=[Connector(connector_id=i, max_power_W=22000, energy_Wh=5000) for i in range(1, connector_count + 1)],
        csms_url="ws://csms.test/ocpp",
        config=config if config is not None else dict(FAST_CONFIG),
        serial_number="SN-TEST",
    )


@pytest.fixture
def station_factory():
    return make_station


@pytest.fixture
def recording_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def message_log() -> MessageLog:
    return MessageLog()


@pytest.fixture
def correlator(message_log, recording_transport) -> MessageCorrelator:
    """Correlator attached to a recording transport (connected)."""
    c = MessageCorrelator(message_log, timeout_s=5.0)
    c.attach(recording_transport)
    return c


@pytest.fixture
def central() -> SimulatedCentralSystem:
    """Central system answering immediately; interval 0 keeps the station's own heartbeat interval."""
    return SimulatedCentralSystem(random.Random(7), min_latency_s=0.0, max_latency_s=0.0, heartbeat_interval_s=0)


@pytest_asyncio.fixture
async def session(central):
    """Disconnected session for a two-connector station with fast timers."""
    s = SessionManager(make_station(), central, rng=random.Random(42))
    yield s
    await s.shutdown()


@pytest_asyncio.fixture
async def connected_session(session):
    """Session connected to the simulated central system with boot accepted."""
    await session.connect(CSMS_ADDRESS)
    await asyncio.sleep(0.01)
    assert session.boot_accepted
    return session


@pytest.fixture
def client():
    """API test client over a fresh station (slow timers) wired to a zero-latency central system."""
    store.clear()
    central = SimulatedCentralSystem(random.Random(7), min_latency_s=0.0, max_latency_s=0.0)
    store.set_session(SessionManager(make_station(config={}), central, rng=random.Random(42)))
    try:
        with TestClient(app) as c:
            yield c
    finally:
        store.clear()
