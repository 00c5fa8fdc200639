"""In-memory holder for the process's station session: single source of truth for the API."""
import random
from typing import Optional

from station_core.central_system import SimulatedCentralSystem
from station_core.connector import Connector
from station_core.message_log import MessageLog
from station_core.session import SessionManager
from station_core.station import Station
from station_core.transport import Transport, WebSocketTransport, basic_auth_header
from utils import config

_session: Optional[SessionManager] = None


def get_session() -> Optional[SessionManager]:
    """Current session or None."""
    return _session


def set_session(session: SessionManager) -> None:
    """Install session as the process's station."""
    global _session
    _session = session


def clear() -> None:
    """Forget the session (tests)."""
    global _session
    _session = None


def build_transport(rng: random.Random) -> Transport:
    """Transport selected by STATION_TRANSPORT: the in-process central system or a WebSocket."""
    if config.STATION_TRANSPORT == "websocket":
        headers = None
        if config.BASIC_AUTH_PASSWORD:
            headers = basic_auth_header(config.CHARGE_POINT_ID, config.BASIC_AUTH_PASSWORD)
        return WebSocketTransport(additional_headers=headers)
    return SimulatedCentralSystem(
        rng,
        min_latency_s=config.SIM_MIN_LATENCY_S,
        max_latency_s=config.SIM_MAX_LATENCY_S,
    )


def seed_default() -> None:
    """Create the default station (CONNECTOR_COUNT connectors) unless a session exists."""
    if _session is not None:
        return
    rng = random.Random(config.SIM_SEED)
    connectors = [
        Connector(
            connector_id=i,
            max_power_W=config.CONNECTOR_MAX_POWER_W,
            energy_Wh=rng.randint(0, 9999),
        )
        for i in range(1, config.CONNECTOR_COUNT + 1)
    ]
    station = Station(
        charge_point_id=config.CHARGE_POINT_ID,
        connectors=connectors,
        csms_url=config.CSMS_URL,
        serial_number="FC-2024-001",
    )
    set_session(
        SessionManager(
            station,
            build_transport(rng),
            rng=rng,
            message_log=MessageLog(capacity=config.MESSAGE_LOG_CAPACITY),
        )
    )
