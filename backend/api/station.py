"""Station API routes: the external-collaborator surface of the SessionManager."""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from schemas.station import (
    ConnectionResponse,
    ConnectorDetail,
    ConnectRequest,
    FirmwareDetail,
    FirmwareUpdateRequest,
    OCPPLogEntry,
    PowerLimitRequest,
    PowerLimitResponse,
    SetStatusRequest,
    StartTransactionRequest,
    StartTransactionResponse,
    StationDetail,
    TransactionInfo,
)
from station_core.connector import Connector
from station_core.firmware import FirmwareUpdateState
from station_core.session import ConnectionState, SessionManager
from station_core.store import get_session

LOG = logging.getLogger(__name__)

router = APIRouter(tags=["station"])


def get_session_manager() -> SessionManager:
    """Dependency: the process's station session."""
    session = get_session()
    if session is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Station not initialized")
    return session


def _require_connector(session: SessionManager, connector_id: int) -> Connector:
    connector = session.get_connector(connector_id)
    if connector is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connector not found")
    return connector


def _require_connected(session: SessionManager) -> None:
    if session.connection_state != ConnectionState.Connected:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Station not connected to central system",
        )
    if not session.boot_accepted:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="BootNotification not yet accepted by central system",
        )


def _connector_to_detail(c: Connector) -> ConnectorDetail:
    tx = c.active_transaction
    return ConnectorDetail(
        connector_id=c.connector_id,
        status=c.status.value,
        error_code=c.error_code,
        power_limit_W=c.power_limit_W,
        max_power_W=c.max_power_W,
        power_W=c.power_W,
        energy_Wh=c.energy_Wh,
        transaction=TransactionInfo(
            transaction_id=tx.transaction_id,
            remote_transaction_id=tx.remote_transaction_id,
            id_tag=tx.id_tag,
            start_time=tx.start_time.isoformat().replace("+00:00", "Z"),
            meter_start=tx.meter_start,
            current_meter=tx.current_meter,
            energy_delivered_Wh=tx.energy_delivered_Wh,
        ) if tx is not None else None,
    )


def _firmware_to_detail(state: FirmwareUpdateState) -> FirmwareDetail:
    return FirmwareDetail(
        status=state.status.value,
        download_progress=state.download_progress,
        install_progress=state.install_progress,
        location=state.location,
    )


@router.get("/station", response_model=StationDetail)
async def get_station(session: SessionManager = Depends(get_session_manager)) -> StationDetail:
    """Station detail: identity, connection state, connectors with live transactions, firmware."""
    s = session.station
    return StationDetail(
        charge_point_id=s.charge_point_id,
        charge_point_vendor=s.charge_point_vendor,
        charge_point_model=s.charge_point_model,
        firmware_version=s.firmware_version,
        serial_number=s.serial_number,
        connection_state=session.connection_state.value,
        address=session.address,
        boot_accepted=session.boot_accepted,
        connectors=[_connector_to_detail(c) for c in session.connectors],
        firmware=_firmware_to_detail(session.firmware_state),
    )


@router.post("/station/connect", response_model=ConnectionResponse, status_code=status.HTTP_202_ACCEPTED)
async def connect_station(
    body: ConnectRequest | None = None,
    session: SessionManager = Depends(get_session_manager),
) -> ConnectionResponse:
    """Open the connection and send BootNotification. No-op unless Disconnected."""
    state = await session.connect(body.address if body else None)
    return ConnectionResponse(connection_state=state.value)


@router.post("/station/disconnect", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_station(session: SessionManager = Depends(get_session_manager)) -> None:
    """Close the connection and stop periodic reporting. Idempotent."""
    await session.disconnect()


@router.post("/station/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def send_heartbeat(session: SessionManager = Depends(get_session_manager)) -> None:
    _require_connected(session)
    session.send_heartbeat()


@router.post("/connectors/{connector_id}/transactions/start", response_model=StartTransactionResponse)
async def start_transaction(
    connector_id: int,
    body: StartTransactionRequest,
    session: SessionManager = Depends(get_session_manager),
) -> StartTransactionResponse:
    """Start a charging transaction on an Available connector."""
    _require_connector(session, connector_id)
    _require_connected(session)
    transaction_id = session.start_transaction(connector_id, body.id_tag)
    if transaction_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connector is not Available or idTag is empty",
        )
    return StartTransactionResponse(transaction_id=transaction_id)


@router.post("/connectors/{connector_id}/transactions/stop", status_code=status.HTTP_204_NO_CONTENT)
async def stop_transaction(connector_id: int, session: SessionManager = Depends(get_session_manager)) -> None:
    """Stop the active transaction on a connector."""
    _require_connector(session, connector_id)
    _require_connected(session)
    if not session.stop_transaction(connector_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active transaction on that connector",
        )


@router.post("/connectors/{connector_id}/status", status_code=status.HTTP_204_NO_CONTENT)
async def set_connector_status(
    connector_id: int,
    body: SetStatusRequest,
    session: SessionManager = Depends(get_session_manager),
) -> None:
    """Override a connector's status and send StatusNotification."""
    _require_connector(session, connector_id)
    _require_connected(session)
    if not session.set_connector_status(connector_id, body.status, body.error_code):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown error code: {body.error_code!r}",
        )


@router.put("/connectors/{connector_id}/power_limit", response_model=PowerLimitResponse)
async def set_power_limit(
    connector_id: int,
    body: PowerLimitRequest,
    session: SessionManager = Depends(get_session_manager),
) -> PowerLimitResponse:
    """Set the connector power limit; the applied value is clamped to [1000, max]."""
    _require_connector(session, connector_id)
    applied = session.set_power_limit(connector_id, body.watts)
    assert applied is not None
    return PowerLimitResponse(power_limit_W=applied)


@router.post("/connectors/{connector_id}/meter_values", status_code=status.HTTP_204_NO_CONTENT)
async def report_meter_values(connector_id: int, session: SessionManager = Depends(get_session_manager)) -> None:
    _require_connector(session, connector_id)
    _require_connected(session)
    session.report_meter_values(connector_id)


@router.get("/firmware", response_model=FirmwareDetail)
async def get_firmware(session: SessionManager = Depends(get_session_manager)) -> FirmwareDetail:
    return _firmware_to_detail(session.firmware_state)


@router.post("/firmware/update", response_model=FirmwareDetail, status_code=status.HTTP_202_ACCEPTED)
async def start_firmware_update(
    body: FirmwareUpdateRequest,
    session: SessionManager = Depends(get_session_manager),
) -> FirmwareDetail:
    """Start downloading and installing firmware from location."""
    if not session.start_firmware_update(body.location):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Firmware update already in progress",
        )
    return _firmware_to_detail(session.firmware_state)


@router.get("/logs", response_model=list[OCPPLogEntry])
async def get_logs(session: SessionManager = Depends(get_session_manager)) -> list[OCPPLogEntry]:
    """OCPP message log, newest first."""
    return [
        OCPPLogEntry(
            id=entry.id,
            timestamp=entry.timestamp,
            direction=entry.direction.value,
            messageType=entry.message_type,
            payload=entry.payload,
        )
        for entry in reversed(session.message_log())
    ]
