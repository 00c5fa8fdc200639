"""Pydantic schemas for the station API."""
from typing import Optional

from pydantic import BaseModel, Field

from station_core.connector import ConnectorStatus


class TransactionInfo(BaseModel):
    """Active transaction on a connector."""

    transaction_id: int
    remote_transaction_id: Optional[int] = None
    id_tag: str
    start_time: str
    meter_start: int
    current_meter: int
    energy_delivered_Wh: int


class ConnectorDetail(BaseModel):
    """Connector status in station detail."""

    connector_id: int
    status: str
    error_code: str = "NoError"
    power_limit_W: int
    max_power_W: int
    power_W: int = 0
    energy_Wh: int = 0
    transaction: Optional[TransactionInfo] = None


class FirmwareDetail(BaseModel):
    """Firmware update state. Progress fields only while Downloading/Installing."""

    status: str
    download_progress: Optional[int] = None
    install_progress: Optional[int] = None
    location: Optional[str] = None


class StationDetail(BaseModel):
    """Station identity, connection state, connectors and firmware."""

    charge_point_id: str
    charge_point_vendor: str
    charge_point_model: str
    firmware_version: str
    serial_number: Optional[str] = None
    connection_state: str
    address: Optional[str] = None
    boot_accepted: bool = False
    connectors: list[ConnectorDetail]
    firmware: FirmwareDetail


class ConnectRequest(BaseModel):
    """Payload for connecting; address defaults to the configured CSMS URL + charge point id."""

    address: Optional[str] = None


class ConnectionResponse(BaseModel):
    connection_state: str


class StartTransactionRequest(BaseModel):
    """Payload for starting a transaction."""

    id_tag: str = Field(min_length=1)


class StartTransactionResponse(BaseModel):
    """Response from starting a transaction."""

    transaction_id: int


class SetStatusRequest(BaseModel):
    """Operator status override."""

    status: ConnectorStatus
    error_code: str = "NoError"


class PowerLimitRequest(BaseModel):
    watts: int


class PowerLimitResponse(BaseModel):
    power_limit_W: int


class FirmwareUpdateRequest(BaseModel):
    """Firmware download location."""

    location: str = Field(min_length=1)


class OCPPLogEntry(BaseModel):
    """Single OCPP message log entry."""

    id: str
    timestamp: str
    direction: str  # 'sent' | 'received'
    messageType: str
    payload: str
