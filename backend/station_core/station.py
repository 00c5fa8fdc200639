"""Station model: identity, connectors and OCPP configuration."""
from typing import Any, Optional

from station_core.connector import Connector

# Default OCPP config for a new station.
DEFAULT_STATION_CONFIG: dict[str, Any] = {
    "HeartbeatInterval": 30,
    "MeterValuesSampleInterval": 60,
    "ResponseTimeout": 30,
    "EnergyAccrualInterval": 2,
    "FirmwareProgressInterval": 1,
}


class Station:
    """
    Charge point: identity reported in BootNotification, a fixed set of connectors and
    config read through typed getters.
    """

    __slots__ = (
        "charge_point_id",
        "connectors",
        "csms_url",
        "config",
        "charge_point_vendor",
        "charge_point_model",
        "firmware_version",
        "serial_number",
    )

    def __init__(
        self,
        charge_point_id: str,
        connectors: Optional[list[Connector]] = None,
        csms_url: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        charge_point_vendor: str = "ElectroTech",
        charge_point_model: str = "FastCharge Pro X2",
        firmware_version: str = "2.1.4",
        serial_number: Optional[str] = None,
    ) -> None:
        self.charge_point_id = charge_point_id
        self.connectors = list(connectors) if connectors else []
        ids = [c.connector_id for c in self.connectors]
        if len(ids) != len(set(ids)):
            raise ValueError("connector ids must be unique")
        self.csms_url = csms_url
        self.config = {**DEFAULT_STATION_CONFIG, **(config or {})}
        self.charge_point_vendor = charge_point_vendor
        self.charge_point_model = charge_point_model
        self.firmware_version = firmware_version
        self.serial_number = serial_number

    def get_connector(self, connector_id: int) -> Optional[Connector]:
        """Return connector by id or None."""
        for connector in self.connectors:
            if connector.connector_id == connector_id:
                return connector
        return None

    def get_heartbeat_interval_s(self) -> float:
        return float(self.config["HeartbeatInterval"])

    def get_meter_interval_s(self) -> float:
        """MeterValues broadcast interval in seconds."""
        return float(self.config["MeterValuesSampleInterval"])

    def get_response_timeout_s(self) -> float:
        return float(self.config["ResponseTimeout"])

    def get_accrual_interval_s(self) -> float:
        """Tick of the per-connector energy accrual while charging."""
        return float(self.config["EnergyAccrualInterval"])

    def get_firmware_tick_s(self) -> float:
        return float(self.config["FirmwareProgressInterval"])
