# Schemas package
from .health import HealthResponse
from .station import ConnectorDetail, FirmwareDetail, OCPPLogEntry, StationDetail, TransactionInfo

__all__ = [
    "ConnectorDetail",
    "FirmwareDetail",
    "HealthResponse",
    "OCPPLogEntry",
    "StationDetail",
    "TransactionInfo",
]
