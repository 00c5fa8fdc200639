# Station core: session, connectors, transactions, firmware, message correlation and log
from station_core.connector import Connector, ConnectorStatus
from station_core.correlator import FailureReason, MessageCorrelator, NotConnected
from station_core.firmware import FirmwareStatus, FirmwareUpdateState
from station_core.message_log import LoggedMessage, MessageDirection, MessageLog
from station_core.session import ConnectionState, SessionManager
from station_core.station import Station
from station_core.transaction import Transaction, TransactionLedger

__all__ = [
    "ConnectionState",
    "Connector",
    "ConnectorStatus",
    "FailureReason",
    "FirmwareStatus",
    "FirmwareUpdateState",
    "LoggedMessage",
    "MessageCorrelator",
    "MessageDirection",
    "MessageLog",
    "NotConnected",
    "SessionManager",
    "Station",
    "Transaction",
    "TransactionLedger",
]
