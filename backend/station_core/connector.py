"""Connector state: OCPP 1.6 status set, allowed lifecycle transitions and the energy register."""
import math
from enum import Enum
from typing import Optional

from ocpp.v16.enums import ChargePointStatus

from station_core.transaction import Transaction

MIN_POWER_LIMIT_W = 1000


class ConnectorStatus(str, Enum):
    """Connector states per OCPP 1.6 StatusNotification."""
    Available = "Available"
    Preparing = "Preparing"
    Charging = "Charging"
    SuspendedEV = "SuspendedEV"
    SuspendedEVSE = "SuspendedEVSE"
    Finishing = "Finishing"
    Reserved = "Reserved"
    Unavailable = "Unavailable"
    Faulted = "Faulted"


# Statuses in which a connector may hold a transaction.
SESSION_STATUSES = frozenset({
    ConnectorStatus.Preparing,
    ConnectorStatus.Charging,
    ConnectorStatus.SuspendedEV,
    ConnectorStatus.SuspendedEVSE,
    ConnectorStatus.Finishing,
})

CONNECTOR_STATUS_TO_OCPP: dict[ConnectorStatus, ChargePointStatus] = {
    ConnectorStatus.Available: ChargePointStatus.available,
    ConnectorStatus.Preparing: ChargePointStatus.preparing,
    ConnectorStatus.Charging: ChargePointStatus.charging,
    ConnectorStatus.SuspendedEV: ChargePointStatus.suspended_ev,
    ConnectorStatus.SuspendedEVSE: ChargePointStatus.suspended_evse,
    ConnectorStatus.Finishing: ChargePointStatus.finishing,
    ConnectorStatus.Reserved: ChargePointStatus.reserved,
    ConnectorStatus.Unavailable: ChargePointStatus.unavailable,
    ConnectorStatus.Faulted: ChargePointStatus.faulted,
}

# Transitions the transaction lifecycle may take: from_state -> allowed to_states.
# Operator overrides (set_status) bypass this table.
_VALID_TRANSITIONS: dict[ConnectorStatus, set[ConnectorStatus]] = {
    ConnectorStatus.Available: {ConnectorStatus.Preparing, ConnectorStatus.Reserved, ConnectorStatus.Unavailable},
    ConnectorStatus.Preparing: {
        ConnectorStatus.Charging,
        ConnectorStatus.Finishing,
        ConnectorStatus.Available,
        ConnectorStatus.Faulted,
        ConnectorStatus.Unavailable,
    },
    ConnectorStatus.Charging: {
        ConnectorStatus.Finishing,
        ConnectorStatus.SuspendedEV,
        ConnectorStatus.SuspendedEVSE,
        ConnectorStatus.Faulted,
        ConnectorStatus.Unavailable,
    },
    ConnectorStatus.SuspendedEV: {ConnectorStatus.Charging, ConnectorStatus.Finishing, ConnectorStatus.Faulted, ConnectorStatus.Unavailable},
    ConnectorStatus.SuspendedEVSE: {ConnectorStatus.Charging, ConnectorStatus.Finishing, ConnectorStatus.Faulted, ConnectorStatus.Unavailable},
    ConnectorStatus.Finishing: {ConnectorStatus.Available, ConnectorStatus.Faulted, ConnectorStatus.Unavailable},
    ConnectorStatus.Reserved: {ConnectorStatus.Available, ConnectorStatus.Preparing, ConnectorStatus.Unavailable, ConnectorStatus.Faulted},
    ConnectorStatus.Faulted: {ConnectorStatus.Available, ConnectorStatus.Unavailable},
    ConnectorStatus.Unavailable: {ConnectorStatus.Available},
}


class Connector:
    """
    One physical socket: status, optional active transaction, power limit and an
    energy register (Wh) that only moves forward.
    """

    __slots__ = (
        "connector_id",
        "status",
        "active_transaction",
        "max_power_W",
        "power_limit_W",
        "power_W",
        "energy_Wh",
        "error_code",
    )

    def __init__(
        self,
        connector_id: int,
        max_power_W: int = 22000,
        power_limit_W: Optional[int] = None,
        energy_Wh: int = 0,
    ) -> None:
        if connector_id < 1:
            raise ValueError("connector ids must be positive")
        if max_power_W < MIN_POWER_LIMIT_W:
            raise ValueError(f"max_power_W must be at least {MIN_POWER_LIMIT_W}")
        self.connector_id = connector_id
        self.status = ConnectorStatus.Available
        self.active_transaction: Optional[Transaction] = None
        self.max_power_W = int(max_power_W)
        self.power_limit_W = self.max_power_W
        self.power_W = 0
        self.energy_Wh = max(0, int(energy_Wh))
        self.error_code = "NoError"
        if power_limit_W is not None:
            self.clamp_power_limit(power_limit_W)

    def transition_to(self, new_state: ConnectorStatus) -> bool:
        """Validate and perform state transition. Returns True if applied."""
        allowed = _VALID_TRANSITIONS.get(self.status)
        if allowed is None or new_state not in allowed:
            return False
        self.status = new_state
        return True

    def clamp_power_limit(self, watts: float) -> int:
        """Set power limit clamped to [MIN_POWER_LIMIT_W, max_power_W]. Returns the applied value."""
        if math.isnan(watts):
            watts = MIN_POWER_LIMIT_W
        self.power_limit_W = int(min(max(watts, MIN_POWER_LIMIT_W), self.max_power_W))
        return self.power_limit_W

    def advance_register(self, reading_Wh: int) -> None:
        """Move the energy register forward to reading_Wh (never backwards)."""
        self.energy_Wh = max(self.energy_Wh, int(reading_Wh))
