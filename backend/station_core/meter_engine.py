"""Per-connector meter model: power sampling, energy accrual and the MeterValues payload."""
import random

from ocpp.v16 import call, datatypes
from ocpp.v16.enums import Measurand, UnitOfMeasure

from station_core.connector import Connector, ConnectorStatus
from station_core.messages import utc_timestamp

# Sampled power stays within this fraction of the connector's power limit while charging.
POWER_SAMPLE_MIN_FRACTION = 0.9
POWER_SAMPLE_MAX_FRACTION = 1.0


def sample_power_W(connector: Connector, rng: random.Random) -> int:
    """Instantaneous power (W): a bounded draw below the power limit while Charging, else 0."""
    if connector.status != ConnectorStatus.Charging:
        return 0
    fraction = rng.uniform(POWER_SAMPLE_MIN_FRACTION, POWER_SAMPLE_MAX_FRACTION)
    return int(round(connector.power_limit_W * fraction))


def energy_increment_Wh(power_W: float, dt_s: float) -> int:
    """Energy (Wh) delivered at power_W over dt_s seconds. Never negative."""
    return max(0, int(round(power_W * (dt_s / 3600.0))))


def meter_reading_Wh(connector: Connector) -> int:
    """Energy register to report: the active transaction's meter, else the idle register."""
    tx = connector.active_transaction
    return tx.current_meter if tx is not None else connector.energy_Wh


def build_meter_values_payload(connector: Connector) -> call.MeterValuesPayload:
    """MeterValues request for the connector's current energy register and power."""
    tx = connector.active_transaction
    sampled_values = [
        datatypes.SampledValue(
            value=str(meter_reading_Wh(connector)),
            measurand=Measurand.energy_active_import_register,
            unit=UnitOfMeasure.wh,
        ),
        datatypes.SampledValue(
            value=str(connector.power_W),
            measurand=Measurand.power_active_import,
            unit=UnitOfMeasure.w,
        ),
    ]
    return call.MeterValuesPayload(
        connector_id=connector.connector_id,
        meter_value=[datatypes.MeterValue(timestamp=utc_timestamp(), sampled_value=sampled_values)],
        transaction_id=tx.ocpp_transaction_id if tx is not None else None,
    )
