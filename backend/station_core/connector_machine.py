"""Per-connector protocol flows: start/stop transaction, status override, power limit, meter reports."""
import logging
import random
from functools import partial
from typing import Optional

from ocpp.v16 import call
from ocpp.v16.enums import ChargePointErrorCode, Reason

from station_core.connector import CONNECTOR_STATUS_TO_OCPP, SESSION_STATUSES, Connector, ConnectorStatus
from station_core.correlator import FailureReason, MessageCorrelator, NotConnected
from station_core.messages import id_tag_accepted, utc_timestamp
from station_core.meter_engine import build_meter_values_payload, energy_increment_Wh, sample_power_W
from station_core.scheduler import TimerKey, TimerRegistry
from station_core.transaction import Transaction, TransactionLedger

LOG = logging.getLogger(__name__)

DEFAULT_ACCRUAL_INTERVAL_S = 2.0


class ConnectorStateMachine:
    """
    Drives one Connector through its transaction lifecycle:
    Available -> Preparing (StartTransaction sent) -> Charging (accepted, energy accrues)
    -> Finishing (StopTransaction sent, accrual cancelled) -> Available.

    Operations whose preconditions fail are dropped and return None/False; they never raise.
    """

    def __init__(
        self,
        connector: Connector,
        correlator: MessageCorrelator,
        ledger: TransactionLedger,
        timers: TimerRegistry,
        rng: random.Random,
        *,
        accrual_interval_s: float = DEFAULT_ACCRUAL_INTERVAL_S,
    ) -> None:
        self.connector = connector
        self._correlator = correlator
        self._ledger = ledger
        self._timers = timers
        self._rng = rng
        self._accrual_interval_s = accrual_interval_s
        self._stopping: Optional[Transaction] = None

    @property
    def connector_id(self) -> int:
        return self.connector.connector_id

    @property
    def accrual_key(self) -> TimerKey:
        return (f"connector-{self.connector_id}", "accrual")

    @property
    def is_accruing(self) -> bool:
        return self._timers.is_active(self.accrual_key)

    @property
    def stop_pending(self) -> bool:
        tx = self.connector.active_transaction
        return tx is not None and self._stopping is tx

    # --- transaction lifecycle -----------------------------------------

    def start_transaction(self, id_tag: str) -> Optional[Transaction]:
        """Open a transaction on an Available connector and send StartTransaction."""
        c = self.connector
        if not id_tag or not id_tag.strip():
            LOG.debug("Connector %d: start ignored, empty idTag", c.connector_id)
            return None
        if c.status != ConnectorStatus.Available or c.active_transaction is not None:
            LOG.debug("Connector %d: start ignored in state %s", c.connector_id, c.status.value)
            return None
        if not self._correlator.is_connected:
            LOG.warning("Connector %d: cannot start transaction, not connected", c.connector_id)
            return None

        tx = self._ledger.open(c.connector_id, id_tag, meter_start=c.energy_Wh)
        c.active_transaction = tx
        c.transition_to(ConnectorStatus.Preparing)
        self._send_status()
        self._correlator.request(
            call.StartTransactionPayload(
                connector_id=c.connector_id,
                id_tag=id_tag,
                meter_start=tx.meter_start,
                timestamp=utc_timestamp(),
            ),
            on_result=partial(self._on_start_result, tx),
            on_failure=partial(self._on_start_failed, tx),
        )
        LOG.info(
            "Connector %d: transaction %d opened for %s (meterStart=%d)",
            c.connector_id, tx.transaction_id, id_tag, tx.meter_start,
        )
        return tx

    def _on_start_result(self, tx: Transaction, payload: dict) -> None:
        c = self.connector
        if c.active_transaction is not tx or self._stopping is tx:
            LOG.info("Connector %d: StartTransaction.conf for superseded transaction %d ignored", c.connector_id, tx.transaction_id)
            return
        if not id_tag_accepted(payload):
            LOG.warning("Connector %d: StartTransaction rejected for %s: %s", c.connector_id, tx.id_tag, payload)
            self._abandon(tx)
            return
        remote_id = payload.get("transaction_id")
        if isinstance(remote_id, int) and remote_id > 0:
            tx.remote_transaction_id = remote_id
        if c.status == ConnectorStatus.Preparing and c.transition_to(ConnectorStatus.Charging):
            self._send_status()
        if not self.is_accruing:
            self._timers.every(self.accrual_key, self._accrual_interval_s, self._accrue)

    def _on_start_failed(self, tx: Transaction, reason: FailureReason) -> None:
        c = self.connector
        if c.active_transaction is not tx or self._stopping is tx:
            return
        LOG.warning("Connector %d: StartTransaction for %d failed (%s)", c.connector_id, tx.transaction_id, reason.value)
        self._abandon(tx)

    def _abandon(self, tx: Transaction) -> None:
        """Drop a transaction the central system never accepted."""
        c = self.connector
        self._timers.cancel(self.accrual_key)
        self._ledger.close(tx)
        c.active_transaction = None
        c.power_W = 0
        if c.status in SESSION_STATUSES:
            c.status = ConnectorStatus.Available
            self._send_status()

    def stop_transaction(self, reason: Reason = Reason.local) -> bool:
        """Move to Finishing, stop accrual and send StopTransaction with the final meter."""
        c = self.connector
        tx = c.active_transaction
        if tx is None or self._stopping is tx:
            LOG.debug("Connector %d: stop ignored, no transaction to stop", c.connector_id)
            return False
        if not self._correlator.is_connected:
            LOG.warning("Connector %d: cannot stop transaction, not connected", c.connector_id)
            return False

        self._timers.cancel(self.accrual_key)
        self._stopping = tx
        c.power_W = 0
        c.status = ConnectorStatus.Finishing
        self._send_status()
        self._correlator.request(
            call.StopTransactionPayload(
                meter_stop=tx.current_meter,
                timestamp=utc_timestamp(),
                transaction_id=tx.ocpp_transaction_id,
                reason=reason,
                id_tag=tx.id_tag,
            ),
            on_result=partial(self._on_stop_result, tx),
            on_failure=partial(self._on_stop_failed, tx),
        )
        LOG.info("Connector %d: stopping transaction %d (meterStop=%d)", c.connector_id, tx.transaction_id, tx.current_meter)
        return True

    def _on_stop_result(self, tx: Transaction, payload: dict) -> None:
        self._finish_stop(tx)

    def _on_stop_failed(self, tx: Transaction, reason: FailureReason) -> None:
        LOG.warning("Connector %d: StopTransaction for %d failed (%s); closing locally", self.connector_id, tx.transaction_id, reason.value)
        self._finish_stop(tx)

    def _finish_stop(self, tx: Transaction) -> None:
        c = self.connector
        if self._stopping is tx:
            self._stopping = None
        if c.active_transaction is not tx:
            return
        c.advance_register(self._ledger.close(tx))
        c.active_transaction = None
        if c.status in SESSION_STATUSES:
            c.status = ConnectorStatus.Available
            self._send_status()

    # --- overrides and reports -----------------------------------------

    def set_status(self, new_status: ConnectorStatus, error_code: str = "NoError", info: Optional[str] = None) -> bool:
        """
        Operator override: apply new_status and send StatusNotification.
        Moving to Available/Unavailable/Faulted/Reserved ends an active transaction first.
        """
        c = self.connector
        try:
            new_status = ConnectorStatus(new_status)
            ocpp_error_code = ChargePointErrorCode(error_code)
        except ValueError:
            LOG.warning("Connector %d: invalid status override %r / %r", c.connector_id, new_status, error_code)
            return False
        if not self._correlator.is_connected:
            LOG.warning("Connector %d: cannot send StatusNotification, not connected", c.connector_id)
            return False

        tx = c.active_transaction
        if tx is not None and new_status not in SESSION_STATUSES:
            self._end_for_override(tx, new_status)
        c.status = new_status
        c.error_code = ocpp_error_code.value
        if new_status != ConnectorStatus.Charging:
            c.power_W = 0
        self._send_status(ocpp_error_code, info)
        return True

    def _end_for_override(self, tx: Transaction, new_status: ConnectorStatus) -> None:
        c = self.connector
        self._timers.cancel(self.accrual_key)
        already_stopping = self._stopping is tx
        self._stopping = None
        c.advance_register(self._ledger.close(tx))
        c.active_transaction = None
        if already_stopping:
            return
        reason = Reason.local if new_status == ConnectorStatus.Available else Reason.other
        self._correlator.request(
            call.StopTransactionPayload(
                meter_stop=tx.current_meter,
                timestamp=utc_timestamp(),
                transaction_id=tx.ocpp_transaction_id,
                reason=reason,
                id_tag=tx.id_tag,
            )
        )
        LOG.info("Connector %d: transaction %d ended by %s override", c.connector_id, tx.transaction_id, new_status.value)

    def set_power_limit(self, watts: float) -> int:
        """Clamp and apply a power limit. No protocol exchange."""
        applied = self.connector.clamp_power_limit(watts)
        LOG.info("Connector %d: power limit set to %d W", self.connector_id, applied)
        return applied

    def report_meter_values(self) -> bool:
        """Send a MeterValues snapshot (energy register and sampled power)."""
        c = self.connector
        if not self._correlator.is_connected:
            LOG.warning("Connector %d: cannot send MeterValues, not connected", c.connector_id)
            return False
        c.power_W = sample_power_W(c, self._rng)
        self._correlator.request(build_meter_values_payload(c))
        return True

    def notify_status(self) -> None:
        """Send StatusNotification for the current status (e.g. after boot)."""
        self._send_status(ChargePointErrorCode(self.connector.error_code))

    def close(self) -> None:
        """Cancel the connector's background work."""
        self._timers.cancel(self.accrual_key)

    def _accrue(self) -> None:
        c = self.connector
        tx = c.active_transaction
        if tx is None or self._stopping is tx:
            self._timers.cancel(self.accrual_key)
            return
        c.power_W = sample_power_W(c, self._rng)
        self._ledger.accrue(tx, energy_increment_Wh(c.power_W, self._accrual_interval_s))

    def _send_status(
        self,
        error_code: ChargePointErrorCode = ChargePointErrorCode.no_error,
        info: Optional[str] = None,
    ) -> None:
        c = self.connector
        try:
            self._correlator.request(
                call.StatusNotificationPayload(
                    connector_id=c.connector_id,
                    error_code=error_code,
                    status=CONNECTOR_STATUS_TO_OCPP[c.status],
                    timestamp=utc_timestamp(),
                    info=info,
                )
            )
        except NotConnected:
            LOG.warning("Connector %d: StatusNotification %s not sent, not connected", c.connector_id, c.status.value)
