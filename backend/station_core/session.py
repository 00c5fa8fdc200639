"""Station session: connection lifecycle, boot handshake, periodic reporting and the public operations."""
import asyncio
import logging
import random
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

from ocpp.v16 import call, call_result
from ocpp.v16.enums import Reason, RegistrationStatus, RemoteStartStopStatus

from station_core.connector import Connector, ConnectorStatus
from station_core.connector_machine import ConnectorStateMachine
from station_core.correlator import FailureReason, MessageCorrelator, NotConnected, PendingRequest
from station_core.firmware import FirmwareUpdateState, FirmwareUpdateStateMachine
from station_core.message_log import LoggedMessage, MessageDirection, MessageLog
from station_core.scheduler import TimerKey, TimerRegistry
from station_core.station import Station
from station_core.transaction import TransactionLedger
from station_core.transport import Transport, build_connection_url

LOG = logging.getLogger(__name__)

SESSION_OWNER = "session"
HEARTBEAT_KEY: TimerKey = (SESSION_OWNER, "heartbeat")
METER_REPORT_KEY: TimerKey = (SESSION_OWNER, "meter_report")


class ConnectionState(str, Enum):
    """Connection lifecycle of the station's link to the central system."""
    Disconnected = "Disconnected"
    Connecting = "Connecting"
    Connected = "Connected"


class SessionManager:
    """
    Single owner of all station state. External callers (HTTP API, tests) use only the
    methods below; connector and firmware state machines are reached through it.

    All work runs on one asyncio loop: operations mutate state synchronously and return
    without waiting for the central system, and responses, timeouts and timers re-enter
    through loop callbacks, so mutations never interleave.
    """

    def __init__(
        self,
        station: Station,
        transport: Transport,
        *,
        rng: Optional[random.Random] = None,
        message_log: Optional[MessageLog] = None,
        firmware_failure_rate: float = 0.0,
    ) -> None:
        self.station = station
        self._transport = transport
        self._rng = rng if rng is not None else random.Random()
        self._log = message_log if message_log is not None else MessageLog()
        self._timers = TimerRegistry()
        self._correlator = MessageCorrelator(self._log, timeout_s=station.get_response_timeout_s())
        self._correlator.set_call_handler(self._on_central_system_call)
        self._ledger = TransactionLedger()
        self._machines: dict[int, ConnectorStateMachine] = {
            c.connector_id: ConnectorStateMachine(
                c,
                self._correlator,
                self._ledger,
                self._timers,
                self._rng,
                accrual_interval_s=station.get_accrual_interval_s(),
            )
            for c in station.connectors
        }
        self._firmware = FirmwareUpdateStateMachine(
            self._correlator,
            self._timers,
            self._rng,
            tick_interval_s=station.get_firmware_tick_s(),
            failure_rate=firmware_failure_rate,
        )
        self._state = ConnectionState.Disconnected
        self._address: Optional[str] = None
        self._boot_accepted = False
        self._heartbeat_interval_s = station.get_heartbeat_interval_s()
        self._background: set[asyncio.Task] = set()
        self._call_handlers: dict[str, Callable[[dict], Any]] = {
            "RemoteStartTransaction": self._on_remote_start_transaction,
            "RemoteStopTransaction": self._on_remote_stop_transaction,
            "UpdateFirmware": self._on_update_firmware,
        }

    # --- observers ------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def boot_accepted(self) -> bool:
        return self._boot_accepted

    @property
    def heartbeat_interval_s(self) -> float:
        return self._heartbeat_interval_s

    @property
    def connectors(self) -> list[Connector]:
        return [m.connector for m in self._machines.values()]

    def get_connector(self, connector_id: int) -> Optional[Connector]:
        m = self._machines.get(connector_id)
        return m.connector if m is not None else None

    @property
    def firmware_state(self) -> FirmwareUpdateState:
        return self._firmware.state

    def message_log(self) -> tuple[LoggedMessage, ...]:
        """Snapshot of the message log, oldest first."""
        return self._log.snapshot()

    def pending_requests(self) -> list[PendingRequest]:
        return self._correlator.pending()

    def background_tasks(self) -> list[TimerKey]:
        """Keys of the timers currently scheduled."""
        return self._timers.active_keys()

    # --- connection lifecycle -------------------------------------------

    async def connect(self, address: Optional[str] = None) -> ConnectionState:
        """
        Open the transport and send BootNotification. Ignored unless Disconnected.
        Heartbeat and meter reporting start once the boot is accepted.
        """
        if self._background:
            # a dropped connection may still be closing
            await asyncio.gather(*self._background)
        if self._state != ConnectionState.Disconnected:
            LOG.debug("connect ignored in state %s", self._state.value)
            return self._state
        if address is None and self.station.csms_url:
            address = build_connection_url(self.station.csms_url, self.station.charge_point_id)
        if not address:
            LOG.warning("connect ignored, no central system address")
            return self._state

        self._state = ConnectionState.Connecting
        self._address = address
        self._log.append(MessageDirection.sent, "Connection", {"url": address})
        self._transport.set_handlers(self._correlator.receive, self._on_transport_closed)
        opened = await self._transport.open(address)

        if self._state != ConnectionState.Connecting:
            # disconnect() ran while the transport was opening
            if opened:
                await self._transport.close()
            return self._state
        if not opened:
            LOG.warning("Connection to %s failed", address)
            self._state = ConnectionState.Disconnected
            self._log.append(MessageDirection.received, "ConnectionFailed", {"url": address})
            return self._state

        self._state = ConnectionState.Connected
        # only BootNotification goes out until the central system accepts the boot
        self._correlator.attach(self._transport, ready=False)
        self._log.append(MessageDirection.received, "ConnectionAccepted", {})
        LOG.info("Connected to %s", address)
        self._send_boot_notification()
        return self._state

    async def disconnect(self) -> ConnectionState:
        """Stop periodic tasks, close the transport and go Disconnected. Idempotent."""
        if self._state == ConnectionState.Disconnected:
            return self._state
        LOG.info("Disconnecting from %s", self._address)
        self._log.append(MessageDirection.sent, "Disconnect", {})
        self._teardown()
        await self._transport.close()
        return self._state

    async def shutdown(self) -> None:
        """Disconnect and cancel every remaining background task (process exit)."""
        await self.disconnect()
        if self._background:
            await asyncio.gather(*self._background)
        for m in self._machines.values():
            m.close()
        self._firmware.close()
        self._timers.cancel_all()

    def _teardown(self) -> None:
        self._timers.cancel_owner(SESSION_OWNER)
        self._state = ConnectionState.Disconnected
        self._boot_accepted = False
        self._heartbeat_interval_s = self.station.get_heartbeat_interval_s()
        failed = self._correlator.detach(FailureReason.timeout)
        if failed:
            LOG.warning("%d in-flight request(s) failed on disconnect", failed)

    def _drop_connection(self, event: str) -> None:
        """Tear down from inside a loop callback and close the transport in the background."""
        if self._state == ConnectionState.Disconnected:
            return
        self._log.append(MessageDirection.received, event, {})
        self._teardown()
        self._spawn(self._transport.close())

    def _on_transport_closed(self) -> None:
        if self._state == ConnectionState.Disconnected:
            return
        LOG.warning("Connection to %s lost", self._address)
        self._drop_connection("ConnectionLost")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- boot and periodic reporting ------------------------------------

    def _send_boot_notification(self) -> None:
        s = self.station
        self._correlator.request(
            call.BootNotificationPayload(
                charge_point_vendor=s.charge_point_vendor,
                charge_point_model=s.charge_point_model,
                firmware_version=s.firmware_version,
                charge_point_serial_number=s.serial_number,
            ),
            on_result=self._on_boot_result,
            on_failure=self._on_boot_failed,
        )

    def _on_boot_result(self, payload: dict) -> None:
        if self._state != ConnectionState.Connected:
            return
        status = payload.get("status")
        if status != RegistrationStatus.accepted:
            LOG.warning("BootNotification not accepted (%s); disconnecting", status)
            self._drop_connection("BootRejected")
            return
        interval = payload.get("interval")
        if isinstance(interval, (int, float)) and interval > 0:
            self._heartbeat_interval_s = float(interval)
        self._boot_accepted = True
        self._correlator.open_for_traffic()
        LOG.info("BootNotification accepted; heartbeat every %.0fs", self._heartbeat_interval_s)
        for m in self._machines.values():
            m.notify_status()
        self._timers.every(HEARTBEAT_KEY, self._heartbeat_interval_s, self.send_heartbeat)
        self._timers.every(METER_REPORT_KEY, self.station.get_meter_interval_s(), self._broadcast_meter_values)

    def _on_boot_failed(self, reason: FailureReason) -> None:
        LOG.warning("BootNotification failed (%s); disconnecting", reason.value)
        self._drop_connection("BootRejected")

    def _broadcast_meter_values(self) -> None:
        for m in self._machines.values():
            if m.connector.active_transaction is not None:
                m.report_meter_values()

    # --- operations -----------------------------------------------------

    def send_heartbeat(self) -> bool:
        try:
            self._correlator.request(call.HeartbeatPayload())
        except NotConnected:
            LOG.warning("Heartbeat not sent, not connected")
            return False
        return True

    def start_transaction(self, connector_id: int, id_tag: str) -> Optional[int]:
        """Returns the new transaction id, or None if the start was not allowed."""
        m = self._machines.get(connector_id)
        if m is None:
            LOG.debug("start_transaction: unknown connector %s", connector_id)
            return None
        tx = m.start_transaction(id_tag)
        return tx.transaction_id if tx is not None else None

    def stop_transaction(self, connector_id: int) -> bool:
        m = self._machines.get(connector_id)
        return m.stop_transaction() if m is not None else False

    def set_connector_status(self, connector_id: int, status: ConnectorStatus, error_code: str = "NoError") -> bool:
        m = self._machines.get(connector_id)
        return m.set_status(status, error_code) if m is not None else False

    def set_power_limit(self, connector_id: int, watts: float) -> Optional[int]:
        """Returns the applied (clamped) limit, or None for an unknown connector."""
        m = self._machines.get(connector_id)
        return m.set_power_limit(watts) if m is not None else None

    def report_meter_values(self, connector_id: int) -> bool:
        m = self._machines.get(connector_id)
        return m.report_meter_values() if m is not None else False

    def start_firmware_update(self, location: str) -> bool:
        return self._firmware.start_update(location)

    # --- requests from the central system -------------------------------

    def _on_central_system_call(self, action: str, payload: dict) -> Any:
        handler = self._call_handlers.get(action)
        if handler is None:
            LOG.info("No handler for %s from central system", action)
            return None
        return handler(payload)

    def _on_remote_start_transaction(self, payload: dict) -> call_result.RemoteStartTransactionPayload:
        """Accept and start on the requested (or first Available) connector after replying."""
        id_tag = payload.get("id_tag")
        connector_id = payload.get("connector_id")
        if connector_id is not None:
            m = self._machines.get(int(connector_id))
        else:
            m = next((x for x in self._machines.values() if x.connector.status == ConnectorStatus.Available), None)
        if (
            not id_tag
            or m is None
            or m.connector.status != ConnectorStatus.Available
            or m.connector.active_transaction is not None
        ):
            return call_result.RemoteStartTransactionPayload(status=RemoteStartStopStatus.rejected)
        asyncio.get_running_loop().call_soon(m.start_transaction, id_tag)
        return call_result.RemoteStartTransactionPayload(status=RemoteStartStopStatus.accepted)

    def _on_remote_stop_transaction(self, payload: dict) -> call_result.RemoteStopTransactionPayload:
        transaction_id = payload.get("transaction_id")
        for m in self._machines.values():
            tx = m.connector.active_transaction
            if tx is not None and transaction_id in (tx.transaction_id, tx.remote_transaction_id):
                asyncio.get_running_loop().call_soon(m.stop_transaction, Reason.remote)
                return call_result.RemoteStopTransactionPayload(status=RemoteStartStopStatus.accepted)
        return call_result.RemoteStopTransactionPayload(status=RemoteStartStopStatus.rejected)

    def _on_update_firmware(self, payload: dict) -> call_result.UpdateFirmwarePayload:
        location = payload.get("location") or ""
        asyncio.get_running_loop().call_soon(self._firmware.start_update, location)
        return call_result.UpdateFirmwarePayload()
