"""In-process central system: a Transport that answers the station like a permissive CSMS."""
import asyncio
import itertools
import logging
import random
from typing import Any, Optional

from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallResult, unpack

from station_core.messages import utc_timestamp
from station_core.transport import Transport

LOG = logging.getLogger(__name__)

DEFAULT_MIN_LATENCY_S = 0.5
DEFAULT_MAX_LATENCY_S = 1.5


class SimulatedCentralSystem(Transport):
    """
    Replies to every Call after a latency drawn from rng in [min_latency_s, max_latency_s].

    Knobs for exercising failure paths: accept_connections, boot_status, rejected_id_tags,
    drop_actions (never answered, so the station times out), sever() (connection lost)
    and send_call() (a CSMS-initiated request).
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        *,
        min_latency_s: float = DEFAULT_MIN_LATENCY_S,
        max_latency_s: float = DEFAULT_MAX_LATENCY_S,
        heartbeat_interval_s: int = 30,
        first_transaction_id: int = 1,
    ) -> None:
        super().__init__()
        self._rng = rng or random.Random()
        self.min_latency_s = min_latency_s
        self.max_latency_s = max_latency_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.accept_connections = True
        self.boot_status = "Accepted"
        self.rejected_id_tags: set[str] = set()
        self.drop_actions: set[str] = set()
        self.received: list[Any] = []
        self.address: Optional[str] = None
        self._transaction_ids = itertools.count(first_transaction_id)
        self._call_ids = itertools.count(1)
        self._scheduled: set[asyncio.TimerHandle] = set()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, address: str) -> bool:
        if not self.accept_connections:
            LOG.warning("Simulated central system refused connection to %s", address)
            return False
        self.address = address
        self._open = True
        return True

    def send(self, message: str) -> None:
        if not self._open:
            LOG.warning("Dropping frame, simulated central system not connected: %r", message)
            return
        try:
            frame = unpack(message)
        except OCPPError as e:
            LOG.warning("Simulated central system got malformed frame %r: %s", message, e)
            return
        self.received.append(frame)
        if not isinstance(frame, Call):
            return
        if frame.action in self.drop_actions:
            LOG.info("Simulated central system dropping %s (%s)", frame.action, frame.unique_id)
            return
        response = CallResult(frame.unique_id, self._respond(frame.action, frame.payload))
        self._schedule(response.to_json())

    async def close(self) -> None:
        self._open = False
        self._cancel_scheduled()

    def sever(self) -> None:
        """Drop the connection as if the network failed."""
        if not self._open:
            return
        self._open = False
        self._cancel_scheduled()
        self._closed_by_peer()

    def send_call(self, action: str, payload: dict) -> str:
        """Send a CSMS-initiated Call to the station. Returns its unique id."""
        unique_id = f"csms-{next(self._call_ids)}"
        self._schedule(Call(unique_id, action, payload).to_json())
        return unique_id

    def calls(self, action: Optional[str] = None) -> list[Call]:
        """Calls received from the station, optionally filtered by action."""
        return [f for f in self.received if isinstance(f, Call) and (action is None or f.action == action)]

    def _respond(self, action: str, payload: dict) -> dict:
        if action == "BootNotification":
            return {"status": self.boot_status, "currentTime": utc_timestamp(), "interval": self.heartbeat_interval_s}
        if action == "Heartbeat":
            return {"currentTime": utc_timestamp()}
        if action in ("Authorize", "StartTransaction", "StopTransaction"):
            id_tag = payload.get("idTag")
            status = "Invalid" if id_tag in self.rejected_id_tags else "Accepted"
            result: dict = {"idTagInfo": {"status": status}}
            if action == "StartTransaction":
                result["transactionId"] = next(self._transaction_ids) if status == "Accepted" else 0
            return result
        return {}

    def _schedule(self, message: str) -> None:
        delay = self._rng.uniform(self.min_latency_s, self.max_latency_s)
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def deliver() -> None:
            self._scheduled.discard(handle)
            if self._open:
                self._deliver(message)

        handle = loop.call_later(delay, deliver)
        self._scheduled.add(handle)

    def _cancel_scheduled(self) -> None:
        for handle in self._scheduled:
            handle.cancel()
        self._scheduled.clear()
