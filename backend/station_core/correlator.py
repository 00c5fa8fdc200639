"""Request/response correlation: unique ids, in-flight tracking, timeouts, at-most-once continuations."""
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from ocpp.exceptions import InternalError
from ocpp.exceptions import NotImplementedError as OCPPNotImplementedError
from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallError, CallResult, unpack, validate_payload

from station_core.message_log import MessageDirection, MessageLog
from station_core.messages import action_name, from_wire, to_wire

if TYPE_CHECKING:
    from station_core.transport import Transport

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
OCPP_VERSION = "1.6"

# The only actions allowed out before the boot handshake is accepted.
PRE_BOOT_ACTIONS = frozenset({"BootNotification"})


class NotConnected(Exception):
    """Raised by emit when no transport is attached, or when it is not yet open for traffic."""


class FailureReason(str, Enum):
    """Why a pending request ended without a CallResult."""
    timeout = "Timeout"
    call_error = "CallError"
    connection_lost = "ConnectionLost"


ResultCallback = Callable[[dict], None]
FailureCallback = Callable[[FailureReason], None]
CallHandler = Callable[[str, dict], Any]


@dataclass(frozen=True)
class PendingRequest:
    """An emitted request awaiting its response."""

    id: str
    message_type: str
    issued_at: datetime


@dataclass
class _InFlight:
    request: PendingRequest
    on_result: Optional[ResultCallback]
    on_failure: Optional[FailureCallback]
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class MessageCorrelator:
    """
    Pairs outgoing Calls with their CallResult/CallError.

    emit() registers a PendingRequest, hands the frame to the attached transport and returns
    the correlation id immediately. Exactly one continuation runs per request: on_result for a
    CallResult, on_failure for a CallError or timeout. Responses for unknown or already
    resolved ids are discarded. Correlation ids come from a process-wide counter and are
    never reused.
    """

    def __init__(self, message_log: MessageLog, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self._log = message_log
        self.timeout_s = timeout_s
        self._ids = itertools.count(1)
        self._pending: dict[str, _InFlight] = {}
        self._transport: Optional["Transport"] = None
        self._ready = False
        self._call_handler: Optional[CallHandler] = None

    # --- connection -----------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """True once a transport is attached and open for normal traffic."""
        return self._transport is not None and self._ready

    def attach(self, transport: "Transport", *, ready: bool = True) -> None:
        """
        Start routing emitted frames to transport. With ready=False only PRE_BOOT_ACTIONS
        may be emitted until open_for_traffic() is called.
        """
        self._transport = transport
        self._ready = ready

    def open_for_traffic(self) -> None:
        if self._transport is not None:
            self._ready = True

    def detach(self, reason: FailureReason = FailureReason.timeout) -> int:
        """Stop emitting and resolve every in-flight request as failed. Returns how many were failed."""
        self._transport = None
        self._ready = False
        failed = 0
        for correlation_id in list(self._pending):
            if self._fail(correlation_id, reason):
                failed += 1
        return failed

    def set_call_handler(self, handler: Optional[CallHandler]) -> None:
        """Handler for Calls initiated by the central system: handler(action, snake_case_payload) -> payload dataclass."""
        self._call_handler = handler

    # --- outgoing -------------------------------------------------------

    def emit(
        self,
        message_type: str,
        payload: dict,
        on_result: Optional[ResultCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> str:
        """Send a Call and register it as pending. Raises NotConnected if no transport is attached."""
        if self._transport is None:
            raise NotConnected(f"cannot send {message_type}: not connected")
        if not self._ready and message_type not in PRE_BOOT_ACTIONS:
            raise NotConnected(f"cannot send {message_type}: boot not accepted")
        correlation_id = str(next(self._ids))
        request = PendingRequest(
            id=correlation_id,
            message_type=message_type,
            issued_at=datetime.now(timezone.utc),
        )
        flight = _InFlight(request, on_result, on_failure)
        self._pending[correlation_id] = flight
        flight.timer = asyncio.get_running_loop().call_later(self.timeout_s, self.on_timeout, correlation_id)
        self._log.append(MessageDirection.sent, message_type, payload)
        self._transport.send(Call(correlation_id, message_type, payload).to_json())
        return correlation_id

    def request(
        self,
        payload: Any,
        on_result: Optional[ResultCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> str:
        """emit() for an ocpp.v16 call payload dataclass."""
        return self.emit(action_name(payload), to_wire(payload), on_result, on_failure)

    def pending(self) -> list[PendingRequest]:
        return [flight.request for flight in self._pending.values()]

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    # --- incoming -------------------------------------------------------

    def receive(self, raw: str) -> None:
        """Entry point for frames from the transport."""
        try:
            message = unpack(raw)
        except OCPPError as e:
            LOG.warning("Dropping malformed frame %r: %s", raw, e)
            self._log.append(MessageDirection.received, "Unknown", raw)
            return
        if isinstance(message, CallResult):
            self.on_response(message.unique_id, message.payload)
        elif isinstance(message, CallError):
            self.on_error(message.unique_id, message.error_code, message.error_description)
        elif isinstance(message, Call):
            self._on_call(message)

    def on_response(self, correlation_id: str, payload: Any) -> bool:
        """Resolve a pending request with its CallResult. Returns False if the id is not pending."""
        flight = self._pending.pop(correlation_id, None)
        if flight is None:
            LOG.debug("Discarding response for unknown or expired request %s", correlation_id)
            self._log.append(MessageDirection.received, "CallResult", payload)
            return False
        self._cancel_timer(flight)
        self._log.append(MessageDirection.received, f"{flight.request.message_type}Response", payload)
        if flight.on_result is not None:
            try:
                flight.on_result(from_wire(payload))
            except Exception:
                LOG.exception("Result handler for %s (%s) failed", flight.request.message_type, correlation_id)
        return True

    def on_error(self, correlation_id: str, error_code: str, description: str = "") -> bool:
        """Resolve a pending request with a CallError. Returns False if the id is not pending."""
        if correlation_id not in self._pending:
            LOG.debug("Discarding CallError for unknown or expired request %s", correlation_id)
            self._log.append(MessageDirection.received, "CallError", {"errorCode": error_code})
            return False
        message_type = self._pending[correlation_id].request.message_type
        LOG.warning("%s (%s) failed with %s: %s", message_type, correlation_id, error_code, description)
        self._log.append(
            MessageDirection.received,
            f"{message_type}Error",
            {"errorCode": error_code, "errorDescription": description},
        )
        return self._fail(correlation_id, FailureReason.call_error)

    def on_timeout(self, correlation_id: str) -> bool:
        """Expire a pending request. A response arriving later is discarded."""
        flight = self._pending.get(correlation_id)
        if flight is None:
            return False
        LOG.warning(
            "%s (%s) timed out after %.1fs", flight.request.message_type, correlation_id, self.timeout_s
        )
        return self._fail(correlation_id, FailureReason.timeout)

    def _fail(self, correlation_id: str, reason: FailureReason) -> bool:
        flight = self._pending.pop(correlation_id, None)
        if flight is None:
            return False
        self._cancel_timer(flight)
        if flight.on_failure is not None:
            try:
                flight.on_failure(reason)
            except Exception:
                LOG.exception("Failure handler for %s (%s) failed", flight.request.message_type, correlation_id)
        return True

    @staticmethod
    def _cancel_timer(flight: _InFlight) -> None:
        if flight.timer is not None:
            flight.timer.cancel()
            flight.timer = None

    # --- calls from the central system ---------------------------------

    def _on_call(self, message: Call) -> None:
        self._log.append(MessageDirection.received, message.action, message.payload)
        try:
            validate_payload(message, OCPP_VERSION)
        except OCPPError as e:
            LOG.warning("Rejecting %s (%s): %s", message.action, message.unique_id, e)
            self._reply(message.create_call_error(e))
            return
        if self._call_handler is None:
            self._reply(message.create_call_error(OCPPNotImplementedError(description=f"{message.action} not supported")))
            return
        try:
            result = self._call_handler(message.action, from_wire(message.payload))
        except OCPPError as e:
            self._reply(message.create_call_error(e))
            return
        except Exception:
            LOG.exception("Handler for %s (%s) failed", message.action, message.unique_id)
            self._reply(message.create_call_error(InternalError(description=f"{message.action} failed")))
            return
        if result is None:
            self._reply(message.create_call_error(OCPPNotImplementedError(description=f"{message.action} not supported")))
            return
        self._reply(message.create_call_result(to_wire(result)))

    def _reply(self, response: Any) -> None:
        if self._transport is None:
            return
        if isinstance(response, CallError):
            self._log.append(
                MessageDirection.sent,
                "CallError",
                {"errorCode": response.error_code, "errorDescription": response.error_description},
            )
        else:
            self._log.append(MessageDirection.sent, f"{response.action}Response", response.payload)
        self._transport.send(response.to_json())
