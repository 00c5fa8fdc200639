"""Unit tests for MessageCorrelator: ids, continuations, timeouts and inbound calls."""
import asyncio
import json

import pytest

from ocpp.v16 import call, call_result
from ocpp.v16.enums import RemoteStartStopStatus

from station_core.correlator import FailureReason, MessageCorrelator, NotConnected
from station_core.message_log import MessageDirection, MessageLog

pytestmark = pytest.mark.unit


def _types(log: MessageLog) -> list[str]:
    return [e.message_type for e in log.snapshot()]


@pytest.mark.asyncio
async def test_emit_without_transport_raises_and_logs_nothing(message_log):
    correlator = MessageCorrelator(message_log)
    with pytest.raises(NotConnected):
        correlator.emit("Heartbeat", {})
    assert len(message_log) == 0
    assert correlator.pending() == []


@pytest.mark.asyncio
async def test_emit_sends_call_frame_and_registers_pending(correlator, recording_transport, message_log):
    cid = correlator.request(call.HeartbeatPayload())
    assert recording_transport.sent == [[2, cid, "Heartbeat", {}]]
    assert [p.id for p in correlator.pending()] == [cid]
    assert correlator.pending()[0].message_type == "Heartbeat"
    entry = message_log.snapshot()[-1]
    assert (entry.direction, entry.message_type) == (MessageDirection.sent, "Heartbeat")


@pytest.mark.asyncio
async def test_correlation_ids_are_unique(correlator):
    ids = [correlator.emit("Heartbeat", {}) for _ in range(50)]
    assert len(set(ids)) == 50


@pytest.mark.asyncio
async def test_response_runs_result_continuation_once(correlator, message_log):
    results = []
    cid = correlator.emit("StartTransaction", {"idTag": "T"}, on_result=results.append)
    payload = {"transactionId": 7, "idTagInfo": {"status": "Accepted"}}
    assert correlator.on_response(cid, payload) is True
    assert correlator.on_response(cid, payload) is False
    assert results == [{"transaction_id": 7, "id_tag_info": {"status": "Accepted"}}]
    assert not correlator.is_pending(cid)
    assert _types(message_log)[-2:] == ["StartTransactionResponse", "CallResult"]


@pytest.mark.asyncio
async def test_timeout_fails_request_and_discards_late_response(message_log, recording_transport):
    correlator = MessageCorrelator(message_log, timeout_s=0.01)
    correlator.attach(recording_transport)
    results, failures = [], []
    cid = correlator.emit("Heartbeat", {}, on_result=results.append, on_failure=failures.append)
    await asyncio.sleep(0.03)
    assert failures == [FailureReason.timeout]
    assert correlator.on_response(cid, {"currentTime": "x"}) is False
    assert results == []
    assert failures == [FailureReason.timeout]


@pytest.mark.asyncio
async def test_response_before_timeout_cancels_timer(message_log, recording_transport):
    correlator = MessageCorrelator(message_log, timeout_s=0.02)
    correlator.attach(recording_transport)
    failures = []
    cid = correlator.emit("Heartbeat", {}, on_failure=failures.append)
    correlator.on_response(cid, {})
    await asyncio.sleep(0.04)
    assert failures == []


@pytest.mark.asyncio
async def test_call_error_runs_failure_continuation(correlator, message_log):
    failures = []
    cid = correlator.emit("Heartbeat", {}, on_failure=failures.append)
    assert correlator.on_error(cid, "InternalError", "oops") is True
    assert failures == [FailureReason.call_error]
    assert _types(message_log)[-1] == "HeartbeatError"
    assert correlator.on_error(cid, "InternalError") is False


@pytest.mark.asyncio
async def test_detach_fails_everything_in_flight(correlator):
    failures = []
    for _ in range(3):
        correlator.emit("Heartbeat", {}, on_failure=failures.append)
    assert correlator.detach(FailureReason.connection_lost) == 3
    assert failures == [FailureReason.connection_lost] * 3
    assert correlator.pending() == []
    assert not correlator.is_connected


@pytest.mark.asyncio
async def test_failing_continuation_does_not_break_correlator(correlator):
    def explode(_):
        raise RuntimeError("boom")

    cid = correlator.emit("Heartbeat", {}, on_result=explode)
    assert correlator.on_response(cid, {}) is True
    assert correlator.pending() == []


@pytest.mark.asyncio
async def test_receive_routes_frames_by_type(correlator):
    results, failures = [], []
    ok = correlator.emit("Heartbeat", {}, on_result=results.append)
    bad = correlator.emit("Heartbeat", {}, on_failure=failures.append)
    correlator.receive(json.dumps([3, ok, {"currentTime": "t"}]))
    correlator.receive(json.dumps([4, bad, "InternalError", "nope", {}]))
    assert results == [{"current_time": "t"}]
    assert failures == [FailureReason.call_error]


@pytest.mark.asyncio
async def test_receive_malformed_frame_is_logged_and_dropped(correlator, message_log):
    correlator.receive("garbage")
    entry = message_log.snapshot()[-1]
    assert (entry.direction, entry.message_type, entry.payload) == (MessageDirection.received, "Unknown", "garbage")


@pytest.mark.asyncio
async def test_inbound_call_without_handler_gets_not_implemented(correlator, recording_transport):
    correlator.receive(json.dumps([2, "csms-1", "Reset", {"type": "Soft"}]))
    reply = recording_transport.sent[-1]
    assert reply[:3] == [4, "csms-1", "NotImplemented"]


@pytest.mark.asyncio
async def test_inbound_call_handler_result_is_sent_as_call_result(correlator, recording_transport, message_log):
    seen = []

    def handler(action, payload):
        seen.append((action, payload))
        return call_result.RemoteStartTransactionPayload(status=RemoteStartStopStatus.accepted)

    correlator.set_call_handler(handler)
    correlator.receive(json.dumps([2, "csms-1", "RemoteStartTransaction", {"idTag": "T", "connectorId": 1}]))
    assert seen == [("RemoteStartTransaction", {"id_tag": "T", "connector_id": 1})]
    assert recording_transport.sent[-1] == [3, "csms-1", {"status": "Accepted"}]
    assert _types(message_log)[-2:] == ["RemoteStartTransaction", "RemoteStartTransactionResponse"]


@pytest.mark.asyncio
async def test_inbound_call_failing_schema_is_rejected_before_handler(correlator, recording_transport):
    seen = []
    correlator.set_call_handler(lambda action, payload: seen.append(action))
    correlator.receive(json.dumps([2, "csms-9", "RemoteStartTransaction", {"idTag": "T", "connectorId": "abc"}]))
    assert seen == []
    reply = recording_transport.sent[-1]
    assert reply[:2] == [4, "csms-9"]
    assert reply[2] in ("TypeConstraintViolation", "FormatViolation", "FormationViolation")


@pytest.mark.asyncio
async def test_inbound_call_missing_required_field_is_rejected(correlator, recording_transport):
    correlator.set_call_handler(lambda action, payload: pytest.fail("handler must not run"))
    correlator.receive(json.dumps([2, "csms-10", "RemoteStopTransaction", {}]))
    reply = recording_transport.sent[-1]
    assert reply[:2] == [4, "csms-10"]
    assert reply[2] != "NotImplemented"


@pytest.mark.asyncio
async def test_inbound_call_handler_exception_gets_internal_error(correlator, recording_transport, message_log):
    def handler(action, payload):
        raise ValueError("boom")

    correlator.set_call_handler(handler)
    correlator.receive(json.dumps([2, "csms-11", "RemoteStartTransaction", {"idTag": "T", "connectorId": 1}]))
    assert recording_transport.sent[-1][:3] == [4, "csms-11", "InternalError"]
    entry = message_log.snapshot()[-1]
    assert (entry.direction, entry.message_type) == (MessageDirection.sent, "CallError")
    assert entry.payload["errorCode"] == "InternalError"


@pytest.mark.asyncio
async def test_only_boot_notification_leaves_before_open_for_traffic(message_log, recording_transport):
    correlator = MessageCorrelator(message_log, timeout_s=5.0)
    correlator.attach(recording_transport, ready=False)
    assert not correlator.is_connected
    with pytest.raises(NotConnected):
        correlator.request(call.HeartbeatPayload())
    cid = correlator.emit("BootNotification", {"chargePointVendor": "V", "chargePointModel": "M"})
    assert [f[2] for f in recording_transport.sent] == ["BootNotification"]
    assert [p.id for p in correlator.pending()] == [cid]

    correlator.open_for_traffic()
    assert correlator.is_connected
    correlator.request(call.HeartbeatPayload())
    assert [f[2] for f in recording_transport.sent] == ["BootNotification", "Heartbeat"]
    correlator.detach()


@pytest.mark.asyncio
async def test_detach_closes_traffic_until_next_boot(correlator, recording_transport):
    correlator.detach()
    correlator.attach(recording_transport, ready=False)
    with pytest.raises(NotConnected):
        correlator.emit("Heartbeat", {})
