"""Unit tests for the in-process central system."""
import asyncio
import json
import random

import pytest

from station_core.central_system import SimulatedCentralSystem

pytestmark = pytest.mark.unit


@pytest.fixture
def csms():
    received, closed = [], []
    central = SimulatedCentralSystem(random.Random(1), min_latency_s=0.0, max_latency_s=0.0, heartbeat_interval_s=60)
    central.set_handlers(lambda m: received.append(json.loads(m)), lambda: closed.append(True))
    central.inbox = received
    central.closed_events = closed
    return central


@pytest.mark.asyncio
async def test_refuses_connection_when_configured(csms):
    csms.accept_connections = False
    assert await csms.open("ws://x/CP") is False
    assert not csms.is_open


@pytest.mark.asyncio
async def test_boot_notification_reply(csms):
    await csms.open("ws://x/CP")
    csms.send('[2,"1","BootNotification",{"chargePointVendor":"V","chargePointModel":"M"}]')
    await asyncio.sleep(0.01)
    reply = csms.inbox[0]
    assert reply[:2] == [3, "1"]
    assert reply[2]["status"] == "Accepted"
    assert reply[2]["interval"] == 60


@pytest.mark.asyncio
async def test_start_transaction_ids_and_rejected_tags(csms):
    await csms.open("ws://x/CP")
    csms.rejected_id_tags.add("BAD")
    csms.send('[2,"1","StartTransaction",{"connectorId":1,"idTag":"OK","meterStart":0,"timestamp":"t"}]')
    csms.send('[2,"2","StartTransaction",{"connectorId":2,"idTag":"OK","meterStart":0,"timestamp":"t"}]')
    csms.send('[2,"3","StartTransaction",{"connectorId":1,"idTag":"BAD","meterStart":0,"timestamp":"t"}]')
    await asyncio.sleep(0.01)
    replies = {r[1]: r[2] for r in csms.inbox}
    assert replies["1"] == {"idTagInfo": {"status": "Accepted"}, "transactionId": 1}
    assert replies["2"]["transactionId"] == 2
    assert replies["3"] == {"idTagInfo": {"status": "Invalid"}, "transactionId": 0}


@pytest.mark.asyncio
async def test_dropped_actions_are_never_answered(csms):
    await csms.open("ws://x/CP")
    csms.drop_actions.add("Heartbeat")
    csms.send('[2,"1","Heartbeat",{}]')
    await asyncio.sleep(0.01)
    assert csms.inbox == []
    assert [c.action for c in csms.calls()] == ["Heartbeat"]


@pytest.mark.asyncio
async def test_close_cancels_scheduled_replies(csms):
    await csms.open("ws://x/CP")
    csms.min_latency_s = csms.max_latency_s = 0.02
    csms.send('[2,"1","Heartbeat",{}]')
    await csms.close()
    await asyncio.sleep(0.04)
    assert csms.inbox == []


@pytest.mark.asyncio
async def test_sever_reports_connection_lost(csms):
    await csms.open("ws://x/CP")
    csms.sever()
    assert csms.closed_events == [True]
    assert not csms.is_open
    csms.sever()
    assert csms.closed_events == [True]


@pytest.mark.asyncio
async def test_send_call_reaches_station(csms):
    await csms.open("ws://x/CP")
    unique_id = csms.send_call("RemoteStopTransaction", {"transactionId": 1})
    await asyncio.sleep(0.01)
    assert csms.inbox == [[2, unique_id, "RemoteStopTransaction", {"transactionId": 1}]]
