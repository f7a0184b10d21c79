import queue
import time

import pytest

from icmrelay.external_handler import (
    TIMEOUT_ERROR_CODE,
    TIMEOUT_ERROR_MESSAGE,
    InboundMessage,
    Op,
    RelayerExternalHandler,
    RequestID,
)
from icmrelay.ids import ID, NodeID
from icmrelay.metrics import AppRequestNetworkMetrics

CHAIN = ID(bytes(32))
NODE_A = NodeID(bytes(20))
NODE_B = NodeID(b"\x01" * 20)


@pytest.fixture
def handler():
    h = RelayerExternalHandler(AppRequestNetworkMetrics(), timeout=0.05)
    yield h
    h.shutdown()


def drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


def response(node, request_id, op=Op.APP_RESPONSE, chain=CHAIN):
    return InboundMessage(op=op, node_id=node, chain_id=chain, request_id=request_id)


def test_responses_delivered_then_closed(handler):
    q = handler.register_request_id(3, 2)
    first = response(NODE_A, 3)
    second = response(NODE_B, 3, op=Op.APP_ERROR)
    handler.handle_inbound(first)
    handler.handle_inbound(second)
    assert drain(q) == [first, second, None]


def test_responses_after_completion_are_dropped(handler):
    q = handler.register_request_id(4, 1)
    handler.handle_inbound(response(NODE_A, 4))
    assert len(drain(q)) == 2
    late = response(NODE_B, 4)
    handler.handle_inbound(late)
    assert drain(q) == []
    assert late.finished is False


def test_other_ops_are_finished_immediately(handler):
    calls = []
    message = InboundMessage(op=Op.APP_GOSSIP, node_id=NODE_A, on_finished=lambda: calls.append(1))
    handler.handle_inbound(message)
    assert message.finished is True
    assert calls == [1]


@pytest.mark.parametrize("chain,request_id", [(None, 1), (CHAIN, None)])
def test_missing_fields_finish_message(handler, chain, request_id):
    q = handler.register_request_id(1, 1)
    message = InboundMessage(op=Op.APP_RESPONSE, node_id=NODE_A, chain_id=chain, request_id=request_id)
    handler.handle_inbound(message)
    assert message.finished is True
    assert drain(q) == []


def test_connection_events_counted():
    metrics = AppRequestNetworkMetrics()
    h = RelayerExternalHandler(metrics)
    h.connected(NODE_A, "v1", CHAIN)
    h.connected(NODE_B, "v1", CHAIN)
    h.disconnected(NODE_A)
    assert metrics.connects.value == 2
    assert metrics.disconnects.value == 1


def test_timeout_delivers_app_error(handler):
    q = handler.register_request_id(7, 1)
    handler.register_app_request(RequestID(NODE_A, CHAIN, 7))
    message = q.get(timeout=2)
    assert message.op is Op.APP_ERROR
    assert message.node_id == NODE_A
    assert message.request_id == 7
    assert message.error_code == TIMEOUT_ERROR_CODE
    assert message.error_message == TIMEOUT_ERROR_MESSAGE
    assert q.get(timeout=2) is None


def test_response_cancels_timeout():
    h = RelayerExternalHandler(AppRequestNetworkMetrics(), timeout=0.1)
    q = h.register_request_id(8, 2)
    h.register_app_request(RequestID(NODE_A, CHAIN, 8, Op.APP_RESPONSE))
    answer = response(NODE_A, 8)
    h.handle_inbound(answer)
    time.sleep(0.3)
    assert drain(q) == [answer]
    h.shutdown()


def test_shutdown_cancels_pending_timeouts():
    h = RelayerExternalHandler(AppRequestNetworkMetrics(), timeout=0.05)
    q = h.register_request_id(9, 1)
    h.register_app_request(RequestID(NODE_A, CHAIN, 9))
    h.shutdown()
    time.sleep(0.2)
    assert drain(q) == []


def test_timeout_must_be_positive():
    with pytest.raises(ValueError):
        RelayerExternalHandler(AppRequestNetworkMetrics(), timeout=0)