"""Routes inbound app responses to the relayers waiting for them, with request timeouts."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from icmrelay.ids import ID, NodeID
from icmrelay.metrics import AppRequestNetworkMetrics

logger = logging.getLogger(__name__)

DEFAULT_APP_REQUEST_TIMEOUT = 10.0
"""Seconds to wait for an app response before a timeout error is delivered instead."""

TIMEOUT_ERROR_CODE = -1
TIMEOUT_ERROR_MESSAGE = "timed out"


class Op(enum.Enum):
    """Kinds of inbound network messages."""

    APP_REQUEST = "app_request"
    APP_RESPONSE = "app_response"
    APP_ERROR = "app_error"
    APP_GOSSIP = "app_gossip"
    OTHER = "other"


@dataclass(frozen=True)
class RequestID:
    """Identifies one outstanding request to one node."""

    node_id: NodeID
    chain_id: ID
    request_id: int
    op: Op = Op.APP_RESPONSE


@dataclass(eq=False)
class InboundMessage:
    """A message received from a peer.

    ``chain_id`` or ``request_id`` is None when the message does not carry it.
    """

    op: Op
    node_id: NodeID
    chain_id: ID | None = None
    request_id: int | None = None
    payload: bytes = b""
    error_code: int | None = None
    error_message: str = ""
    on_finished: Callable[[], Any] | None = None
    finished: bool = field(default=False, init=False)

    def on_finished_handling(self) -> None:
        """Mark the message as handled and run its completion callback."""
        self.finished = True
        if self.on_finished is not None:
            self.on_finished()


@dataclass
class _ExpectedResponses:
    expected: int
    received: int = 0


class RelayerExternalHandler:
    """Forwards app responses and errors to the queue registered for their request ID.

    Each registered queue receives the matching messages and then ``None`` once
    the expected number of responses has arrived.
    """

    def __init__(
        self,
        metrics: AppRequestNetworkMetrics,
        timeout: float = DEFAULT_APP_REQUEST_TIMEOUT,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._metrics = metrics
        self._timeout = timeout
        self._lock = threading.Lock()
        self._response_queues: dict[int, queue.Queue[InboundMessage | None]] = {}
        self._responses: dict[int, _ExpectedResponses] = {}
        self._timers_lock = threading.Lock()
        self._timers: dict[RequestID, threading.Timer] = {}
        self._closed = False

    def handle_inbound(self, inbound_message: InboundMessage) -> None:
        logger.debug(
            "Handling app response op=%s from=%s", inbound_message.op, inbound_message.node_id
        )
        if inbound_message.op in (Op.APP_RESPONSE, Op.APP_ERROR):
            if inbound_message.op is Op.APP_ERROR:
                logger.debug(
                    "Received AppError message code=%s message=%s",
                    inbound_message.error_code,
                    inbound_message.error_message,
                )
            self._register_app_response(inbound_message)
        else:
            logger.debug("Ignoring message op=%s", inbound_message.op)
            inbound_message.on_finished_handling()

    def connected(self, node_id: NodeID, version: object, subnet_id: ID) -> None:
        logger.debug("Connected nodeID=%s version=%s subnetID=%s", node_id, version, subnet_id)
        self._metrics.connects.inc()

    def disconnected(self, node_id: NodeID) -> None:
        logger.debug("Disconnected nodeID=%s", node_id)
        self._metrics.disconnects.inc()

    def register_request_id(
        self, request_id: int, num_expected_responses: int
    ) -> queue.Queue[InboundMessage | None]:
        """Open the queue that receives responses to ``request_id``."""
        with self._lock:
            logger.debug("Registering request ID %d", request_id)
            responses: queue.Queue[InboundMessage | None] = queue.Queue()
            self._response_queues[request_id] = responses
            self._responses[request_id] = _ExpectedResponses(expected=num_expected_responses)
            return responses

    def register_app_request(self, request_id: RequestID) -> None:
        """Deliver a timeout error for ``request_id`` unless its response arrives in time."""
        message = InboundMessage(
            op=Op.APP_ERROR,
            node_id=request_id.node_id,
            chain_id=request_id.chain_id,
            request_id=request_id.request_id,
            error_code=TIMEOUT_ERROR_CODE,
            error_message=TIMEOUT_ERROR_MESSAGE,
        )
        timer = threading.Timer(
            self._timeout, lambda: self._expire(request_id, message, timer)
        )
        timer.daemon = True
        with self._timers_lock:
            if self._closed:
                logger.debug("Handler shut down; not registering %s", request_id)
                return
            previous = self._timers.pop(request_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[request_id] = timer
            timer.start()

    def shutdown(self) -> None:
        """Cancel every pending timeout."""
        with self._timers_lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _expire(self, request_id: RequestID, message: InboundMessage, timer: threading.Timer) -> None:
        with self._timers_lock:
            if self._timers.get(request_id) is not timer:
                return
            del self._timers[request_id]
        self.handle_inbound(message)

    def _remove_timeout(self, request_id: RequestID) -> None:
        with self._timers_lock:
            timer = self._timers.pop(request_id, None)
        if timer is not None:
            timer.cancel()

    def _register_app_response(self, inbound_message: InboundMessage) -> None:
        with self._lock:
            chain_id = inbound_message.chain_id
            if chain_id is None:
                logger.error("Could not get chainID from message")
                inbound_message.on_finished_handling()
                return
            request_id = inbound_message.request_id
            if request_id is None:
                logger.error("Could not get requestID from message")
                inbound_message.on_finished_handling()
                return

            self._remove_timeout(
                RequestID(inbound_message.node_id, chain_id, request_id, inbound_message.op)
            )

            responses_queue = self._response_queues.get(request_id)
            if responses_queue is None:
                logger.debug("Could not find response channel for request %d", request_id)
                return
            responses_queue.put(inbound_message)

            responses = self._responses.get(request_id)
            if responses is None:
                logger.error("Could not find expected responses for request %d", request_id)
                return
            responses.received += 1
            if responses.received == responses.expected:
                responses_queue.put(None)
                del self._response_queues[request_id]
                del self._responses[request_id]