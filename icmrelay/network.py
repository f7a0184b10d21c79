"""Tracks subnet validators and how much of their stake the peer network is connected to."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from icmrelay.external_handler import InboundMessage, RelayerExternalHandler, RequestID
from icmrelay.ids import EMPTY_ID, ID, NodeID
from icmrelay.metrics import AppRequestNetworkMetrics

logger = logging.getLogger(__name__)

VALIDATOR_REFRESH_PERIOD = 5.0
"""Seconds between refreshes of the tracked validator sets."""

PRIMARY_NETWORK_ID = EMPTY_ID

WARP_DEFAULT_QUORUM_NUMERATOR = 67
WARP_QUORUM_DENOMINATOR = 100


@dataclass(frozen=True)
class Validator:
    """A Warp validator: one BLS key, its weight, and the nodes that share the key."""

    public_key_bytes: bytes
    weight: int
    node_ids: tuple[NodeID, ...] = ()
    public_key: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "node_ids", tuple(self.node_ids))


@dataclass
class ConnectedCanonicalValidators:
    """A canonical validator set together with the weight this network is connected to."""

    connected_weight: int
    total_validator_weight: int
    validator_set: list[Validator]
    node_validator_index_map: dict[NodeID, int] = field(default_factory=dict)

    def get_validator(self, node_id: NodeID) -> tuple[Validator, int]:
        """Return the validator behind ``node_id`` and its canonical index."""
        index = self.node_validator_index_map[node_id]
        return self.validator_set[index], index


class PeerInfo(Protocol):
    id: NodeID


class P2PNetwork(Protocol):
    """The peer-to-peer network the relayer talks through."""

    def peer_info(self, node_ids: Sequence[NodeID]) -> Iterable[PeerInfo]: ...

    def send(self, msg: Any, node_ids: set[NodeID], subnet_id: ID, allower: Any) -> set[NodeID]: ...

    def start_close(self) -> None: ...


class ValidatorOutput(Protocol):
    node_id: NodeID
    public_key: Any
    weight: int


class CanonicalValidatorState(Protocol):
    """Source of validator sets, normally the P-Chain API."""

    def get_current_canonical_validator_set(self, subnet_id: ID) -> tuple[list[Validator], int]: ...

    def get_proposed_validators(self, subnet_id: ID) -> Mapping[NodeID, ValidatorOutput]: ...

    def get_subnet_id(self, blockchain_id: ID) -> ID: ...


@dataclass
class _Staker:
    public_key: Any
    weight: int


class ValidatorManager:
    """Holds the staking weight of every validator, per subnet."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subnets: dict[ID, dict[NodeID, _Staker]] = {}

    def add_staker(self, subnet_id: ID, node_id: NodeID, public_key: Any, weight: int) -> None:
        if weight <= 0:
            raise ValueError("weight must be non-zero")
        with self._lock:
            stakers = self._subnets.setdefault(subnet_id, {})
            if node_id in stakers:
                raise ValueError(f"duplicate validator {node_id} in subnet {subnet_id}")
            stakers[node_id] = _Staker(public_key, weight)

    def remove_weight(self, subnet_id: ID, node_id: NodeID, weight: int) -> None:
        if weight <= 0:
            raise ValueError("weight must be non-zero")
        with self._lock:
            stakers = self._subnets.get(subnet_id, {})
            staker = stakers.get(node_id)
            if staker is None:
                raise KeyError(f"missing validator {node_id} in subnet {subnet_id}")
            if weight > staker.weight:
                raise ValueError("weight too large")
            staker.weight -= weight
            if staker.weight == 0:
                del stakers[node_id]
                if not stakers:
                    del self._subnets[subnet_id]

    def get_weight(self, subnet_id: ID, node_id: NodeID) -> int:
        with self._lock:
            staker = self._subnets.get(subnet_id, {}).get(node_id)
            return staker.weight if staker is not None else 0

    def get_validator_ids(self, subnet_id: ID) -> list[NodeID]:
        with self._lock:
            return list(self._subnets.get(subnet_id, {}))

    def get_validator(self, subnet_id: ID, node_id: NodeID) -> Validator | None:
        """Return the validator registered for ``node_id``, or None if there is none."""
        with self._lock:
            staker = self._subnets.get(subnet_id, {}).get(node_id)
            if staker is None:
                return None
            key_bytes = staker.public_key if isinstance(staker.public_key, bytes) else b""
            return Validator(key_bytes, staker.weight, (node_id,), staker.public_key)


class AppRequestNetwork:
    """Keeps validator sets of tracked subnets current and sends app requests to them."""

    def __init__(
        self,
        network: P2PNetwork,
        validator_client: CanonicalValidatorState,
        handler: RelayerExternalHandler | None = None,
        metrics: AppRequestNetworkMetrics | None = None,
        tracked_subnets: Iterable[ID] = (),
    ) -> None:
        self._network = network
        self._validator_client = validator_client
        self._handler = handler
        self._metrics = metrics if metrics is not None else AppRequestNetworkMetrics()
        self._lock = threading.Lock()
        self._tracked_subnets: set[ID] = set(tracked_subnets)
        self._manager = ValidatorManager()
        self._stop = threading.Event()
        self._updater: threading.Thread | None = None

    @property
    def tracked_subnets(self) -> frozenset[ID]:
        with self._lock:
            return frozenset(self._tracked_subnets)

    @property
    def validator_manager(self) -> ValidatorManager:
        return self._manager

    @property
    def metrics(self) -> AppRequestNetworkMetrics:
        return self._metrics

    def track_subnet(self, subnet_id: ID) -> None:
        """Start tracking ``subnet_id`` and load its validators."""
        with self._lock:
            if subnet_id in self._tracked_subnets:
                return
            logger.debug("Tracking subnet %s", subnet_id)
            self._tracked_subnets.add(subnet_id)
        try:
            self.update_validator_set(subnet_id)
        except Exception as exc:
            logger.warning("Failed to update validators of subnet %s: %s", subnet_id, exc)

    def update_validator_set(self, subnet_id: ID) -> None:
        """Bring the manager's validators for ``subnet_id`` in line with the proposed set."""
        with self._lock:
            logger.debug("Fetching validators for subnet ID %s", subnet_id)
            validators = dict(self._validator_client.get_proposed_validators(subnet_id))

            for node_id in self._manager.get_validator_ids(subnet_id):
                if node_id not in validators:
                    logger.debug("Removing validator %s from subnet %s", node_id, subnet_id)
                    weight = self._manager.get_weight(subnet_id, node_id)
                    self._manager.remove_weight(subnet_id, node_id, weight)

            for output in validators.values():
                if self._manager.get_validator(subnet_id, output.node_id) is None:
                    logger.debug("Adding validator %s to subnet %s", output.node_id, subnet_id)
                    self._manager.add_staker(
                        subnet_id, output.node_id, output.public_key, output.weight
                    )

    def start_update_validators(self) -> None:
        """Refresh validators now and then every refresh period, in a background thread."""
        if self._updater is not None:
            return
        self._updater = threading.Thread(
            target=self._update_loop, name="validator-updater", daemon=True
        )
        self._updater.start()

    def _update_loop(self) -> None:
        while not self._stop.is_set():
            for subnet_id in (PRIMARY_NETWORK_ID, *self.tracked_subnets):
                try:
                    self.update_validator_set(subnet_id)
                except Exception as exc:
                    logger.debug("Failed to update validators of subnet %s: %s", subnet_id, exc)
            self._stop.wait(VALIDATOR_REFRESH_PERIOD)

    def get_connected_canonical_validators(self, subnet_id: ID) -> ConnectedCanonicalValidators:
        """Return the canonical validator set of ``subnet_id`` and the connected weight."""
        started = time.monotonic()
        try:
            validator_set, total_weight = (
                self._validator_client.get_current_canonical_validator_set(subnet_id)
            )
        finally:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._metrics.p_chain_api_call_latency_ms.observe(float(elapsed_ms))
        validator_set = list(validator_set)

        # Requests go to nodes, while signatures belong to validators, so map each node to its validator.
        index_map: dict[NodeID, int] = {}
        for index, validator in enumerate(validator_set):
            for node_id in validator.node_ids:
                index_map[node_id] = index

        connected = {
            peer.id for peer in self._network.peer_info(list(index_map)) if peer.id in index_map
        }
        return ConnectedCanonicalValidators(
            connected_weight=calculate_connected_weight(validator_set, index_map, connected),
            total_validator_weight=total_weight,
            validator_set=validator_set,
            node_validator_index_map=index_map,
        )

    def send(self, msg: Any, node_ids: set[NodeID], subnet_id: ID, allower: Any) -> set[NodeID]:
        return self._network.send(msg, node_ids, subnet_id, allower)

    def _require_handler(self) -> RelayerExternalHandler:
        if self._handler is None:
            raise RuntimeError("no external handler configured")
        return self._handler

    def register_app_request(self, request_id: RequestID) -> None:
        self._require_handler().register_app_request(request_id)

    def register_request_id(self, request_id: int, num_expected_responses: int):
        """Open the queue of responses to ``request_id``."""
        return self._require_handler().register_request_id(request_id, num_expected_responses)

    def get_subnet_id(self, blockchain_id: ID) -> ID:
        return self._validator_client.get_subnet_id(blockchain_id)

    def shutdown(self) -> None:
        self._stop.set()
        if self._handler is not None:
            self._handler.shutdown()
        self._network.start_close()


def calculate_connected_weight(
    validator_set: Sequence[Validator],
    node_validator_index_map: Mapping[NodeID, int],
    connected_nodes: Iterable[NodeID],
) -> int:
    """Sum the weight of connected validators, counting each BLS key once."""
    seen_keys: set[bytes] = set()
    weight = 0
    for node_id in connected_nodes:
        index = node_validator_index_map.get(node_id)
        if index is None:
            continue
        validator = validator_set[index]
        if validator.public_key_bytes in seen_keys:
            continue
        seen_keys.add(validator.public_key_bytes)
        weight += validator.weight
    return weight


def _stake_weight_exceeds_threshold(connected_weight: int, total_weight: int) -> bool:
    return connected_weight * WARP_QUORUM_DENOMINATOR >= total_weight * WARP_DEFAULT_QUORUM_NUMERATOR


def get_network_health_func(
    network: AppRequestNetwork, subnet_ids: Iterable[ID]
) -> Callable[[], None]:
    """Return a check that raises ConnectionError unless enough stake is connected."""
    subnet_ids = list(subnet_ids)

    def check() -> None:
        for subnet_id in subnet_ids:
            try:
                connected = network.get_connected_canonical_validators(subnet_id)
            except Exception as exc:
                raise ConnectionError(
                    f"failed to get connected validators: {subnet_id}, {exc}"
                ) from exc
            if not _stake_weight_exceeds_threshold(
                connected.connected_weight, connected.total_validator_weight
            ):
                raise ConnectionError("failed to connect to a threshold of stake")

    return check