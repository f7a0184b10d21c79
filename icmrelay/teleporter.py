"""Relaying of Teleporter messages: deciding whether to deliver them, and delivering them."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence, TypeVar

from icmrelay.config import TeleporterConfig
from icmrelay.ids import ID, Address, Hash
from icmrelay.messages import DestinationClient, MessageHandler, MessageHandlerFactory

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_ACCEPTANCE_TIMEOUT = 30.0
"""Seconds to wait for a sent transaction to be included in a block."""

DEFAULT_RECEIPT_RETRY_INTERVAL = 0.1
"""Seconds between the first attempts to fetch a transaction receipt; the pause doubles."""

RECEIPT_STATUS_SUCCESSFUL = 1

_MAX_RETRY_INTERVAL = 2.0

_T = TypeVar("_T")


class TeleporterError(Exception):
    """Raised when a Teleporter message cannot be examined or delivered."""


@dataclass(frozen=True)
class TeleporterMessage:
    """A decoded Teleporter message."""

    message_nonce: int
    origin_sender_address: Address
    destination_blockchain_id: ID
    destination_address: Address
    required_gas_limit: int
    allowed_relayer_addresses: tuple[Address, ...] = ()
    receipts: tuple[Any, ...] = ()
    message: bytes = b""


@dataclass(frozen=True)
class UnsignedMessage:
    """An unsigned Warp message; ``encoded`` is its serialized form."""

    network_id: int
    source_chain_id: ID
    payload: bytes
    encoded: bytes = b""

    @property
    def id(self) -> ID:
        """The SHA-256 digest of the serialized message."""
        return ID(hashlib.sha256(self.encoded).digest())


@dataclass(frozen=True)
class ShouldSendMessageRequest:
    """What is handed to a decider service about a message."""

    network_id: int
    source_chain_id: bytes
    payload: bytes
    bytes_representation: bytes
    id: bytes


class Decider(Protocol):
    """An external service with the final say on whether a message is sent."""

    def should_send_message(self, request: ShouldSendMessageRequest) -> bool: ...


class AlwaysSendDecider:
    """The decider used when no decider service is configured: it approves everything."""

    def should_send_message(self, request: ShouldSendMessageRequest) -> bool:
        return True


class TeleporterCodec(Protocol):
    """Encoding and contract arithmetic of the Teleporter protocol."""

    def parse_message(self, payload: bytes) -> TeleporterMessage: ...

    def calculate_message_id(
        self,
        protocol_address: Address,
        source_blockchain_id: ID,
        destination_blockchain_id: ID,
        message_nonce: int,
    ) -> ID: ...

    def calculate_receive_message_gas_limit(
        self,
        num_signers: int,
        required_gas_limit: int,
        message_size: int,
        payload_size: int,
        num_receipts: int,
    ) -> int: ...

    def pack_receive_cross_chain_message(self, message_index: int, reward_address: Address) -> bytes: ...


class SignedMessage(Protocol):
    """A signed Warp message ready to be delivered."""

    source_chain_id: ID
    payload: bytes
    encoded: bytes

    @property
    def id(self) -> ID: ...

    def num_signers(self) -> int: ...


class MessengerClient(Protocol):
    """The chain client a destination client hands out for contract calls."""

    def message_received(self, contract_address: Address, message_id: ID) -> bool: ...

    def transaction_receipt(self, tx_hash: Hash) -> Any: ...


def is_allowed_relayer(allowed_relayers: Sequence[Address], eoa: Address) -> bool:
    """Report whether ``eoa`` may relay; an empty allow-list lets anyone relay."""
    if not allowed_relayers:
        return True
    return eoa in allowed_relayers


def _messenger_client(destination_client: DestinationClient) -> MessengerClient:
    client = destination_client.client()
    if not all(hasattr(client, name) for name in ("message_received", "transaction_receipt")):
        raise TypeError(
            f"Destination client for chain {destination_client.destination_blockchain_id()} "
            "is not an Ethereum client"
        )
    return client


def _with_retries(operation: Callable[[], _T], timeout: float, interval: float) -> _T:
    """Run ``operation`` until it succeeds, re-raising its last error once ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            return operation()
        except Exception as exc:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise
            logger.warning("Operation failed, retrying: %s", exc)
            time.sleep(min(interval, remaining))
            interval = min(interval * 2, _MAX_RETRY_INTERVAL)


class TeleporterMessageHandlerFactory(MessageHandlerFactory):
    """Creates handlers for Teleporter messages sent through one messenger contract."""

    def __init__(
        self,
        protocol_address: Address,
        settings: Mapping[str, Any],
        decider: Decider | None = None,
        parser: TeleporterCodec | None = None,
    ) -> None:
        if parser is None:
            raise ValueError("a Teleporter codec is required")
        config = TeleporterConfig.from_settings(settings)
        try:
            config.validate()
        except ValueError:
            logger.error("Invalid Teleporter config.")
            raise
        self.message_config = config
        self.protocol_address = protocol_address
        self.decider: Decider = decider if decider is not None else AlwaysSendDecider()
        self.codec = parser
        self.receipt_timeout = DEFAULT_BLOCK_ACCEPTANCE_TIMEOUT
        self.receipt_retry_interval = DEFAULT_RECEIPT_RETRY_INTERVAL

    def new_message_handler(self, unsigned_message: UnsignedMessage) -> TeleporterMessageHandler:
        try:
            teleporter_message = self.codec.parse_message(unsigned_message.payload)
        except Exception:
            logger.error(
                "Failed to parse teleporter message. warpMessageID=%s", unsigned_message.id
            )
            raise
        return TeleporterMessageHandler(self, unsigned_message, teleporter_message)


@dataclass
class TeleporterMessageHandler(MessageHandler):
    """Relays one Teleporter message."""

    factory: TeleporterMessageHandlerFactory
    unsigned_message: UnsignedMessage
    teleporter_message: TeleporterMessage
    _decider: Decider = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._decider = self.factory.decider

    def get_unsigned_message(self) -> UnsignedMessage:
        return self.unsigned_message

    def get_message_routing_info(self) -> tuple[ID, Address, ID, Address]:
        return (
            self.unsigned_message.source_chain_id,
            self.teleporter_message.origin_sender_address,
            self.teleporter_message.destination_blockchain_id,
            self.teleporter_message.destination_address,
        )

    def _message_id(self, source_chain_id: ID, destination_blockchain_id: ID) -> ID:
        try:
            return self.factory.codec.calculate_message_id(
                self.factory.protocol_address,
                source_chain_id,
                destination_blockchain_id,
                self.teleporter_message.message_nonce,
            )
        except Exception as exc:
            raise TeleporterError(f"failed to calculate Teleporter message ID: {exc}") from exc

    def should_send_message(self, destination_client: DestinationClient) -> bool:
        destination_blockchain_id = destination_client.destination_blockchain_id()
        message_id = self._message_id(
            self.unsigned_message.source_chain_id, destination_blockchain_id
        )
        required_gas_limit = self.teleporter_message.required_gas_limit
        block_gas_limit = destination_client.block_gas_limit()
        if required_gas_limit > block_gas_limit:
            logger.info(
                "Gas limit exceeds maximum threshold: destinationBlockchainID=%s "
                "teleporterMessageID=%s requiredGasLimit=%d blockGasLimit=%d",
                destination_blockchain_id,
                message_id,
                required_gas_limit,
                block_gas_limit,
            )
            return False

        sender_address = destination_client.sender_address()
        if not is_allowed_relayer(self.teleporter_message.allowed_relayer_addresses, sender_address):
            logger.info(
                "Relayer EOA not allowed to deliver this message. destinationBlockchainID=%s "
                "teleporterMessageID=%s",
                destination_blockchain_id,
                message_id,
            )
            return False

        messenger = _messenger_client(destination_client)
        try:
            delivered = messenger.message_received(self.factory.protocol_address, message_id)
        except Exception:
            logger.error(
                "Failed to check if message has been delivered to destination chain. "
                "destinationBlockchainID=%s teleporterMessageID=%s",
                destination_blockchain_id,
                message_id,
            )
            raise
        if delivered:
            logger.info(
                "Message already delivered to destination. destinationBlockchainID=%s "
                "teleporterMessageID=%s",
                destination_blockchain_id,
                message_id,
            )
            return False

        # An unavailable or failing decider leaves the decision already made in place.
        try:
            decision = self._ask_decider()
        except Exception as exc:
            logger.warning(
                "Error delegating to decider: teleporterMessageID=%s error=%s", message_id, exc
            )
            return True
        if not decision:
            logger.info(
                "Decider rejected message: teleporterMessageID=%s destinationBlockchainID=%s",
                message_id,
                destination_blockchain_id,
            )
        return decision

    def _ask_decider(self) -> bool:
        message = self.unsigned_message
        request = ShouldSendMessageRequest(
            network_id=message.network_id,
            source_chain_id=message.source_chain_id.raw,
            payload=message.payload,
            bytes_representation=message.encoded,
            id=message.id.raw,
        )
        return bool(self._decider.should_send_message(request))

    def send_message(
        self, signed_message: SignedMessage, destination_client: DestinationClient
    ) -> Hash:
        destination_blockchain_id = destination_client.destination_blockchain_id()
        message_id = self._message_id(signed_message.source_chain_id, destination_blockchain_id)
        logger.info(
            "Sending message to destination chain: destinationBlockchainID=%s "
            "warpMessageID=%s teleporterMessageID=%s",
            destination_blockchain_id,
            signed_message.id,
            message_id,
        )
        codec = self.factory.codec
        num_signers = signed_message.num_signers()
        gas_limit = codec.calculate_receive_message_gas_limit(
            num_signers,
            self.teleporter_message.required_gas_limit,
            len(signed_message.encoded),
            len(signed_message.payload),
            len(self.teleporter_message.receipts),
        )
        call_data = codec.pack_receive_cross_chain_message(
            0, Address.from_hex(self.factory.message_config.reward_address)
        )
        try:
            tx_hash = destination_client.send_tx(
                signed_message, self.factory.protocol_address.hex(), gas_limit, call_data
            )
        except Exception:
            logger.error(
                "Failed to send tx. destinationBlockchainID=%s teleporterMessageID=%s",
                destination_blockchain_id,
                message_id,
            )
            raise

        self._wait_for_receipt(destination_client, tx_hash, message_id)
        logger.info(
            "Delivered message to destination chain: destinationBlockchainID=%s "
            "teleporterMessageID=%s txHash=%s",
            destination_blockchain_id,
            message_id,
            tx_hash,
        )
        return tx_hash

    def _wait_for_receipt(
        self, destination_client: DestinationClient, tx_hash: Hash, message_id: ID
    ) -> None:
        messenger = _messenger_client(destination_client)
        try:
            receipt = _with_retries(
                lambda: messenger.transaction_receipt(tx_hash),
                self.factory.receipt_timeout,
                self.factory.receipt_retry_interval,
            )
        except Exception:
            logger.error(
                "Failed to get transaction receipt: teleporterMessageID=%s txHash=%s",
                message_id,
                tx_hash,
            )
            raise
        if receipt.status != RECEIPT_STATUS_SUCCESSFUL:
            logger.error(
                "Transaction failed: teleporterMessageID=%s txHash=%s", message_id, tx_hash
            )
            raise TeleporterError(f"transaction failed with status: {receipt.status}")