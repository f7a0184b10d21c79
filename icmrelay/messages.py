"""Interfaces that each message protocol implements to relay a single Warp message."""

from __future__ import annotations

import abc
from typing import Any, Protocol, runtime_checkable

from icmrelay.ids import ID, Address, Hash


@runtime_checkable
class DestinationClient(Protocol):
    """What a message handler needs from the client of a destination chain."""

    def destination_blockchain_id(self) -> ID: ...

    def block_gas_limit(self) -> int: ...

    def sender_address(self) -> Address: ...

    def client(self) -> Any: ...

    def send_tx(
        self, signed_message: Any, to_address: str, gas_limit: int, call_data: bytes
    ) -> Hash: ...


class MessageHandler(abc.ABC):
    """Relays one Warp message; a new handler is made for each message."""

    @abc.abstractmethod
    def should_send_message(self, destination_client: DestinationClient) -> bool:
        """Report whether the message should be sent to the destination chain."""

    @abc.abstractmethod
    def send_message(self, signed_message: Any, destination_client: DestinationClient) -> Hash:
        """Send the signed message and return the transaction hash."""

    @abc.abstractmethod
    def get_message_routing_info(self) -> tuple[ID, Address, ID, Address]:
        """Return (source chain ID, origin sender, destination chain ID, destination address)."""

    @abc.abstractmethod
    def get_unsigned_message(self) -> Any:
        """Return the unsigned Warp message being relayed."""


class MessageHandlerFactory(abc.ABC):
    """Creates message handlers for one message protocol."""

    @abc.abstractmethod
    def new_message_handler(self, unsigned_message: Any) -> MessageHandler:
        """Create a handler that relays ``unsigned_message``."""