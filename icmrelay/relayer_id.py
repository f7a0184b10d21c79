"""Relayer identifiers: one per (source, destination, sender, receiver) route."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from icmrelay.ids import ID, ZERO_ADDRESS, Address, Hash, keccak256_hash

ALL_ALLOWED_ADDRESS = ZERO_ADDRESS
"""Stands in for an address when every address is allowed."""


class DestinationLike(Protocol):
    blockchain_id: ID
    addresses: Sequence[Address]


class SourceBlockchainLike(Protocol):
    blockchain_id: ID
    allowed_origin_sender_addresses: Sequence[Address]
    supported_destinations: Sequence[DestinationLike]


class RelayerConfigLike(Protocol):
    source_blockchains: Iterable[SourceBlockchainLike]


@dataclass(frozen=True)
class RelayerID:
    """Identifies the state kept by one application relayer."""

    source_blockchain_id: ID
    destination_blockchain_id: ID
    origin_sender_address: Address
    destination_address: Address
    id: Hash

    @classmethod
    def create(
        cls,
        source_blockchain_id: ID,
        destination_blockchain_id: ID,
        origin_sender_address: Address,
        destination_address: Address,
    ) -> RelayerID:
        return cls(
            source_blockchain_id,
            destination_blockchain_id,
            origin_sender_address,
            destination_address,
            calculate_relayer_id(
                source_blockchain_id,
                destination_blockchain_id,
                origin_sender_address,
                destination_address,
            ),
        )


def calculate_relayer_id(
    source_blockchain_id: ID,
    destination_blockchain_id: ID,
    origin_sender_address: Address,
    destination_address: Address,
) -> Hash:
    """Hash the dash-joined text forms of the four route components."""
    text = "-".join(
        str(part)
        for part in (
            source_blockchain_id,
            destination_blockchain_id,
            origin_sender_address,
            destination_address,
        )
    )
    return keccak256_hash(text.encode("utf-8"))


def get_source_blockchain_relayer_ids(source_blockchain: SourceBlockchainLike) -> list[RelayerID]:
    """Every relayer ID a source blockchain can give rise to."""
    source_addresses = list(source_blockchain.allowed_origin_sender_addresses) or [
        ALL_ALLOWED_ADDRESS
    ]
    return [
        RelayerID.create(
            source_blockchain.blockchain_id,
            destination.blockchain_id,
            source_address,
            destination_address,
        )
        for source_address in source_addresses
        for destination in source_blockchain.supported_destinations
        for destination_address in (list(destination.addresses) or [ALL_ALLOWED_ADDRESS])
    ]


def get_config_relayer_ids(cfg: RelayerConfigLike) -> list[RelayerID]:
    """Every relayer ID of every source blockchain in a configuration."""
    return [
        relayer_id
        for source in cfg.source_blockchains
        for relayer_id in get_source_blockchain_relayer_ids(source)
    ]