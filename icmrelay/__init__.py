"""Relayer identifiers, state storage, validator tracking and message handling for cross-chain relaying."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "database",
    "external_handler",
    "ids",
    "messages",
    "metrics",
    "network",
    "relayer_id",
    "teleporter",
]