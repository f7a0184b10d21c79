"""Configuration records for API endpoints, peers and message protocols."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from icmrelay.ids import ID, NodeID, is_hex_address

_SCHEME = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*):")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


def _parse_request_uri(raw: str) -> None:
    """Check ``raw`` the way an HTTP request URI is checked; raise ValueError if invalid."""
    if not raw:
        raise ValueError("empty url")
    if any(ord(char) < 0x20 or ord(char) == 0x7F for char in raw):
        raise ValueError("invalid control character in URL")
    if raw == "*":
        return
    if raw.startswith(":"):
        raise ValueError("missing protocol scheme")
    match = _SCHEME.match(raw)
    scheme = match.group(1) if match else ""
    rest = raw[match.end():] if match else raw
    rest = rest.split("?", 1)[0]
    if not rest.startswith("/"):
        if scheme:
            return
        raise ValueError("invalid URI for request")
    if scheme and rest.startswith("//"):
        authority = rest[2:].split("/", 1)[0]
        host = authority.rpartition("@")[2]
        if host.startswith("["):
            close = host.find("]")
            if close < 0:
                raise ValueError("missing ']' in host")
            after = host[close + 1:]
            if after and not after.startswith(":"):
                raise ValueError(f"invalid port {after!r} after host")
            port = after[1:]
        else:
            _, separator, port = host.rpartition(":")
            if not separator:
                port = ""
        if port and not (port.isascii() and port.isdigit()):
            raise ValueError(f"invalid port {':' + port!r} after host")


def _parse_addr_port(value: str) -> tuple[IPAddress, int]:
    host, separator, port_text = value.rpartition(":")
    if not separator:
        raise ValueError(f"not an ip:port: {value!r}")
    if host.startswith("["):
        if not host.endswith("]"):
            raise ValueError(f"missing ']' in {value!r}")
        address = ipaddress.ip_address(host[1:-1])
        if address.version != 6:
            raise ValueError(f"bracketed address is not IPv6: {value!r}")
    else:
        if ":" in host:
            raise ValueError("ipv6 addresses must be surrounded by square brackets")
        address = ipaddress.IPv4Address(host)
    if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > 0xFFFF:
        raise ValueError(f"invalid port {port_text!r}")
    return address, int(port_text)


def _string_setting(settings: Mapping[str, Any], key: str) -> str:
    if key in settings:
        value = settings[key]
    else:
        value = next(
            (v for k, v in settings.items() if isinstance(k, str) and k.lower() == key.lower()),
            "",
        )
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"setting {key!r} must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class RequestOptions:
    """Query parameters and HTTP headers to attach to every API call."""

    query_params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class APIConfig:
    """Base URL of an API together with its query parameters and headers."""

    base_url: str = ""
    query_params: dict[str, str] = field(default_factory=dict)
    http_headers: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        try:
            _parse_request_uri(self.base_url)
        except ValueError as exc:
            raise ConfigError(f"invalid base URL: {exc}") from exc

    def request_options(self) -> RequestOptions:
        return RequestOptions(dict(self.query_params), dict(self.http_headers))


@dataclass
class PeerConfig:
    """A manually tracked peer: its node ID and its ``ip:port`` address."""

    id: str = ""
    address: str = ""
    _node_id: NodeID | None = field(default=None, init=False, repr=False, compare=False)
    _ip: tuple[IPAddress, int] | None = field(default=None, init=False, repr=False, compare=False)

    def validate(self) -> None:
        try:
            node_id = NodeID.from_string(self.id)
            ip = _parse_addr_port(self.address)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        self._node_id = node_id
        self._ip = ip

    @property
    def node_id(self) -> NodeID | None:
        """The parsed node ID, or None before validation."""
        return self._node_id

    @property
    def ip(self) -> tuple[IPAddress, int] | None:
        """The parsed (address, port) pair, or None before validation."""
        return self._ip


@dataclass
class PeersConfig:
    """What is needed to stand up an app-request network."""

    info_api: APIConfig
    p_chain_api: APIConfig
    allow_private_ips: bool = False
    tracked_subnets: set[ID] = field(default_factory=set)


@dataclass
class TeleporterConfig:
    """Settings of the Teleporter message protocol."""

    reward_address: str = ""

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> TeleporterConfig:
        return cls(reward_address=_string_setting(settings, "reward-address"))

    def validate(self) -> None:
        if not is_hex_address(self.reward_address):
            raise ConfigError(
                f"invalid reward address for EVM source subnet: {self.reward_address}"
            )


@dataclass
class OffChainRegistryConfig:
    """Settings of the off-chain registry message protocol."""

    teleporter_registry_address: str = ""

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> OffChainRegistryConfig:
        return cls(
            teleporter_registry_address=_string_setting(settings, "teleporter-registry-address")
        )

    def validate(self) -> None:
        if not is_hex_address(self.teleporter_registry_address):
            raise ConfigError(
                f"invalid address for TeleporterRegistry: {self.teleporter_registry_address}"
            )