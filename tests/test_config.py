import ipaddress

import pytest

from icmrelay.config import (
    APIConfig,
    ConfigError,
    OffChainRegistryConfig,
    PeerConfig,
    RequestOptions,
    TeleporterConfig,
)
from icmrelay.ids import NodeID

VALID_REWARD = "0x27aE10273D17Cd7e80de8580A51f476960626e5f"
INVALID_REWARD = "0x27aE10273D17Cd7e80de8580A51f476960626e5"
REGISTRY_ADDRESS = "0xd81545385803bCD83bd59f58Ba2d2c0562387F83"


def test_teleporter_config_valid():
    config = TeleporterConfig(reward_address=VALID_REWARD)
    config.validate()
    assert config.reward_address == VALID_REWARD


def test_teleporter_config_invalid():
    with pytest.raises(ConfigError, match="invalid reward address"):
        TeleporterConfig(reward_address=INVALID_REWARD).validate()


def test_teleporter_config_from_settings():
    config = TeleporterConfig.from_settings({"reward-address": VALID_REWARD})
    assert config.reward_address == VALID_REWARD


def test_teleporter_config_from_settings_missing_key_fails_validation():
    config = TeleporterConfig.from_settings({})
    assert config.reward_address == ""
    with pytest.raises(ConfigError):
        config.validate()


def test_teleporter_config_from_settings_wrong_type():
    with pytest.raises(ConfigError):
        TeleporterConfig.from_settings({"reward-address": 42})


def test_off_chain_registry_config():
    config = OffChainRegistryConfig.from_settings(
        {"teleporter-registry-address": REGISTRY_ADDRESS}
    )
    config.validate()
    assert config.teleporter_registry_address == REGISTRY_ADDRESS


def test_off_chain_registry_config_invalid():
    config = OffChainRegistryConfig(teleporter_registry_address="not-an-address")
    with pytest.raises(ConfigError, match="TeleporterRegistry"):
        config.validate()


@pytest.mark.parametrize(
    "url",
    [
        "http://localhost:9650",
        "https://api.example.com/ext/bc/C/rpc",
        "http://[::1]:9650/ext/info",
        "/relative/path",
    ],
)
def test_api_config_valid_urls(url):
    config = APIConfig(base_url=url)
    config.validate()
    assert config.base_url == url


@pytest.mark.parametrize(
    "url",
    ["", "not a url", ":9650", "http://host:port", "http://exa\x00mple.com"],
)
def test_api_config_invalid_urls(url):
    with pytest.raises(ConfigError, match="invalid base URL"):
        APIConfig(base_url=url).validate()


def test_request_options_copies_params_and_headers():
    config = APIConfig(
        base_url="https://api.example.com",
        query_params={"network": "fuji"},
        http_headers={"X-Trace": "on"},
    )
    options = config.request_options()
    assert options == RequestOptions({"network": "fuji"}, {"X-Trace": "on"})
    options.query_params["network"] = "mainnet"
    assert config.query_params == {"network": "fuji"}


def test_peer_config_validate():
    node = NodeID(bytes(range(20)))
    peer = PeerConfig(id=str(node), address="127.0.0.1:9651")
    assert peer.node_id is None
    peer.validate()
    assert peer.node_id == node
    assert peer.ip == (ipaddress.IPv4Address("127.0.0.1"), 9651)


def test_peer_config_ipv6():
    peer = PeerConfig(id=str(NodeID(bytes(20))), address="[::1]:9651")
    peer.validate()
    assert peer.ip == (ipaddress.IPv6Address("::1"), 9651)


@pytest.mark.parametrize(
    "address",
    ["127.0.0.1", "::1:9651", "127.0.0.1:70000", "256.0.0.1:9651", "[127.0.0.1]:9651", "1.2.3.4:"],
)
def test_peer_config_invalid_address(address):
    peer = PeerConfig(id=str(NodeID(bytes(20))), address=address)
    with pytest.raises(ConfigError):
        peer.validate()
    assert peer.ip is None


def test_peer_config_invalid_node_id():
    peer = PeerConfig(id="not-a-node", address="127.0.0.1:9651")
    with pytest.raises(ConfigError):
        peer.validate()
    assert peer.node_id is None