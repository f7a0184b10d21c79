# icmrelay

Building blocks for a relayer that carries cross-chain messages between
blockchains.

## What is in the package

- `icmrelay.ids`: the value types `ID` (32 bytes, CB58 text), `NodeID`
  (20 bytes, `NodeID-` followed by CB58), `Address` (20 bytes, checksummed
  hex) and `Hash` (32 bytes, lower-case hex), plus `keccak256_hash(data)` and
  `is_hex_address(value)`.
- `icmrelay.config`: `APIConfig` (with `validate()` and `request_options()`),
  `PeerConfig` (with `validate()`, `node_id` and `ip`), `PeersConfig`,
  `TeleporterConfig` and `OffChainRegistryConfig` (each with
  `from_settings(settings)` and `validate()`). Invalid values raise
  `ConfigError`, a `ValueError`.
- `icmrelay.relayer_id`: `RelayerID.create(...)`, `calculate_relayer_id(...)`
  (Keccak-256 of the four route components joined with `-`),
  `get_source_blockchain_relayer_ids(source)` and `get_config_relayer_ids(cfg)`.
  An empty address list stands for "all addresses" and is represented by the
  zero address `ALL_ALLOWED_ADDRESS`.
- `icmrelay.database`: the `RelayerDatabase` interface with two backends,
  `JSONFileStorage` (one JSON file per relayer ID in a directory, written
  through a temporary file and a rename) and `RedisDatabase` (keys of the form
  `<relayer id hex>-<key>`; a client object may be passed in). Also
  `new_database(cfg)`, `get_latest_processed_block_height(db, relayer_id)`,
  `calculate_starting_block_height(db, relayer_id, configured_height, current_height)`
  and `is_key_not_found_error(err)`.
- `icmrelay.metrics`: `Counter`, `Histogram`, `MetricsRegistry`,
  `exponential_buckets_range(minimum, maximum, count)` and
  `AppRequestNetworkMetrics`.
- `icmrelay.external_handler`: `RelayerExternalHandler`, which routes inbound
  `APP_RESPONSE` and `APP_ERROR` messages to the queue opened with
  `register_request_id(request_id, n)`. The queue receives the messages and
  then `None` once `n` have arrived. `register_app_request(request_id)` starts a
  timer that delivers a timeout error unless the response comes first.
- `icmrelay.messages`: the `MessageHandler` and `MessageHandlerFactory`
  interfaces and the `DestinationClient` protocol.
- `icmrelay.teleporter`: `TeleporterMessageHandlerFactory` and
  `TeleporterMessageHandler`. The handler checks the gas limit, the allowed
  relayers (`is_allowed_relayer`) and prior delivery, and then asks a decider.
  `AlwaysSendDecider` is the default decider. A decider that fails leaves the
  answer at "send".
- `icmrelay.network`: `AppRequestNetwork` keeps a `ValidatorManager` in line
  with the proposed validator sets of tracked subnets and reports connected
  stake through `get_connected_canonical_validators(subnet_id)`. Weight is
  counted once per BLS key (`calculate_connected_weight`).
  `get_network_health_func(network, subnet_ids)` returns a check that raises
  `ConnectionError` below a 67% quorum.

## Example

```python
from icmrelay.database import DataKey, JSONFileStorage, calculate_starting_block_height
from icmrelay.ids import Address, ID
from icmrelay.relayer_id import RelayerID

source = ID.from_string("S4mMqUXe7vHsGiRAma6bv3CKnyaLssyAxmQ2KvFpX1KEvfFCD")
destination = ID.from_string("2TGBXcnwx5PqiXWiqxAKUaNSqDguXNh1mxnp82jui68hxJSZAx")
zero = Address.from_hex("0x0000000000000000000000000000000000000000")

relayer_id = RelayerID.create(source, destination, zero, zero)

storage = JSONFileStorage("./relayer-state", [relayer_id])
storage.put(relayer_id.id, DataKey.LATEST_PROCESSED_BLOCK, b"150")

start = calculate_starting_block_height(storage, relayer_id, 100, 200)
print(start)  # 150
```

Lookups that find nothing raise `KeyNotFoundError` or
`RelayerIDNotFoundError`. `is_key_not_found_error(err)` recognises both.

## What the package does not do

- It has no command-line program and no long-running relayer service.
- It does not connect to peers or call chain APIs itself. You supply these
  objects:
  - `AppRequestNetwork` needs a peer-to-peer network object and a
    validator-state client.
  - Teleporter handlers need a `DestinationClient`.
- It does not decode or encode Teleporter contract data.
  `TeleporterMessageHandlerFactory` needs a codec passed as `parser`. Without
  one it raises `ValueError`.
- It has a configuration record for the off-chain registry protocol, but no
  message handler for it.

## Running the tests

```
pip install -e ".[test]"
pytest
```