import hashlib
from dataclasses import dataclass
from types import SimpleNamespace

import pytest

from icmrelay.config import ConfigError
from icmrelay.ids import EMPTY_ID, ID, Address, Hash
from icmrelay.teleporter import (
    AlwaysSendDecider,
    TeleporterError,
    TeleporterMessage,
    TeleporterMessageHandler,
    TeleporterMessageHandlerFactory,
    UnsignedMessage,
    is_allowed_relayer,
)

PROTOCOL = Address.from_hex("0xd81545385803bCD83bd59f58Ba2d2c0562387F83")
REWARD = "0x27aE10273D17Cd7e80de8580A51f476960626e5f"
SETTINGS = {"reward-address": REWARD}
DEST = ID.from_string("S4mMqUXe7vHsGiRAma6bv3CKnyaLssyAxmQ2KvFpX1KEvfFCD")
RELAYER = Address.from_hex("0x0123456789abcdef0123456789abcdef01234567")
BLOCK_GAS_LIMIT = 10_000
TX_HASH = Hash.from_hex("0x" + "ab" * 32)
GAS_LIMIT = 123_456

VALID = TeleporterMessage(
    message_nonce=1,
    origin_sender_address=RELAYER,
    destination_blockchain_id=DEST,
    destination_address=RELAYER,
    required_gas_limit=2,
    allowed_relayer_addresses=(RELAYER,),
    receipts=("receipt",),
    message=bytes([1, 2, 3, 4]),
)
TOO_HEAVY = TeleporterMessage(
    message_nonce=1,
    origin_sender_address=RELAYER,
    destination_blockchain_id=DEST,
    destination_address=RELAYER,
    required_gas_limit=BLOCK_GAS_LIMIT + 1,
    allowed_relayer_addresses=(RELAYER,),
)


class FakeCodec:
    def __init__(self, messages):
        self.messages = messages
        self.gas_args = None
        self.pack_args = None

    def parse_message(self, payload):
        try:
            return self.messages[payload]
        except KeyError:
            raise ValueError("cannot unpack teleporter message") from None

    def calculate_message_id(self, protocol_address, source, destination, nonce):
        data = protocol_address.raw + source.raw + destination.raw + nonce.to_bytes(32, "big")
        return ID(hashlib.sha256(data).digest())

    def calculate_receive_message_gas_limit(self, num_signers, required, size, payload_size, receipts):
        self.gas_args = (num_signers, required, size, payload_size, receipts)
        return GAS_LIMIT

    def pack_receive_cross_chain_message(self, index, reward_address):
        self.pack_args = (index, reward_address)
        return b"call-data"


class BrokenIDCodec(FakeCodec):
    def calculate_message_id(self, protocol_address, source, destination, nonce):
        raise ValueError("bad nonce")


class FakeMessenger:
    def __init__(self, delivered=False, receipts=()):
        self.delivered = delivered
        self.calls = []
        self.receipts = list(receipts)

    def message_received(self, contract_address, message_id):
        self.calls.append((contract_address, message_id))
        return self.delivered

    def transaction_receipt(self, tx_hash):
        result = self.receipts.pop(0) if len(self.receipts) > 1 else self.receipts[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeDestination:
    def __init__(self, sender=RELAYER, eth_client=None):
        self.sender = sender
        self.eth_client = eth_client if eth_client is not None else FakeMessenger()
        self.client_calls = 0
        self.sender_calls = 0
        self.sent = []

    def destination_blockchain_id(self):
        return DEST

    def block_gas_limit(self):
        return BLOCK_GAS_LIMIT

    def sender_address(self):
        self.sender_calls += 1
        return self.sender

    def client(self):
        self.client_calls += 1
        return self.eth_client

    def send_tx(self, signed_message, to_address, gas_limit, call_data):
        self.sent.append((signed_message, to_address, gas_limit, call_data))
        return TX_HASH


class RecordingDecider:
    def __init__(self, decision):
        self.decision = decision
        self.requests = []

    def should_send_message(self, request):
        self.requests.append(request)
        return self.decision


class FailingDecider:
    def should_send_message(self, request):
        raise ConnectionError("decider unavailable")


@dataclass
class FakeSigned:
    source_chain_id: ID
    payload: bytes
    encoded: bytes
    signers: int = 3

    @property
    def id(self):
        return ID(hashlib.sha256(self.encoded).digest())

    def num_signers(self):
        return self.signers


def unsigned(payload=b"valid"):
    return UnsignedMessage(0, EMPTY_ID, payload, b"encoded-" + payload)


def make_factory(decider=None, codec=None):
    codec = codec or FakeCodec({b"valid": VALID, b"heavy": TOO_HEAVY})
    return TeleporterMessageHandlerFactory(PROTOCOL, SETTINGS, decider, codec)


def test_valid_message_should_be_sent():
    codec = FakeCodec({b"valid": VALID})
    handler = make_factory(codec=codec).new_message_handler(unsigned())
    destination = FakeDestination()
    assert handler.should_send_message(destination) is True
    expected_id = codec.calculate_message_id(PROTOCOL, EMPTY_ID, DEST, 1)
    assert destination.eth_client.calls == [(PROTOCOL, expected_id)]
    assert destination.sender_calls == 1
    assert destination.client_calls == 1


def test_invalid_message_fails_to_parse():
    with pytest.raises(ValueError):
        make_factory().new_message_handler(unsigned(b"valid" + bytes([1, 2, 3, 4])))


def test_not_allowed_relayer_is_rejected_without_contract_call():
    handler = make_factory().new_message_handler(unsigned())
    destination = FakeDestination(sender=Address(bytes(20)))
    assert handler.should_send_message(destination) is False
    assert destination.sender_calls == 1
    assert destination.client_calls == 0


def test_already_delivered_message_is_not_sent():
    handler = make_factory().new_message_handler(unsigned())
    destination = FakeDestination(eth_client=FakeMessenger(delivered=True))
    assert handler.should_send_message(destination) is False
    assert destination.client_calls == 1


def test_gas_limit_exceeded_is_rejected_before_sender_check():
    handler = make_factory().new_message_handler(unsigned(b"heavy"))
    destination = FakeDestination()
    assert handler.should_send_message(destination) is False
    assert destination.sender_calls == 0
    assert destination.client_calls == 0


def test_decider_rejection_and_request_contents():
    decider = RecordingDecider(False)
    message = unsigned()
    handler = make_factory(decider=decider).new_message_handler(message)
    assert handler.should_send_message(FakeDestination()) is False
    (request,) = decider.requests
    assert request.network_id == 0
    assert request.source_chain_id == EMPTY_ID.raw
    assert request.payload == b"valid"
    assert request.bytes_representation == b"encoded-valid"
    assert request.id == message.id.raw


def test_decider_failure_falls_back_to_sending():
    handler = make_factory(decider=FailingDecider()).new_message_handler(unsigned())
    assert handler.should_send_message(FakeDestination()) is True


def test_message_id_failure_raises():
    codec = BrokenIDCodec({b"valid": VALID})
    handler = make_factory(codec=codec).new_message_handler(unsigned())
    with pytest.raises(TeleporterError, match="failed to calculate Teleporter message ID"):
        handler.should_send_message(FakeDestination())


def test_non_ethereum_client_raises_type_error():
    handler = make_factory().new_message_handler(unsigned())
    destination = FakeDestination(eth_client=object())
    with pytest.raises(TypeError):
        handler.should_send_message(destination)


def test_always_send_decider_approves():
    assert AlwaysSendDecider().should_send_message(None) is True


def test_invalid_reward_address_rejected():
    with pytest.raises(ConfigError):
        TeleporterMessageHandlerFactory(
            PROTOCOL,
            {"reward-address": "0x27aE10273D17Cd7e80de8580A51f476960626e5"},
            None,
            FakeCodec({}),
        )


def test_routing_info_and_unsigned_message():
    message = unsigned()
    handler = make_factory().new_message_handler(message)
    assert isinstance(handler, TeleporterMessageHandler)
    assert handler.get_message_routing_info() == (EMPTY_ID, RELAYER, DEST, RELAYER)
    assert handler.get_unsigned_message() is message


@pytest.mark.parametrize(
    "allowed, eoa, expected",
    [
        ((), RELAYER, True),
        ((RELAYER,), RELAYER, True),
        ((RELAYER,), Address(bytes(20)), False),
    ],
)
def test_is_allowed_relayer(allowed, eoa, expected):
    assert is_allowed_relayer(allowed, eoa) is expected


def test_send_message_delivers_and_returns_hash():
    codec = FakeCodec({b"valid": VALID})
    factory = make_factory(codec=codec)
    handler = factory.new_message_handler(unsigned())
    destination = FakeDestination(eth_client=FakeMessenger(receipts=[SimpleNamespace(status=1)]))
    signed = FakeSigned(EMPTY_ID, b"valid", b"signed-bytes")
    assert handler.send_message(signed, destination) == TX_HASH
    assert destination.sent == [(signed, PROTOCOL.hex(), GAS_LIMIT, b"call-data")]
    assert codec.pack_args == (0, Address.from_hex(REWARD))
    assert codec.gas_args == (3, 2, len(b"signed-bytes"), len(b"valid"), 1)


def test_send_message_retries_receipt():
    factory = make_factory()
    factory.receipt_retry_interval = 0.01
    handler = factory.new_message_handler(unsigned())
    messenger = FakeMessenger(receipts=[ConnectionError("not yet"), SimpleNamespace(status=1)])
    destination = FakeDestination(eth_client=messenger)
    signed = FakeSigned(EMPTY_ID, b"valid", b"signed-bytes")
    assert handler.send_message(signed, destination) == TX_HASH
    assert messenger.receipts == [SimpleNamespace(status=1)]


def test_send_message_failed_transaction_raises():
    handler = make_factory().new_message_handler(unsigned())
    destination = FakeDestination(eth_client=FakeMessenger(receipts=[SimpleNamespace(status=0)]))
    signed = FakeSigned(EMPTY_ID, b"valid", b"signed-bytes")
    with pytest.raises(TeleporterError, match="transaction failed with status: 0"):
        handler.send_message(signed, destination)


def test_send_message_receipt_timeout_reraises():
    factory = make_factory()
    factory.receipt_timeout = 0.05
    factory.receipt_retry_interval = 0.01
    handler = factory.new_message_handler(unsigned())
    destination = FakeDestination(eth_client=FakeMessenger(receipts=[ConnectionError("missing")]))
    signed = FakeSigned(EMPTY_ID, b"valid", b"signed-bytes")
    with pytest.raises(ConnectionError, match="missing"):
        handler.send_message(signed, destination)