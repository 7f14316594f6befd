"""
Tests for the Normalizer / Decoder.
"""

import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from chain_clients.models import ChainFamily, RawLog, RawTransaction
from interaction_fetcher.normalizer import (
    AbiSelectorIndex,
    evm_event_topic,
    evm_function_selector,
    normalize,
    normalize_event,
    sn_keccak,
    to_native,
)


CONTRACT = "0x" + "ab" * 20
SENDER = "0x" + "11" * 20

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
SN_TRANSFER_SELECTOR = "0x83afd3f4caedc6eebf44246fe54e38c95e3179a5ec9ea81740eca5b482d12e"
SN_TRANSFER_EVENT = "0x99cd8bde557814842a3121e8ddfd433a539b8c9f14bf31ebf108d12e6196e9"

ERC20_ABI = [
    {
        "type": "function",
        "name": "transfer",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "Transfer",
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "submit",
        "inputs": [
            {
                "name": "order",
                "type": "tuple",
                "components": [{"name": "id", "type": "uint256"}, {"name": "owner", "type": "address"}],
            },
            {"name": "proofs", "type": "bytes32[]"},
        ],
    },
]

CAIRO_ABI = [
    {
        "type": "interface",
        "name": "openzeppelin::token::erc20::interface::IERC20",
        "items": [
            {"type": "function", "name": "transfer", "inputs": [], "outputs": []},
            {"type": "function", "name": "approve", "inputs": [], "outputs": []},
        ],
    },
    {"type": "event", "name": "openzeppelin::token::erc20::ERC20::Transfer", "kind": "struct", "members": []},
    {
        "type": "event",
        "name": "openzeppelin::token::erc20::ERC20::Event",
        "kind": "enum",
        "variants": [{"name": "Approval", "type": "openzeppelin::token::erc20::ERC20::Approval"}],
    },
]


def evm_tx(**overrides) -> RawTransaction:
    fields = dict(
        hash="0x" + "01" * 32,
        block_number=1005,
        from_address=SENDER,
        to_address=CONTRACT,
        value=1_500_000_000_000_000_000,
        gas_used=21_000,
        gas_price=1_000_000_000,
        status=True,
        input="0xa9059cbb" + "00" * 64,
        calls=((CONTRACT, "0xa9059cbb"),),
        block_timestamp=1_700_000_000,
        has_receipt=True,
    )
    fields.update(overrides)
    return RawTransaction(**fields)


class TestSelectors:

    def test_evm_function_selector(self):
        assert evm_function_selector("transfer(address,uint256)") == "0xa9059cbb"

    def test_evm_event_topic(self):
        assert evm_event_topic("Transfer(address,address,uint256)") == TRANSFER_TOPIC

    def test_sn_keccak(self):
        assert sn_keccak("transfer") == SN_TRANSFER_SELECTOR
        assert sn_keccak("Transfer") == SN_TRANSFER_EVENT


class TestAbiSelectorIndex:

    def test_evm_abi(self):
        index = AbiSelectorIndex.from_abi(ERC20_ABI, ChainFamily.EVM)

        assert index.function_name("0xA9059CBB") == "transfer"
        assert index.event_name(TRANSFER_TOPIC) == "Transfer"
        assert index.function_name("0xdeadbeef") == "unknown"

    def test_tuple_components_are_expanded(self):
        index = AbiSelectorIndex.from_abi(ERC20_ABI, ChainFamily.EVM)
        selector = evm_function_selector("submit((uint256,address),bytes32[])")

        assert index.function_name(selector) == "submit"

    def test_json_text_and_wrapped_abi(self):
        text = json.dumps({"abi": ERC20_ABI})
        index = AbiSelectorIndex.from_abi(text, ChainFamily.EVM)

        assert index.function_name("0xa9059cbb") == "transfer"

    def test_signature_strings(self):
        index = AbiSelectorIndex.from_abi(
            ["function transfer(address,uint256)", "event Transfer(address,address,uint256)"],
            ChainFamily.EVM,
        )
        assert index.function_name("0xa9059cbb") == "transfer"
        assert index.event_name(TRANSFER_TOPIC) == "Transfer"

    def test_invalid_abi_text_gives_empty_index(self):
        index = AbiSelectorIndex.from_abi("not json", ChainFamily.EVM)
        assert index.functions == {}
        assert index.function_name("0xdeadbeef") == "unknown"

    def test_cairo_abi(self):
        index = AbiSelectorIndex.from_abi(CAIRO_ABI, ChainFamily.CAIRO)

        assert index.function_name(SN_TRANSFER_SELECTOR) == "transfer"
        # Zero-padded felts resolve to the same selector
        assert index.function_name("0x00" + SN_TRANSFER_SELECTOR[2:]) == "transfer"
        assert index.event_name(SN_TRANSFER_EVENT) == "Transfer"
        assert index.event_name(sn_keccak("Approval")) == "Approval"
        assert index.function_name(None) == "unknown"


class TestWellKnownSelectors:

    def test_evm_functions_without_abi(self):
        index = AbiSelectorIndex.empty(ChainFamily.EVM)

        assert index.function_name("0x095ea7b3") == "approve"
        assert index.function_name(evm_function_selector("multicall(bytes[])")) == "multicall"
        assert index.function_name("0xdeadbeef") == "unknown"

    def test_evm_events_without_abi(self):
        index = AbiSelectorIndex.empty(ChainFamily.EVM)

        assert index.event_name(TRANSFER_TOPIC) == "Transfer"
        assert index.event_name("0x" + "00" * 32) == "unknown"

    def test_starknet_without_abi(self):
        index = AbiSelectorIndex.from_abi([], ChainFamily.CAIRO)

        assert index.function_name(SN_TRANSFER_SELECTOR) == "transfer"
        assert index.function_name(sn_keccak("__execute__")) == "__execute__"
        assert index.event_name(SN_TRANSFER_EVENT) == "Transfer"

    def test_abi_name_wins_over_well_known(self):
        abi = [{"type": "function", "name": "send", "inputs": []}]
        index = AbiSelectorIndex.from_abi(abi, ChainFamily.EVM)
        index.functions["0xa9059cbb"] = "move"

        assert index.function_name("0xa9059cbb") == "move"
        assert index.function_name("0x095ea7b3") == "approve"


class TestNormalize:

    def test_evm_transaction(self):
        normalized = normalize(evm_tx(), "ethereum", ERC20_ABI, contract_address=CONTRACT)

        assert normalized.method_id == "0xa9059cbb"
        assert normalized.function_name == "transfer"
        assert normalized.value_wei == 1_500_000_000_000_000_000
        assert normalized.value_native == Decimal("1.5")
        assert normalized.fee_wei == 21_000 * 1_000_000_000
        assert normalized.fee_native == Decimal("0.000021")
        assert normalized.timestamp_utc == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        assert normalized.chain == "ethereum"
        assert normalized.interaction_type == "event"

    def test_plain_transfer_has_no_method(self):
        normalized = normalize(evm_tx(input="0x", value=0), "lisk", ERC20_ABI, interaction_type="direct")

        assert normalized.method_id is None
        assert normalized.function_name == "unknown"
        assert normalized.value_native == Decimal(0)
        assert normalized.interaction_type == "direct"

    def test_well_known_selector_without_abi(self):
        assert normalize(evm_tx(), "ethereum").function_name == "transfer"

    def test_unknown_without_abi(self):
        raw = evm_tx(input="0xdeadbeef", calls=((CONTRACT, "0xdeadbeef"),))
        assert normalize(raw, "ethereum").function_name == "unknown"

    def test_starknet_picks_call_to_contract(self):
        contract = "0x" + "0" * 60 + "beef"
        other = "0x" + "0" * 60 + "cafe"
        raw = RawTransaction(
            hash="0xabc",
            block_number=10,
            from_address="0x" + "0" * 61 + "123",
            to_address=other,
            gas_used=10 ** 16,
            gas_price=1,
            calls=((other, sn_keccak("approve")), (contract, SN_TRANSFER_SELECTOR)),
        )
        normalized = normalize(raw, "starknet", CAIRO_ABI, contract_address=contract)

        assert normalized.method_id == SN_TRANSFER_SELECTOR
        assert normalized.function_name == "transfer"
        assert normalized.fee_native == Decimal("0.01")

    def test_deterministic_output(self):
        index = AbiSelectorIndex.from_abi(ERC20_ABI, ChainFamily.EVM)
        first = normalize(evm_tx(), "ethereum", index, contract_address=CONTRACT)
        second = normalize(evm_tx(), "ethereum", ERC20_ABI, contract_address=CONTRACT)

        assert first.canonical_bytes() == second.canonical_bytes()
        assert b'"value_wei":"1500000000000000000"' in first.canonical_bytes()


class TestNormalizeEvent:

    def test_event(self):
        raw = RawLog(
            transaction_hash="0x" + "01" * 32,
            log_index=3,
            address=CONTRACT,
            block_number=1005,
            topics=(TRANSFER_TOPIC, "0x" + "00" * 32),
            data=("0x01",),
        )
        event = normalize_event(raw, "ethereum", ERC20_ABI)

        expected_key = hashlib.sha256(f"{raw.transaction_hash}:3".encode()).hexdigest()
        assert event.unique_key == expected_key
        assert event.event_name == "Transfer"
        assert event.dedup_key == (raw.transaction_hash, 3)
        assert normalize_event(raw, "ethereum", ERC20_ABI).canonical_bytes() == event.canonical_bytes()

    def test_event_without_topics(self):
        raw = RawLog(transaction_hash="0x1", log_index=0, address=CONTRACT, block_number=1)
        assert normalize_event(raw, "ethereum").event_name == "unknown"


class TestToNative:

    @pytest.mark.parametrize("amount, decimals, expected", [
        (0, 18, Decimal(0)),
        (1, 18, Decimal("1E-18")),
        (123_456_789, 6, Decimal("123.456789")),
        (10 ** 30 + 1, 18, Decimal("1000000000000.000000000000000001")),
        (10 ** 40 + 7, 0, Decimal(10 ** 40 + 7)),
    ])
    def test_exact(self, amount, decimals, expected):
        assert to_native(amount, decimals) == expected
