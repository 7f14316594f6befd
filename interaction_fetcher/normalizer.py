"""
Normalizer / Decoder.

============================================================
RESPONSIBILITY
============================================================
Turns family-specific raw records into canonical records.

- Resolves method ids and event topics to names through an
  ABI selector index
- Converts integer wei amounts to native-unit Decimals
- Falls back to a table of well-known token, DEX, lending and
  ownership selectors when the ABI does not resolve a name
- Never raises on decode problems: unresolved names become
  "unknown"

============================================================
SELECTORS
============================================================
EVM       function: keccak(signature)[:4]
          event:    keccak(signature)
Starknet  function/event: sn_keccak(name), keccak masked to 250 bits

============================================================
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

from eth_utils import keccak

from chain_clients.models import Chain, ChainFamily, RawLog, RawTransaction
from chain_clients.registry import get_chain_spec
from core.clock import from_unix
from interaction_fetcher.models import (
    InteractionType,
    NormalizedEvent,
    NormalizedTransaction,
)


logger = logging.getLogger(__name__)


UNKNOWN = "unknown"

_SN_KECCAK_MASK = (1 << 250) - 1


# =============================================================
# SELECTOR HASHING
# =============================================================


def evm_function_selector(signature: str) -> str:
    """'transfer(address,uint256)' -> '0xa9059cbb'."""
    return "0x" + keccak(text=signature)[:4].hex()


def evm_event_topic(signature: str) -> str:
    """'Transfer(address,address,uint256)' -> 32-byte topic hex."""
    return "0x" + keccak(text=signature).hex()


def sn_keccak(name: str) -> str:
    """Starknet selector of a function or event name, as minimal hex."""
    digest = int.from_bytes(keccak(text=name), "big")
    return hex(digest & _SN_KECCAK_MASK)


# =============================================================
# WELL-KNOWN SELECTORS
# =============================================================

# Names used when the contract ABI does not resolve a selector
WELL_KNOWN_EVM_FUNCTIONS = (
    # ERC20
    "transfer(address,uint256)",
    "approve(address,uint256)",
    "transferFrom(address,address,uint256)",
    "balanceOf(address)",
    "totalSupply()",
    # Uniswap V2 router
    "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)",
    "swapTokensForExactTokens(uint256,uint256,address[],address,uint256)",
    "swapExactETHForTokens(uint256,address[],address,uint256)",
    "swapExactTokensForETH(uint256,uint256,address[],address,uint256)",
    "addLiquidity(address,address,uint256,uint256,uint256,uint256,address,uint256)",
    "removeLiquidity(address,address,uint256,uint256,uint256,address,uint256)",
    # Uniswap V3 router
    "exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))",
    "exactOutputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))",
    "multicall(bytes[])",
    # Aave V2 lending pool
    "deposit(address,uint256,address,uint16)",
    "withdraw(address,uint256,address)",
    "borrow(address,uint256,uint256,uint16,address)",
    "repay(address,uint256,uint256,address)",
    # WETH
    "deposit()",
    "withdraw(uint256)",
    # ERC721
    "safeTransferFrom(address,address,uint256)",
    "safeTransferFrom(address,address,uint256,bytes)",
    "setApprovalForAll(address,bool)",
    "ownerOf(uint256)",
    "mint(address,uint256)",
    # Lido
    "submit(address)",
    # Ownable
    "owner()",
    "transferOwnership(address)",
)

WELL_KNOWN_EVM_EVENTS = (
    "Transfer(address,address,uint256)",
    "Approval(address,address,uint256)",
    "ApprovalForAll(address,address,bool)",
    "OwnershipTransferred(address,address)",
    "Swap(address,uint256,uint256,uint256,uint256,address)",
    "Sync(uint112,uint112)",
    "Deposit(address,uint256)",
    "Withdrawal(address,uint256)",
)

WELL_KNOWN_CAIRO_FUNCTIONS = (
    "transfer",
    "transfer_from",
    "transferFrom",
    "approve",
    "increase_allowance",
    "decrease_allowance",
    "mint",
    "burn",
    "swap",
    "multicall",
    "deposit",
    "withdraw",
    "claim",
    "upgrade",
    "__execute__",
)

WELL_KNOWN_CAIRO_EVENTS = (
    "Transfer",
    "Approval",
    "Swap",
    "Deposit",
    "Withdraw",
    "OwnershipTransferred",
    "Upgraded",
)


@lru_cache(maxsize=None)
def well_known_selectors(family: ChainFamily) -> Tuple[Dict[str, str], Dict[str, str]]:
    """(functions, events) selector -> name tables of well-known entry points."""
    if family == ChainFamily.CAIRO:
        functions = {sn_keccak(name): name for name in WELL_KNOWN_CAIRO_FUNCTIONS}
        events = {sn_keccak(name): name for name in WELL_KNOWN_CAIRO_EVENTS}
    else:
        functions = {evm_function_selector(sig): sig.split("(")[0] for sig in WELL_KNOWN_EVM_FUNCTIONS}
        events = {evm_event_topic(sig): sig.split("(")[0] for sig in WELL_KNOWN_EVM_EVENTS}
    return functions, events


def normalize_felt(value: Any) -> Optional[str]:
    """Minimal hex form of a felt, or None if it does not parse."""
    try:
        if isinstance(value, int):
            return hex(value)
        text = str(value).strip().lower()
        return hex(int(text, 16) if text.startswith("0x") else int(text))
    except (TypeError, ValueError):
        return None


def _canonical_type(param: Dict[str, Any]) -> str:
    """ABI input type with tuple components expanded."""
    param_type = str(param.get("type", ""))
    if param_type.startswith("tuple"):
        suffix = param_type[len("tuple"):]
        inner = ",".join(_canonical_type(c) for c in param.get("components") or [])
        return f"({inner}){suffix}"
    return param_type


def _signature(item: Dict[str, Any]) -> str:
    types = ",".join(_canonical_type(p) for p in item.get("inputs") or [])
    return f"{item.get('name')}({types})"


def _short_name(name: str) -> str:
    """'openzeppelin::token::erc20::ERC20::Transfer' -> 'Transfer'."""
    return name.split("::")[-1]


# =============================================================
# ABI SELECTOR INDEX
# =============================================================


@dataclass
class AbiSelectorIndex:
    """
    Selector -> name lookups for one contract ABI.

    Keys are lower-case hex: 4-byte selectors and 32-byte topics on
    EVM, minimal felt hex on Starknet.
    """
    family: ChainFamily
    functions: Dict[str, str] = field(default_factory=dict)
    events: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def empty(cls, family: ChainFamily) -> "AbiSelectorIndex":
        return cls(family=family)

    @classmethod
    def from_abi(
        cls,
        abi: Union[None, str, Sequence[Any]],
        family: ChainFamily,
    ) -> "AbiSelectorIndex":
        """
        Build an index from a JSON ABI.

        Args:
            abi: ABI list, its JSON text, or plain signature strings
                ('transfer(address,uint256)', 'event Transfer(...)')
            family: Chain family the ABI belongs to
        """
        index = cls(family=family)
        if not abi:
            return index

        if isinstance(abi, str):
            try:
                abi = json.loads(abi)
            except ValueError:
                logger.warning("[normalizer] ABI text is not valid JSON, ignoring")
                return index

        if isinstance(abi, dict):
            abi = abi.get("abi") or []

        if family == ChainFamily.CAIRO:
            index._add_cairo_items(abi)
        else:
            index._add_evm_items(abi)

        logger.debug(
            f"[normalizer] ABI index: {len(index.functions)} functions, "
            f"{len(index.events)} events ({family.value})"
        )
        return index

    def _add_evm_items(self, items: Iterable[Any]) -> None:
        for item in items:
            if isinstance(item, str):
                self._add_signature_string(item)
                continue
            if not isinstance(item, dict) or not item.get("name"):
                continue

            kind = item.get("type", "function")
            if kind == "function":
                self.functions[evm_function_selector(_signature(item))] = item["name"]
            elif kind == "event":
                self.events[evm_event_topic(_signature(item))] = item["name"]

    def _add_signature_string(self, text: str) -> None:
        text = text.strip()
        if text.startswith("event "):
            signature = text[len("event "):].strip()
            self.events[evm_event_topic(signature)] = signature.split("(")[0]
            return
        if text.startswith("function "):
            text = text[len("function "):].strip()
        if "(" in text:
            self.functions[evm_function_selector(text)] = text.split("(")[0]

    def _add_cairo_items(self, items: Iterable[Any]) -> None:
        for item in items:
            if isinstance(item, str):
                name = _short_name(item.split("(")[0].strip())
                if name:
                    self.functions[sn_keccak(name)] = name
                continue
            if not isinstance(item, dict):
                continue

            kind = item.get("type")
            if kind == "interface":
                self._add_cairo_items(item.get("items") or [])
            elif kind in ("function", "l1_handler", "constructor") and item.get("name"):
                self.functions[sn_keccak(item["name"])] = item["name"]
            elif kind == "event" and item.get("name"):
                if item.get("kind") == "enum":
                    # Component event enums: each variant is its own event
                    for variant in item.get("variants") or []:
                        if variant.get("name"):
                            self.events[sn_keccak(variant["name"])] = variant["name"]
                else:
                    name = _short_name(item["name"])
                    self.events[sn_keccak(name)] = name

    def _key(self, selector: Optional[str]) -> Optional[str]:
        if not selector:
            return None
        if self.family == ChainFamily.CAIRO:
            return normalize_felt(selector)
        return selector.lower()

    def function_name(self, selector: Optional[str]) -> str:
        """Function name for a selector (ABI first, then well-known), or 'unknown'."""
        key = self._key(selector)
        if not key:
            return UNKNOWN
        if key in self.functions:
            return self.functions[key]
        return well_known_selectors(self.family)[0].get(key, UNKNOWN)

    def event_name(self, topic: Optional[str]) -> str:
        """Event name for a topic/key (ABI first, then well-known), or 'unknown'."""
        key = self._key(topic)
        if not key:
            return UNKNOWN
        if key in self.events:
            return self.events[key]
        return well_known_selectors(self.family)[1].get(key, UNKNOWN)


AbiLike = Union[AbiSelectorIndex, None, str, Sequence[Any]]


def _as_index(abi: AbiLike, family: ChainFamily) -> AbiSelectorIndex:
    if isinstance(abi, AbiSelectorIndex):
        return abi
    return AbiSelectorIndex.from_abi(abi, family)


# =============================================================
# NORMALIZATION
# =============================================================


def to_native(amount: int, decimals: int) -> Decimal:
    """Integer smallest-unit amount -> Decimal native units, exact."""
    if not amount:
        return Decimal(0)
    # Exact for any number of digits, no context rounding
    sign, digits, exponent = Decimal(amount).as_tuple()
    return Decimal((sign, digits, exponent - decimals))


def event_unique_key(transaction_hash: str, log_index: int) -> str:
    """sha256 of 'transaction_hash:log_index'."""
    return hashlib.sha256(f"{transaction_hash}:{log_index}".encode("utf-8")).hexdigest()


def _method_id(raw_tx: RawTransaction, family: ChainFamily, contract_address: Optional[str]) -> Optional[str]:
    if family == ChainFamily.EVM:
        tx_input = raw_tx.input or ""
        return tx_input[:10].lower() if len(tx_input) >= 10 else None

    if not raw_tx.calls:
        return None
    if contract_address:
        for target, selector in raw_tx.calls:
            if target == contract_address:
                return normalize_felt(selector)
    return normalize_felt(raw_tx.calls[0][1])


def normalize(
    raw_tx: RawTransaction,
    chain: Union[Chain, str],
    abi: AbiLike = None,
    contract_address: Optional[str] = None,
    interaction_type: str = InteractionType.EVENT.value,
) -> NormalizedTransaction:
    """
    Normalize a raw transaction.

    Args:
        raw_tx: Transaction from a chain client
        chain: Chain the transaction belongs to
        abi: ABI, prebuilt AbiSelectorIndex, or None
        contract_address: Normalized contract address, used to pick the
            relevant inner call of a Starknet multicall
        interaction_type: 'event' or 'direct'
    """
    spec = get_chain_spec(chain)
    index = _as_index(abi, spec.family)

    try:
        method_id = _method_id(raw_tx, spec.family, contract_address)
    except (TypeError, ValueError) as e:
        logger.debug(f"[normalizer] Could not read method id of {raw_tx.hash}: {e}")
        method_id = None

    return NormalizedTransaction(
        hash=raw_tx.hash,
        block_number=raw_tx.block_number,
        timestamp_utc=from_unix(raw_tx.block_timestamp) if raw_tx.block_timestamp else None,
        from_address=raw_tx.from_address,
        to_address=raw_tx.to_address,
        value_wei=raw_tx.value,
        gas_used=raw_tx.gas_used,
        gas_price_wei=raw_tx.gas_price,
        status=raw_tx.status,
        method_id=method_id,
        function_name=index.function_name(method_id),
        chain=spec.chain.value,
        interaction_type=interaction_type,
        value_native=to_native(raw_tx.value, spec.native_decimals),
        fee_native=to_native(raw_tx.gas_used * raw_tx.gas_price, spec.native_decimals),
    )


def normalize_event(
    raw_log: RawLog,
    chain: Union[Chain, str],
    abi: AbiLike = None,
) -> NormalizedEvent:
    """Normalize a raw log into a NormalizedEvent."""
    spec = get_chain_spec(chain)
    index = _as_index(abi, spec.family)
    topic0 = raw_log.topics[0] if raw_log.topics else None

    return NormalizedEvent(
        transaction_hash=raw_log.transaction_hash,
        log_index=raw_log.log_index,
        unique_key=event_unique_key(raw_log.transaction_hash, raw_log.log_index),
        address=raw_log.address,
        topics=tuple(raw_log.topics),
        data=tuple(raw_log.data),
        block_number=raw_log.block_number,
        chain=spec.chain.value,
        event_name=index.event_name(topic0),
    )
