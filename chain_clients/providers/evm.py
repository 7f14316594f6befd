"""
EVM Chain Client - Account-model chains speaking the eth_* JSON-RPC dialect.

Covers Ethereum, Lisk and any other EVM chain registered with
ChainFamily.EVM.

RPC methods used:
- eth_blockNumber
- eth_chainId
- eth_getBlockByNumber (full transaction objects)
- eth_getLogs
- eth_getTransactionByHash + eth_getTransactionReceipt
"""

import logging
import re
from collections import OrderedDict
from typing import Any, List, Optional, Sequence

from chain_clients.base import (
    JsonRpcChainClient,
    expect_list,
    expect_object,
    expect_optional_object,
    expect_quantity,
)
from chain_clients.models import RawBlock, RawLog, RawTransaction
from core.exceptions import InvalidAddress


logger = logging.getLogger(__name__)


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _to_int(value: Any, default: int = 0) -> int:
    """Parse a hex quantity ('0x1a') or plain int."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value)
    try:
        return int(text, 16) if text.startswith(("0x", "0X")) else int(text)
    except ValueError:
        return default


class EvmChainClient(JsonRpcChainClient):
    """
    Client for EVM chains.

    Addresses are normalized to lower-case 0x-prefixed 20-byte hex.
    Block timestamps are cached so receipts from the same block only
    cost one eth_getBlockByNumber.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._timestamps: "OrderedDict[int, int]" = OrderedDict()

    # ─────────────────────────────────────────────────────────────
    # Addresses
    # ─────────────────────────────────────────────────────────────

    def is_valid_address(self, address: str) -> bool:
        return isinstance(address, str) and bool(_ADDRESS_RE.match(address))

    def normalize_address(self, address: str) -> str:
        if not self.is_valid_address(address):
            raise InvalidAddress(
                f"Invalid {self.chain} address: {address!r}",
                address=str(address),
                chain=self.chain,
            )
        return address.lower()

    def _maybe_address(self, address: Optional[str]) -> Optional[str]:
        if address and self.is_valid_address(address):
            return address.lower()
        return None

    # ─────────────────────────────────────────────────────────────
    # Chain queries
    # ─────────────────────────────────────────────────────────────

    async def get_height(self) -> int:
        return await self.call("eth_blockNumber", [], parse=expect_quantity)

    async def get_chain_id(self) -> int:
        """Get the chain id reported by the endpoint."""
        return await self.call("eth_chainId", [], parse=expect_quantity)

    async def get_block(self, number: int) -> RawBlock:
        # null (unknown block) counts as a malformed answer of that endpoint
        result = await self.call("eth_getBlockByNumber", [hex(number), True], parse=expect_object)

        timestamp = _to_int(result.get("timestamp"), default=0) or None
        if timestamp is not None:
            self._cache_timestamp(number, timestamp)

        transactions = tuple(
            self._parse_transaction(tx, receipt=None, block_timestamp=timestamp)
            for tx in result.get("transactions") or []
            if isinstance(tx, dict)
        )
        return RawBlock(number=number, timestamp=timestamp, transactions=transactions)

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
    ) -> List[RawLog]:
        address = self.normalize_address(address)
        result = await self.call(
            "eth_getLogs",
            [{
                "address": address,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
            }],
            parse=expect_list,
        )

        logs = []
        for item in result:
            # Reorged logs are reported with removed=true
            if not isinstance(item, dict) or item.get("removed"):
                continue
            logs.append(RawLog(
                transaction_hash=str(item.get("transactionHash", "")).lower(),
                log_index=_to_int(item.get("logIndex")),
                address=self._maybe_address(item.get("address")) or address,
                block_number=_to_int(item.get("blockNumber")),
                topics=tuple(str(t).lower() for t in item.get("topics") or []),
                data=(str(item.get("data") or "0x"),),
                block_hash=item.get("blockHash"),
            ))

        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return logs

    async def get_transactions_by_hashes(
        self,
        hashes: Sequence[str],
    ) -> List[RawTransaction]:
        return await self._hydrate_many(hashes, self._get_transaction)

    async def _get_transaction(self, tx_hash: str) -> RawTransaction:
        tx = await self.call("eth_getTransactionByHash", [tx_hash], parse=expect_object)
        receipt = await self.call("eth_getTransactionReceipt", [tx_hash], parse=expect_optional_object)
        block_number = _to_int(tx.get("blockNumber"))
        timestamp = await self._block_timestamp(block_number)
        return self._parse_transaction(tx, receipt=receipt, block_timestamp=timestamp)

    # ─────────────────────────────────────────────────────────────
    # Parsing
    # ─────────────────────────────────────────────────────────────

    def _parse_transaction(
        self,
        tx: dict[str, Any],
        receipt: Optional[dict[str, Any]],
        block_timestamp: Optional[int],
    ) -> RawTransaction:
        to_address = self._maybe_address(tx.get("to"))
        tx_input = str(tx.get("input") or tx.get("data") or "0x").lower()
        selector = tx_input[:10] if len(tx_input) >= 10 else ""

        gas_price = _to_int(tx.get("gasPrice"))
        gas_used = 0
        status = True
        if receipt:
            gas_used = _to_int(receipt.get("gasUsed"))
            # EIP-1559 transactions report the price actually paid on the receipt
            gas_price = _to_int(receipt.get("effectiveGasPrice"), default=gas_price)
            if receipt.get("status") is not None:
                status = _to_int(receipt.get("status")) == 1

        return RawTransaction(
            hash=str(tx.get("hash", "")).lower(),
            block_number=_to_int(tx.get("blockNumber")),
            from_address=self._maybe_address(tx.get("from")),
            to_address=to_address,
            value=_to_int(tx.get("value")),
            gas_used=gas_used,
            gas_price=gas_price,
            status=status,
            input=tx_input,
            calls=((to_address, selector),) if to_address else (),
            block_timestamp=block_timestamp,
            nonce=_to_int(tx.get("nonce")) if tx.get("nonce") is not None else None,
            tx_type=str(tx["type"]) if tx.get("type") is not None else None,
            has_receipt=receipt is not None,
        )

    # ─────────────────────────────────────────────────────────────
    # Timestamp cache
    # ─────────────────────────────────────────────────────────────

    def _cache_timestamp(self, number: int, timestamp: int) -> None:
        cache = self._timestamps
        cache[number] = timestamp
        while len(cache) > self._config.timestamp_cache_size:
            cache.popitem(last=False)

    async def _block_timestamp(self, number: int) -> Optional[int]:
        cache = self._timestamps
        if number in cache:
            return cache[number]

        header = await self.call("eth_getBlockByNumber", [hex(number), False], parse=expect_optional_object)
        if not header:
            return None
        timestamp = _to_int(header.get("timestamp"), default=0) or None
        if timestamp is not None:
            self._cache_timestamp(number, timestamp)
        return timestamp
