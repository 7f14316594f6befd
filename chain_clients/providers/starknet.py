"""
Starknet Chain Client - Cairo VM chain speaking the starknet_* JSON-RPC dialect.

Translates Cairo shapes into the family-neutral raw records:
- Events carry no log index on Starknet; a positional index per
  transaction is assigned in emission order
- Account multicall calldata (Cairo 1 and Cairo 0 layouts) is parsed
  into (target, selector) calls
- `actual_fee` (hex or {amount, unit}) becomes `gas_used` with a unit
  gas price, so fee = gas_used * gas_price holds for both families
- `execution_status` (or the older `status`) becomes the boolean status
"""

import logging
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chain_clients.base import (
    JsonRpcChainClient,
    expect_object,
    expect_optional_object,
    expect_quantity,
)
from chain_clients.models import RawBlock, RawLog, RawTransaction
from core.exceptions import InvalidAddress, ProtocolError


logger = logging.getLogger(__name__)


_FELT_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
_FELT_MAX = 2 ** 251

_SUCCESS_STATUSES = {"ACCEPTED_ON_L2", "ACCEPTED_ON_L1", "SUCCEEDED"}
_FAILED_STATUSES = {"REJECTED", "REVERTED"}


def felt_to_int(value: Any, default: int = 0) -> int:
    """Parse a felt given as hex string, decimal string or int."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value)
    try:
        return int(text, 16) if text.startswith(("0x", "0X")) else int(text)
    except ValueError:
        return default


def felt_hex(value: Any) -> str:
    """Minimal lower-case hex form of a felt ('0x0' style)."""
    return hex(felt_to_int(value))


def parse_multicall(calldata: Sequence[Any]) -> Tuple[Tuple[int, int], ...]:
    """
    Extract (target, selector) pairs from account __execute__ calldata.

    Tries the Cairo 1 layout first:
        [n, to, selector, len, data..., to, selector, len, data...]
    then the Cairo 0 layout:
        [n, (to, selector, offset, len) * n, total_len, data...]
    and falls back to (calldata[1], calldata[2]).
    """
    felts = [felt_to_int(v) for v in calldata]
    if len(felts) < 3:
        return ()

    # Cairo 1
    count = felts[0]
    if 0 < count <= len(felts):
        calls = []
        pos = 1
        for _ in range(count):
            if pos + 3 > len(felts):
                break
            to, selector, data_len = felts[pos], felts[pos + 1], felts[pos + 2]
            pos += 3 + data_len
            calls.append((to, selector))
        else:
            if pos == len(felts):
                return tuple(calls)

    # Cairo 0
    header_end = 1 + 4 * count
    if 0 < count and header_end < len(felts):
        total_len = felts[header_end]
        if header_end + 1 + total_len == len(felts):
            return tuple(
                (felts[1 + 4 * i], felts[2 + 4 * i])
                for i in range(count)
            )

    return ((felts[1], felts[2]),)


def parse_actual_fee(actual_fee: Any) -> int:
    """Fee in the smallest native unit from either receipt fee shape."""
    if isinstance(actual_fee, dict):
        return felt_to_int(actual_fee.get("amount"))
    return felt_to_int(actual_fee)


def _expect_events_page(result: Any) -> Dict[str, Any]:
    """starknet_getEvents page: an object with an `events` list of objects."""
    page = expect_object(result)
    events = page.get("events")
    if not isinstance(events, list) or not all(isinstance(e, dict) for e in events):
        raise TypeError("events page without an `events` list of objects")
    return page


def parse_execution_status(receipt: Dict[str, Any]) -> bool:
    """Boolean success from `execution_status`, or the pre-0.12 `status`."""
    execution_status = receipt.get("execution_status")
    if execution_status:
        return execution_status == "SUCCEEDED"

    status = receipt.get("status") or receipt.get("finality_status")
    if status in _FAILED_STATUSES:
        return False
    return status in _SUCCESS_STATUSES or status is None


class StarknetChainClient(JsonRpcChainClient):
    """
    Client for Starknet.

    Addresses are felts below 2^251, normalized to lower-case
    0x-prefixed 64-digit hex.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._timestamps: "OrderedDict[int, int]" = OrderedDict()

    # ─────────────────────────────────────────────────────────────
    # Addresses
    # ─────────────────────────────────────────────────────────────

    def is_valid_address(self, address: str) -> bool:
        if not isinstance(address, str) or not _FELT_RE.match(address):
            return False
        return int(address, 16) < _FELT_MAX

    def normalize_address(self, address: str) -> str:
        if not self.is_valid_address(address):
            raise InvalidAddress(
                f"Invalid {self.chain} address: {address!r}",
                address=str(address),
                chain=self.chain,
            )
        return "0x" + format(int(address, 16), "064x")

    def _felt_address(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        number = felt_to_int(value, default=-1)
        if number < 0 or number >= _FELT_MAX:
            return None
        return "0x" + format(number, "064x")

    # ─────────────────────────────────────────────────────────────
    # Chain queries
    # ─────────────────────────────────────────────────────────────

    async def get_height(self) -> int:
        return await self.call("starknet_blockNumber", [], parse=expect_quantity)

    async def get_block(self, number: int) -> RawBlock:
        result = await self.call(
            "starknet_getBlockWithTxs",
            [{"block_number": number}],
            parse=expect_object,
        )

        timestamp = felt_to_int(result.get("timestamp"), default=0) or None
        if timestamp is not None:
            self._cache_timestamp(number, timestamp)

        transactions = tuple(
            self._parse_transaction(tx, receipt=None, block_number=number, block_timestamp=timestamp)
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
        logs: List[RawLog] = []
        positions: Dict[str, int] = {}
        token: Optional[str] = None
        pages = 0

        while True:
            pages += 1
            if pages > self._config.max_event_pages:
                raise ProtocolError(
                    message=f"starknet_getEvents exceeded {self._config.max_event_pages} pages",
                    method="starknet_getEvents",
                    chain=self.chain,
                )

            event_filter: Dict[str, Any] = {
                "from_block": {"block_number": from_block},
                "to_block": {"block_number": to_block},
                "address": address,
                "chunk_size": self._config.events_page_size,
            }
            if token:
                event_filter["continuation_token"] = token

            result = await self.call("starknet_getEvents", [event_filter], parse=_expect_events_page)

            for event in result["events"]:
                tx_hash = felt_hex(event.get("transaction_hash"))
                index = positions.get(tx_hash, 0)
                positions[tx_hash] = index + 1
                logs.append(RawLog(
                    transaction_hash=tx_hash,
                    log_index=index,
                    address=self._felt_address(event.get("from_address")) or address,
                    block_number=felt_to_int(event.get("block_number")),
                    topics=tuple(felt_hex(k) for k in event.get("keys") or []),
                    data=tuple(felt_hex(d) for d in event.get("data") or []),
                    block_hash=event.get("block_hash"),
                ))

            token = result.get("continuation_token")
            if not token:
                break

        logger.debug(
            f"[{self.chain}] {len(logs)} events in [{from_block}, {to_block}] "
            f"over {pages} page(s)"
        )
        return logs

    async def get_transactions_by_hashes(
        self,
        hashes: Sequence[str],
    ) -> List[RawTransaction]:
        return await self._hydrate_many(hashes, self._get_transaction)

    async def _get_transaction(self, tx_hash: str) -> RawTransaction:
        tx = await self.call("starknet_getTransactionByHash", [tx_hash], parse=expect_object)
        receipt = await self.call(
            "starknet_getTransactionReceipt",
            [tx_hash],
            parse=expect_optional_object,
        )

        block_number = felt_to_int((receipt or {}).get("block_number"), default=-1)
        timestamp = await self._block_timestamp(block_number) if block_number >= 0 else None
        return self._parse_transaction(
            tx,
            receipt=receipt,
            block_number=max(block_number, 0),
            block_timestamp=timestamp,
        )

    # ─────────────────────────────────────────────────────────────
    # Parsing
    # ─────────────────────────────────────────────────────────────

    def _parse_transaction(
        self,
        tx: Dict[str, Any],
        receipt: Optional[Dict[str, Any]],
        block_number: int,
        block_timestamp: Optional[int],
    ) -> RawTransaction:
        calldata = tx.get("calldata") or []
        sender = self._felt_address(tx.get("sender_address"))

        if sender is not None:
            calls = tuple(
                (self._felt_address(to) or felt_hex(to), hex(selector))
                for to, selector in parse_multicall(calldata)
            )
        elif tx.get("contract_address") is not None:
            # INVOKE v0 targets the contract directly
            target = self._felt_address(tx.get("contract_address"))
            calls = ((target, felt_hex(tx.get("entry_point_selector"))),) if target else ()
        else:
            calls = ()

        to_address = calls[0][0] if calls else None

        gas_used = 0
        status = True
        if receipt:
            gas_used = parse_actual_fee(receipt.get("actual_fee"))
            status = parse_execution_status(receipt)

        return RawTransaction(
            hash=felt_hex(tx.get("transaction_hash")),
            block_number=block_number,
            from_address=sender or self._felt_address(tx.get("contract_address")),
            to_address=to_address,
            value=0,
            gas_used=gas_used,
            gas_price=1,
            status=status,
            input="0x" + "".join(format(felt_to_int(v), "064x") for v in calldata),
            calls=calls,
            block_timestamp=block_timestamp,
            nonce=felt_to_int(tx["nonce"]) if tx.get("nonce") is not None else None,
            tx_type=tx.get("type"),
            has_receipt=receipt is not None,
        )

    # ─────────────────────────────────────────────────────────────
    # Timestamp cache
    # ─────────────────────────────────────────────────────────────

    def _cache_timestamp(self, number: int, timestamp: int) -> None:
        self._timestamps[number] = timestamp
        while len(self._timestamps) > self._config.timestamp_cache_size:
            self._timestamps.popitem(last=False)

    async def _block_timestamp(self, number: int) -> Optional[int]:
        if number in self._timestamps:
            return self._timestamps[number]

        header = await self.call(
            "starknet_getBlockWithTxHashes",
            [{"block_number": number}],
            parse=expect_optional_object,
        )
        if header is None:
            return None
        timestamp = felt_to_int(header.get("timestamp"), default=0) or None
        if timestamp is not None:
            self._cache_timestamp(number, timestamp)
        return timestamp
