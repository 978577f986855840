"""
Event Sources

Where raw log records come from.

- InMemoryChain:   a local, scriptable chain for tests and development.
                   Events are ABI-encoded exactly as the contracts emit
                   them; blocks can be reorganized, redelivered, and
                   delivered out of order.
- Web3EventSource: eth_getLogs over JSON-RPC (web3), with range halving
                   when the node refuses a large query.

A source may deliver the same record more than once, out of order, or
later deliver a retracted copy (removed=True). Everything downstream is
built to tolerate that.
"""

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Optional

from web3 import Web3
from web3.exceptions import Web3Exception, Web3RPCError

from .abi import SPECS_BY_NAME, ContractRole, encode_event
from .errors import SourceUnavailableError
from ..schemas.raw import RawLog

logger = logging.getLogger(__name__)


class EventSource(ABC):
    """Read access to the chain."""

    @abstractmethod
    def get_block_number(self) -> int:
        """Current head block number."""
        pass

    @abstractmethod
    def get_block_hash(self, block_number: int) -> Optional[str]:
        """Canonical hash of a block, or None if the block does not exist (yet)."""
        pass

    @abstractmethod
    def get_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        """Records in [from_block, to_block], plus any pending retractions."""
        pass


# ============================================================
# IN-MEMORY CHAIN
# ============================================================

DEFAULT_CONTRACT_ADDRESSES: dict[ContractRole, str] = {
    ContractRole.DOCU_VAULT: "0x" + "d0" * 20,
    ContractRole.DID_REGISTRY: "0x" + "a1" * 20,
    ContractRole.DID_VERIFIER: "0x" + "a2" * 20,
    ContractRole.DID_ISSUER: "0x" + "a3" * 20,
    ContractRole.DID_AUTH: "0x" + "a4" * 20,
}

GENESIS_TIMESTAMP = 1_700_000_000
BLOCK_TIME_SECONDS = 12


def _keccak_hex(text: str) -> str:
    return Web3.to_hex(Web3.keccak(text=text))


@dataclass
class _Block:
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    logs: list[RawLog] = field(default_factory=list)


class InMemoryChain(EventSource):
    """
    Scriptable chain. Block 0 is an empty genesis block.

    Usage:
        chain = InMemoryChain()
        chain.emit("DIDRegistered", did="did:x:1", controller=addr)
        chain.mine()
        chain.reorg(depth=1)   # drop the last block; retractions are queued
    """

    def __init__(self, addresses: Optional[dict[ContractRole, str]] = None):
        self.addresses = {
            role: addr.lower()
            for role, addr in (addresses or DEFAULT_CONTRACT_ADDRESSES).items()
        }
        self._blocks: list[_Block] = []
        self._pending: list[tuple[str, tuple[str, ...], str, Optional[str]]] = []
        self._retractions: list[RawLog] = []
        self._fork = 0
        self._lock = Lock()
        self._failures_left = 0

        self.duplicate_delivery = False  # deliver every record twice
        self.reverse_delivery = False  # deliver records newest-first

        self.mine()

    @property
    def contract_roles(self) -> dict[str, ContractRole]:
        """address -> role, ready for EventDecoder."""
        return {addr: role for role, addr in self.addresses.items()}

    # ----------------------------------------------------------------
    # Building the chain
    # ----------------------------------------------------------------

    def emit_raw(
        self,
        contract_address: str,
        topics: tuple[str, ...],
        data: str = "0x",
        sender: Optional[str] = None,
    ) -> None:
        """Queue an arbitrary log for the next mined block."""
        with self._lock:
            self._pending.append((contract_address.lower(), tuple(topics), data, sender))

    def emit(self, event_name: str, sender: Optional[str] = None, **args: Any) -> None:
        """Queue a known event, ABI-encoded, from its contract's address."""
        spec = SPECS_BY_NAME[event_name]
        topics, data = encode_event(event_name, **args)
        self.emit_raw(self.addresses[spec.contract], topics, data, sender)

    def mine(self, timestamp: Optional[int] = None) -> int:
        """Seal pending logs into a new block. Returns its number."""
        with self._lock:
            number = len(self._blocks)
            parent = self._blocks[-1].hash if self._blocks else "0x" + "00" * 32
            block_hash = _keccak_hex(f"block:{number}:{parent}:{self._fork}")
            ts = timestamp if timestamp is not None else GENESIS_TIMESTAMP + number * BLOCK_TIME_SECONDS

            logs = []
            for log_index, (address, topics, data, sender) in enumerate(self._pending):
                logs.append(RawLog(
                    contract_address=address,
                    topics=topics,
                    data=data,
                    block_number=number,
                    block_hash=block_hash,
                    transaction_hash=_keccak_hex(f"tx:{block_hash}:{log_index}"),
                    log_index=log_index,
                    block_timestamp=ts,
                    transaction_from=sender,
                ))
            self._pending = []
            self._blocks.append(_Block(number, block_hash, parent, ts, logs))
            return number

    def mine_empty(self, count: int) -> int:
        """Mine `count` empty blocks. Returns the last block number."""
        number = self.get_block_number()
        for _ in range(count):
            number = self.mine()
        return number

    def reorg(self, depth: int) -> list[RawLog]:
        """
        Drop the last `depth` blocks.

        Their records are queued as retractions (removed=True), delivered
        once by the next get_logs() call. Blocks mined afterwards get new
        hashes even at the same height.

        Returns:
            The retracted records
        """
        with self._lock:
            if depth < 1 or depth >= len(self._blocks):
                raise ValueError(f"Cannot reorg {depth} block(s) of {len(self._blocks)}")
            dropped = self._blocks[-depth:]
            self._blocks = self._blocks[:-depth]
            self._fork += 1
            retracted = [
                log.model_copy(update={"removed": True})
                for block in dropped
                for log in block.logs
            ]
            self._retractions.extend(retracted)
            return retracted

    def silent_reorg(self, depth: int) -> None:
        """Drop the last `depth` blocks without announcing retractions."""
        self.reorg(depth)
        with self._lock:
            self._retractions = []

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` get_logs() calls raise SourceUnavailableError."""
        self._failures_left = count

    # ----------------------------------------------------------------
    # EventSource
    # ----------------------------------------------------------------

    def get_block_number(self) -> int:
        with self._lock:
            return len(self._blocks) - 1

    def get_block_hash(self, block_number: int) -> Optional[str]:
        with self._lock:
            if 0 <= block_number < len(self._blocks):
                return self._blocks[block_number].hash
            return None

    def get_block_timestamp(self, block_number: int) -> Optional[int]:
        with self._lock:
            if 0 <= block_number < len(self._blocks):
                return self._blocks[block_number].timestamp
            return None

    def get_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        with self._lock:
            if self._failures_left > 0:
                self._failures_left -= 1
                raise SourceUnavailableError("injected source failure")

            logs = list(self._retractions)
            self._retractions = []
            for block in self._blocks[max(from_block, 0):to_block + 1]:
                logs.extend(block.logs)

        if self.duplicate_delivery:
            logs = [log for log in logs for _ in (0, 1)]
        if self.reverse_delivery:
            logs.reverse()
        return logs


# ============================================================
# WEB3 SOURCE
# ============================================================

def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value)


class _LRUCache:
    """Thread-safe mapping that forgets the least recently used keys."""

    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        self._data: OrderedDict = OrderedDict()
        self._lock = Lock()

    def get(self, key):
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def put(self, key, value) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        return len(self._data)


RANGE_TOO_LARGE_HINTS = ("query returned more than", "too many", "block range")


class Web3EventSource(EventSource):
    """
    eth_getLogs over JSON-RPC.

    Block timestamps are fetched per block. Transaction senders are only
    fetched for events whose reducers use them (CredentialIssued). Both
    are kept in LRU caches of `cache_size` entries.
    """

    SENDER_TOPICS = frozenset({SPECS_BY_NAME["CredentialIssued"].topic0})

    def __init__(
        self,
        rpc_url: str,
        addresses: list[str],
        timeout_seconds: float = 30.0,
        max_block_range: int = 2000,
        w3: Optional[Web3] = None,
        cache_size: int = 4096,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        self.addresses = [Web3.to_checksum_address(a) for a in addresses]
        self.max_block_range = max_block_range
        self._block_ts_cache = _LRUCache(cache_size)
        self._sender_cache = _LRUCache(cache_size)

    def _rpc(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (OSError, ValueError, Web3Exception) as e:
            raise SourceUnavailableError(f"{what} failed: {e}") from e

    def get_block_number(self) -> int:
        return self._rpc("eth_blockNumber", lambda: self.w3.eth.block_number)

    def get_block_hash(self, block_number: int) -> Optional[str]:
        try:
            block = self.w3.eth.get_block(block_number)
        except Web3Exception as e:
            if "not found" in str(e).lower():
                return None
            raise SourceUnavailableError(f"eth_getBlockByNumber failed: {e}") from e
        except (OSError, ValueError) as e:
            raise SourceUnavailableError(f"eth_getBlockByNumber failed: {e}") from e
        if block is None:
            return None
        self._block_ts_cache.put(block_number, block["timestamp"])
        return _hex(block["hash"])

    def _block_timestamp(self, block_number: int) -> int:
        timestamp = self._block_ts_cache.get(block_number)
        if timestamp is None:
            block = self._rpc("eth_getBlockByNumber", self.w3.eth.get_block, block_number)
            timestamp = block["timestamp"]
            self._block_ts_cache.put(block_number, timestamp)
        return timestamp

    def _sender(self, tx_hash: str) -> str:
        sender = self._sender_cache.get(tx_hash)
        if sender is None:
            tx = self._rpc("eth_getTransactionByHash", self.w3.eth.get_transaction, tx_hash)
            sender = tx["from"].lower()
            self._sender_cache.put(tx_hash, sender)
        return sender

    def _fetch_range(self, from_block: int, to_block: int) -> list[dict]:
        """get_logs with range halving when the node says the range is too large."""
        collected: list[dict] = []
        current = from_block
        span = self.max_block_range

        while current <= to_block:
            batch_to = min(current + span - 1, to_block)
            try:
                logs = self.w3.eth.get_logs({
                    "fromBlock": current,
                    "toBlock": batch_to,
                    "address": self.addresses,
                })
            except (ValueError, Web3RPCError) as exc:
                msg = str(exc).lower()
                if span > 1 and any(hint in msg for hint in RANGE_TOO_LARGE_HINTS):
                    span = max(span // 2, 1)
                    logger.warning(
                        f"get_logs too large ({current}-{batch_to}), reducing range to {span}"
                    )
                    continue
                raise SourceUnavailableError(f"eth_getLogs failed: {exc}") from exc
            except (OSError, Web3Exception) as exc:
                raise SourceUnavailableError(f"eth_getLogs failed: {exc}") from exc
            collected.extend(logs)
            current = batch_to + 1

        return collected

    def _to_raw(self, log: dict) -> RawLog:
        topics = tuple(_hex(t) for t in log.get("topics", []))
        block_number = int(log["blockNumber"])
        tx_hash = _hex(log["transactionHash"])
        sender = self._sender(tx_hash) if topics and topics[0] in self.SENDER_TOPICS else None
        return RawLog(
            contract_address=log["address"],
            topics=topics,
            data=_hex(log.get("data", "0x")),
            block_number=block_number,
            block_hash=_hex(log["blockHash"]),
            transaction_hash=tx_hash,
            log_index=int(log["logIndex"]),
            removed=bool(log.get("removed", False)),
            block_timestamp=self._block_timestamp(block_number),
            transaction_from=sender,
        )

    def get_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        return [self._to_raw(log) for log in self._fetch_range(from_block, to_block)]
