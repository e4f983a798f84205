# trust_monitor/services/chain_reader.py
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from hexbytes import HexBytes
from web3 import Web3

from trust_monitor.services.cache import TTLCache
from trust_monitor.services.exceptions import ChainReadError, MonitorConfigError
from trust_monitor.services.web3_client import get_w3

logger = logging.getLogger(__name__)


def _event_abi(name: str, *inputs) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


# Escrow lifecycle events, in lifecycle order.
ESCROW_EVENTS_ABI = [
    _event_abi("OrderFunded", ("orderId", "bytes32", True), ("buyer", "address", True),
               ("seller", "address", True), ("amount", "uint256", False)),
    _event_abi("OrderShipped", ("orderId", "bytes32", True)),
    _event_abi("OrderDelivered", ("orderId", "bytes32", True)),
    _event_abi("FundsReleased", ("orderId", "bytes32", True), ("seller", "address", True),
               ("amount", "uint256", False)),
    _event_abi("Disputed", ("orderId", "bytes32", True), ("disputer", "address", True)),
    _event_abi("Refunded", ("orderId", "bytes32", True), ("buyer", "address", True),
               ("amount", "uint256", False)),
]

ESCROW_EVENT_NAMES = [e["name"] for e in ESCROW_EVENTS_ABI]

EVENT_TOPICS = {
    e["name"]: Web3.to_hex(
        Web3.keccak(text=f"{e['name']}({','.join(i['type'] for i in e['inputs'])})")
    )
    for e in ESCROW_EVENTS_ABI
}

_BYTES32_HEX = re.compile(r"^0x[0-9a-fA-F]{64}$")


def canonical_order_key(order_id: str) -> str:
    """
    bytes32 key the escrow contract uses for an order.

    Backend ids that already are 32-byte hex strings are used as-is; anything
    else is hashed with keccak256, the same way the marketplace derives the
    on-chain id when it funds the escrow.
    """
    order_id = (order_id or "").strip()
    if _BYTES32_HEX.match(order_id):
        return order_id.lower()
    return Web3.to_hex(Web3.keccak(text=order_id)).lower()


def _to_jsonable(x: Any):
    if isinstance(x, (bytes, HexBytes)):
        return Web3.to_hex(x)
    if isinstance(x, (list, tuple)):
        return [_to_jsonable(i) for i in x]
    if isinstance(x, dict):
        return {k: _to_jsonable(v) for k, v in x.items()}
    return x


@dataclass
class ChainEvent:
    event_name: str
    block_number: int
    transaction_hash: str
    args: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    log_index: int = 0

    @property
    def order_key(self) -> Optional[str]:
        raw = self.args.get("orderId")
        return str(raw).lower() if raw is not None else None

    def to_dict(self) -> dict:
        return {
            "eventName": self.event_name,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "args": self.args,
            "timestamp": self.timestamp.isoformat() + "Z" if self.timestamp else None,
        }


class ChainLogReader:
    """
    Reads escrow lifecycle events and balances from the chain.

    Each event signature is queried on its own worker thread; a failing
    signature is recorded and skipped so the rest of the scan still returns.
    Only the calling thread touches the audit store.
    """

    def __init__(
        self,
        store,
        escrow_address: Optional[str],
        w3: Optional[Web3] = None,
        w3_factory: Callable[[], Web3] = get_w3,
        timestamp_cache: Optional[TTLCache] = None,
    ):
        self.store = store
        self.escrow_address = escrow_address
        self._w3 = w3
        self._w3_factory = w3_factory
        self._timestamps = timestamp_cache or TTLCache(ttl_seconds=3600)
        self._contract = None

    @property
    def w3(self) -> Web3:
        if self._w3 is None:
            self._w3 = self._w3_factory()
        return self._w3

    def _checksum_escrow(self) -> str:
        if not self.escrow_address:
            raise MonitorConfigError("ESCROW_ADDRESS no configurado")
        try:
            return Web3.to_checksum_address(self.escrow_address)
        except ValueError as e:
            raise MonitorConfigError(f"Invalid ESCROW_ADDRESS: {self.escrow_address}") from e

    def contract(self):
        if self._contract is None:
            self._contract = self.w3.eth.contract(address=self._checksum_escrow(), abi=ESCROW_EVENTS_ABI)
        return self._contract

    # ---------------------------
    # RPC primitives
    # ---------------------------

    def latest_block_number(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except MonitorConfigError:
            raise
        except Exception as e:
            raise ChainReadError(f"Could not read the latest block: {e}") from e

    def balance_of(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))
        except MonitorConfigError:
            raise
        except Exception as e:
            raise ChainReadError(f"Could not read the balance of {address}: {e}") from e

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        try:
            return dict(self.w3.eth.get_transaction(tx_hash))
        except MonitorConfigError:
            raise
        except Exception as e:
            raise ChainReadError(f"Could not read transaction {tx_hash}: {e}") from e

    def block_timestamp(self, block_number: int) -> datetime:
        cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached
        block = self.w3.eth.get_block(block_number)
        ts = datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc).replace(tzinfo=None)
        self._timestamps.put(block_number, ts)
        return ts

    def _fetch_logs(self, event_name: str, from_block: int, to_block: int) -> List[Any]:
        """Raw logs for one signature, decoded against the escrow ABI."""
        event = getattr(self.contract().events, event_name)()
        logs = self.w3.eth.get_logs({
            "address": self._checksum_escrow(),
            "topics": [EVENT_TOPICS[event_name]],
            "fromBlock": from_block,
            "toBlock": to_block,
        })
        return [event.process_log(raw) for raw in logs]

    def _query_event(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        events = []
        for decoded in self._fetch_logs(event_name, from_block, to_block):
            block_number = int(decoded["blockNumber"])
            events.append(ChainEvent(
                event_name=event_name,
                block_number=block_number,
                transaction_hash=_to_jsonable(decoded["transactionHash"]),
                args=_to_jsonable(dict(decoded["args"])),
                timestamp=self.block_timestamp(block_number),
                log_index=int(decoded.get("logIndex") or 0),
            ))
        return events

    # ---------------------------
    # Scan
    # ---------------------------

    def scan_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        if from_block > to_block:
            raise ValueError(f"from_block ({from_block}) > to_block ({to_block})")

        self._timestamps.evict_expired()
        try:
            escrow = self._checksum_escrow()
            self.contract()  # build provider and contract once, before fanning out
            with ThreadPoolExecutor(max_workers=len(ESCROW_EVENT_NAMES), thread_name_prefix="escrow-logs") as pool:
                futures = {
                    name: pool.submit(self._query_event, name, from_block, to_block)
                    for name in ESCROW_EVENT_NAMES
                }

            events: List[ChainEvent] = []
            failed: Dict[str, str] = {}
            for name, fut in futures.items():
                exc = fut.exception()
                if exc is not None:
                    logger.warning("Escrow event query %s failed (%s-%s): %s", name, from_block, to_block, exc)
                    failed[name] = str(exc)
                    continue
                events.extend(fut.result())

            for name, err in failed.items():
                self.store.record(
                    "contract_scan", "warning",
                    contract_address=escrow,
                    block_number=to_block,
                    event_name=name,
                    error=err,
                    metadata={"fromBlock": from_block},
                )

            events.sort(key=lambda e: (e.block_number, e.log_index))
            self.store.record(
                "contract_scan", "info",
                contract_address=escrow,
                block_number=to_block,
                metadata={
                    "eventsFound": len(events),
                    "fromBlock": from_block,
                    "failedEvents": sorted(failed),
                },
            )
            logger.info("Escrow scan %s-%s: %s events", from_block, to_block, len(events))
            return events

        except Exception as e:
            self.store.record(
                "contract_scan", "error",
                contract_address=self.escrow_address,
                block_number=to_block,
                error=str(e),
                metadata={"fromBlock": from_block},
            )
            logger.error("Escrow scan %s-%s failed: %s", from_block, to_block, e)
            raise

    def scan_recent(self, window: int) -> List[ChainEvent]:
        """Scan the trailing ``window`` blocks up to the current head."""
        latest = self.latest_block_number()
        return self.scan_events(max(0, latest - window), latest)
