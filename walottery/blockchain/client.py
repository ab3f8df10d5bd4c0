"""Ledger gateway for the lottery reconciliation services."""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from eth_account import Account
from eth_utils import event_abi_to_log_topic
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, LogTopicError, MismatchedABI

from walottery.blockchain.decoding import (
    object_id_to_bytes,
    parse_lottery_created,
    parse_lottery_object,
)
from walottery.lottery.models import EventCursor, EventPage, LedgerEvent, LotteryOnChain
from walottery.utils.config import (
    ConfigurationError,
    get_config_value,
    get_float,
    get_int,
    require_config_value,
)
from walottery.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Default public endpoints per network; BLOCKCHAIN_RPC_URL overrides
NETWORK_RPC_URLS = {
    "mainnet": "https://ethereum-rpc.publicnode.com",
    "sepolia": "https://ethereum-sepolia-rpc.publicnode.com",
    "holesky": "https://ethereum-holesky-rpc.publicnode.com",
    "localnet": "http://127.0.0.1:8545",
}

EVENT_NAME = "LotteryCreated"
ABI_PATH = Path(__file__).parent / "abi" / "LotteryCreation.abi"


class LedgerError(RuntimeError):
    """A ledger RPC failed or timed out. Always retryable."""


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value or "")
    return text if text.startswith("0x") or not text else "0x" + text


def resolve_rpc_url(config: Dict[str, Any]) -> Tuple[str, str]:
    """Return `(network, rpc_url)` from the blockchain section."""
    network = str(get_config_value(config, "blockchain.network", "sepolia") or "sepolia").lower()
    override = get_config_value(config, "blockchain.rpc_url")
    if override:
        return network, str(override)
    if network not in NETWORK_RPC_URLS:
        raise ConfigurationError(
            f"Unknown network '{network}'; set BLOCKCHAIN_RPC_URL or one of {sorted(NETWORK_RPC_URLS)}"
        )
    return network, NETWORK_RPC_URLS[network]


class LedgerClient:
    """Async-friendly wrapper around web3.py for the lottery contract.

    Blocking RPCs run in worker threads and are bounded twice: by the HTTP
    request timeout of the provider and by `asyncio.wait_for`. Every failure
    surfaces as `LedgerError`.
    """

    def __init__(self, config: Dict[str, Any], *, require_signer: bool = False):
        self._config = config

        self.network, self.rpc_url = resolve_rpc_url(config)
        self.rpc_timeout: float = get_float(config, "blockchain.rpc_timeout", 10.0)
        self.chain_id: Optional[int] = get_int(config, "blockchain.chain_id", 0) or None

        address = require_config_value(config, "blockchain.contract_address", "BLOCKCHAIN_CONTRACT_ADDRESS")
        if not Web3.is_address(address):
            raise ConfigurationError(f"BLOCKCHAIN_CONTRACT_ADDRESS is not a valid address: {address}")
        self.contract_address: str = Web3.to_checksum_address(address)

        self.start_block: int = get_int(config, "indexer.start_block", 0)
        self.block_span: int = max(1, get_int(config, "indexer.block_span", 2000))
        self.max_spans_per_query: int = max(1, get_int(config, "indexer.max_spans_per_query", 100))

        self.account = None
        private_key = get_config_value(config, "blockchain.operator_private_key")
        if private_key:
            try:
                self.account = Account.from_key(str(private_key).strip())
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(f"Unable to load BLOCKCHAIN_OPERATOR_PRIVATE_KEY: {exc}") from exc
            logger.info("Operator account loaded: %s", self.account.address)
        elif require_signer:
            raise ConfigurationError("Missing required setting blockchain.operator_private_key (set BLOCKCHAIN_OPERATOR_PRIVATE_KEY)")

        self._gas_price_override: Optional[int] = None
        gas_price_setting = get_config_value(config, "blockchain.gas_price")
        if gas_price_setting:
            try:
                self._gas_price_override = Web3.to_wei(Decimal(str(gas_price_setting)), "gwei")
            except (ArithmeticError, ValueError) as exc:
                logger.warning("Unable to parse gas price '%s': %s", gas_price_setting, exc)
        self._gas_multiplier = get_float(config, "blockchain.gas_multiplier", 1.15)

        self._w3: Optional[Web3] = None
        self._contract: Optional[Contract] = None
        self._event_topic: Optional[str] = None
        # (cursor, last block scanned) of the most recent query that found nothing
        self._empty_scan: Optional[Tuple[Optional[EventCursor], int]] = None

    @property
    def event_type(self) -> str:
        return f"{self.contract_address}::{EVENT_NAME}"

    async def initialize(self) -> None:
        """Create the provider and bind the contract.

        Node reachability is only logged: an unreachable node is a transient
        condition the polling loops retry.
        """
        self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))

        with ABI_PATH.open("r", encoding="utf-8") as handle:
            abi: List[Dict[str, Any]] = json.load(handle)
        self._contract = self._w3.eth.contract(address=self.contract_address, abi=abi)
        event_abi = next(item for item in abi if item.get("type") == "event" and item.get("name") == EVENT_NAME)
        self._event_topic = _hex(event_abi_to_log_topic(event_abi))
        logger.info("Contract bound at %s, watching %s", self.contract_address, self.event_type)

        try:
            actual_chain_id = await self._run(lambda: int(self._ensure_web3().eth.chain_id), "chain_id")
            logger.info("Connected to %s RPC %s (chain id %s)", self.network, self.rpc_url, actual_chain_id)
            if self.chain_id and actual_chain_id != self.chain_id:
                logger.warning("Chain ID mismatch: expected %s, got %s", self.chain_id, actual_chain_id)
        except LedgerError as exc:
            logger.warning("Ledger node not reachable yet at %s: %s", self.rpc_url, exc)

    async def close(self) -> None:
        """Tear down references; HTTP provider closes automatically."""
        self._contract = None
        self._w3 = None

    def _ensure_contract(self) -> Contract:
        if not self._contract:
            raise RuntimeError("Contract not initialised")
        return self._contract

    def _ensure_web3(self) -> Web3:
        if not self._w3:
            raise RuntimeError("Web3 provider not initialised")
        return self._w3

    async def _run(self, fn: Callable[[], T], what: str, timeout: Optional[float] = None) -> T:
        wait_timeout = timeout or max(15.0, self.rpc_timeout * 3)
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=wait_timeout)
        except asyncio.TimeoutError as exc:
            raise LedgerError(f"{what} timed out after {wait_timeout}s") from exc
        except ContractLogicError:
            raise
        except Exception as exc:
            raise LedgerError(f"{what} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------
    async def get_lottery(self, lottery_id: str) -> Optional[LotteryOnChain]:
        """Fetch live lottery state; None when the id does not resolve on-chain."""
        try:
            key = object_id_to_bytes(lottery_id)
        except ValueError:
            logger.info("Lottery id %r is not a valid object id", lottery_id)
            return None

        contract = self._ensure_contract()
        try:
            raw = await self._run(lambda: contract.functions.getLottery(key).call(), f"getLottery({lottery_id})")
        except ContractLogicError as exc:
            logger.info("getLottery(%s) reverted: %s", lottery_id, exc)
            return None
        return parse_lottery_object(lottery_id, raw)

    async def get_ledger_time_ms(self) -> int:
        """Timestamp of the latest block, in epoch milliseconds."""
        w3 = self._ensure_web3()
        block = await self._run(lambda: w3.eth.get_block("latest"), "get_block(latest)")
        return int(block["timestamp"]) * 1000

    async def get_latest_block(self) -> int:
        w3 = self._ensure_web3()
        return await self._run(lambda: int(w3.eth.block_number), "block_number")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def query_events(self, cursor: Optional[EventCursor], limit: int) -> EventPage:
        """Return up to `limit` LotteryCreated events strictly after `cursor`.

        Logs are scanned in spans of `block_span` blocks starting at the
        cursor's block (or `start_block`), in ascending `(block, logIndex)`
        order. `has_next_page` is set when more matching events exist past the
        returned page.
        """
        w3 = self._ensure_web3()
        contract = self._ensure_contract()
        limit = max(1, int(limit))

        start = cursor.block_number if cursor else self.start_block
        if self._empty_scan and self._empty_scan[0] == cursor:
            start = max(start, self._empty_scan[1] + 1)

        def _fetch() -> Tuple[List[LedgerEvent], int, int]:
            latest = int(w3.eth.block_number)
            collected: List[LedgerEvent] = []
            block = start
            spans = 0
            while block <= latest and spans < self.max_spans_per_query and len(collected) <= limit:
                to_block = min(latest, block + self.block_span - 1)
                raw_logs = w3.eth.get_logs({
                    "fromBlock": block,
                    "toBlock": to_block,
                    "address": self.contract_address,
                    "topics": [self._event_topic],
                })
                for raw in raw_logs:
                    try:
                        decoded = contract.events.LotteryCreated().process_log(raw)
                    except (LogTopicError, MismatchedABI) as exc:
                        logger.warning("Skipping undecodable log in block %s: %s", raw.get("blockNumber"), exc)
                        continue
                    event = parse_lottery_created(
                        decoded["args"],
                        block_number=int(decoded["blockNumber"]),
                        log_index=int(decoded["logIndex"]),
                        tx_hash=_hex(decoded["transactionHash"]),
                    )
                    if cursor is not None and event.event_id <= cursor:
                        continue
                    collected.append(event)
                block = to_block + 1
                spans += 1
            return collected, block - 1, latest

        wait_timeout = self.rpc_timeout * (self.max_spans_per_query + 2)
        collected, scanned_to, latest = await self._run(_fetch, "query_events", timeout=wait_timeout)

        collected.sort(key=lambda evt: evt.event_id)
        page = collected[:limit]
        has_next_page = len(collected) > limit or (bool(page) and scanned_to < latest)
        if page:
            self._empty_scan = None
        else:
            self._empty_scan = (cursor, scanned_to)
        logger.debug("query_events from block %s: %d events, scanned to %s of %s", start, len(page), scanned_to, latest)
        return EventPage(
            data=page,
            has_next_page=has_next_page,
            next_cursor=page[-1].event_id if page else cursor,
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    async def _send_transaction(self, function_name: str, *args) -> str:
        if not self.account:
            raise ConfigurationError("Operator account not configured")

        contract = self._ensure_contract()
        w3 = self._ensure_web3()

        def _send() -> str:
            tx_function = getattr(contract.functions, function_name)(*args)
            gas_estimate = tx_function.estimate_gas({"from": self.account.address})
            gas_price = self._gas_price_override or w3.eth.gas_price
            txn = tx_function.build_transaction(
                {
                    "from": self.account.address,
                    "gas": int(gas_estimate * self._gas_multiplier),
                    "gasPrice": gas_price,
                    "nonce": w3.eth.get_transaction_count(self.account.address, "pending"),
                    "chainId": self.chain_id or w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(txn)
            # eth-account renamed rawTransaction to raw_transaction in 0.13
            raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")
            return _hex(w3.eth.send_raw_transaction(raw))

        tx_hash = await self._run(_send, f"{function_name} transaction")
        logger.info("Sent transaction %s for %s", tx_hash, function_name)
        return tx_hash

    async def submit_draw(self, lottery_id: str) -> str:
        """Sign and submit `draw(lotteryId)`; returns the transaction hash."""
        return await self._send_transaction("draw", object_id_to_bytes(lottery_id))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    async def health_check(self) -> Dict[str, Any]:
        try:
            latest_block = await self.get_latest_block()
            return {"status": "healthy", "latestBlock": latest_block}
        except LedgerError as exc:
            logger.warning("Ledger health check failed: %s", exc)
            return {"status": "error", "detail": "ledger unreachable"}

    def get_client_status(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "rpcUrl": self.rpc_url,
            "contract": self.contract_address,
            "eventType": self.event_type,
            "operator": self.account.address if self.account else None,
        }
