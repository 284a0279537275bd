"""
Off-chain mirror for a whitelisted token crowdsale.

Runs three things against one crowdsale contract:
- an event listener that records every TokensPurchased log into sqlite
- a whitelist reconciler that submits addToWhitelist and updates the replica
- a stats endpoint that blends on-chain caps with off-chain ledger aggregates
"""

import argparse
import asyncio
import contextlib
import hmac
import json
import logging
import os
import signal
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import aiohttp
from aiohttp import web
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_utils import (
    decode_hex,
    encode_hex,
    function_signature_to_4byte_selector,
    is_address,
    keccak,
    to_checksum_address,
)

logger = logging.getLogger("crowdsale_sync")

PURCHASE_EVENT_SIGNATURE = "TokensPurchased(address,address,uint256,uint256)"
PURCHASE_TOPIC0 = encode_hex(keccak(text=PURCHASE_EVENT_SIGNATURE))

# name -> (argument types, return types)
CONTRACT_METHODS: Dict[str, Tuple[List[str], List[str]]] = {
    "isWhitelisted": (["address"], ["bool"]),
    "weiRaised": ([], ["uint256"]),
    "cap": ([], ["uint256"]),
    "softCap": ([], ["uint256"]),
    "addToWhitelist": (["address"], []),
}
READ_METHODS = {"isWhitelisted", "weiRaised", "cap", "softCap"}
WRITE_METHODS = {"addToWhitelist"}

INGEST_CHECKPOINT_KEY = "last_ingested_block"
SITE_CONTENT_KEY = "site_content"
LATEST_TRANSACTIONS_LIMIT = 5

DEFAULT_ADMIN_THEME: Dict[str, Any] = {
    "themeName": "dark-mode-default",
    "colors": {
        "primary": "#007bff",
        "secondary": "#6c757d",
        "background": "#121212",
        "text": "#ffffff",
        "danger": "#dc3545",
        "success": "#28a745",
        "info": "#17a2b8",
    },
    "layout": {"sidebarCollapsed": False, "fontSize": "medium", "direction": "ltr"},
    "fileConstraints": {
        "allowedImageMimeTypes": ["image/jpeg", "image/png", "image/webp"],
        "maxFileSize": 5 * 1024 * 1024,
        "fileTypeDescription": "JPG, JPEG, PNG or WEBP",
    },
}

DEFAULT_SITE_CONTENT: Dict[str, Any] = {
    "assets": {
        "logoUrl": "/assets/default-logo.png",
        "faviconUrl": "/assets/default-favicon.ico",
        "heroIllustrationUrl": "/assets/default-hero.svg",
    },
    "content": {
        "hero": {
            "title": "Invest in the future with FTT Token",
            "subtitle": "Join the token sale and get early access.",
        },
        "about": {
            "title": "About FTT",
            "body": "FTT Token powers a decentralized finance ecosystem.",
        },
        "roadmap": {
            "title": "Roadmap",
            "items": [
                {
                    "phase": "Q4 2024",
                    "description": "Token sale and FTT smart contract launch",
                    "style": {"backgroundColor": "#28a745"},
                },
                {
                    "phase": "Q1 2025",
                    "description": "Trading platform beta",
                    "style": {"backgroundColor": "#ffc107"},
                },
            ],
        },
    },
}


class CrowdsaleSyncError(Exception):
    pass


class InvalidAddressError(CrowdsaleSyncError, ValueError):
    pass


class RpcError(CrowdsaleSyncError):
    def __init__(self, message: str, code: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.reason = reason or message


class RpcTimeoutError(RpcError):
    pass


class CallRevertedError(RpcError):
    pass


class TransactionRevertedError(CrowdsaleSyncError):
    def __init__(self, tx_hash: Optional[str], reason: str = "transaction reverted on-chain"):
        message = f"{reason} (tx {tx_hash})" if tx_hash else reason
        super().__init__(message)
        self.tx_hash = tx_hash
        self.reason = reason


class PersistenceError(CrowdsaleSyncError):
    pass


class AggregationError(CrowdsaleSyncError):
    pass


class SignerNotConfiguredError(CrowdsaleSyncError):
    pass


def normalize_address(addr: Any) -> str:
    if not isinstance(addr, str):
        raise InvalidAddressError(f"address must be a string, got: {type(addr).__name__}")
    addr = addr.strip()
    if not addr.startswith(("0x", "0X")) or not is_address(addr):
        raise InvalidAddressError(f"invalid address format: {addr}")
    return addr.lower()


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def parse_checkpoint(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("ignoring corrupt ingest checkpoint %r", value)
        return None


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    if len(topic) != 64:
        raise ValueError(f"address topic must be 32 bytes, got {len(topic) // 2}")
    return "0x" + topic[-40:]


def format_units(value: int, decimals: int = 18) -> str:
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(int(value)), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_str}"


def format_ether(wei: int) -> str:
    return format_units(wei, 18)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def encode_call(method: str, args: Sequence[Any]) -> str:
    if method not in CONTRACT_METHODS:
        raise ValueError(f"unknown contract method: {method}")
    arg_types, _ = CONTRACT_METHODS[method]
    if len(args) != len(arg_types):
        raise ValueError(f"{method} expects {len(arg_types)} argument(s), got {len(args)}")
    signature = f"{method}({','.join(arg_types)})"
    values = [
        to_checksum_address(a) if t == "address" else a
        for t, a in zip(arg_types, args)
    ]
    return encode_hex(function_signature_to_4byte_selector(signature) + abi_encode(arg_types, values))


def decode_result(method: str, output: Optional[str]) -> Any:
    _, return_types = CONTRACT_METHODS[method]
    if not output or output == "0x":
        raise CallRevertedError(f"{method} returned no data", reason=f"{method} returned no data")
    try:
        values = abi_decode(return_types, decode_hex(output))
    except DecodingError as e:
        raise RpcError(f"{method} returned undecodable data: {e}") from e
    return values[0] if len(values) == 1 else values


def rpc_error_from_payload(method: str, error: Any) -> RpcError:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message") or error)
    else:
        code = None
        message = str(error)
    cls = CallRevertedError if "revert" in message.lower() else RpcError
    return cls(f"{method} failed: {message}", code=code, reason=message)


@dataclass
class AppConfig:
    chain_id: int
    http_rpc_url: str
    ws_rpc_url: str
    crowdsale_address: str
    owner_private_key: Optional[str]
    admin_api_key: Optional[str]
    sqlite_path: str
    api_host: str
    api_port: int
    cors_allow_origins: List[str]
    max_rpc_retries: int
    rpc_timeout_sec: float
    tx_wait_timeout_sec: float
    tx_poll_interval_sec: float
    confirmations: int
    reconnect_backoff_min_sec: float
    reconnect_backoff_max_sec: float
    replay_blocks: int
    backfill_chunk_blocks: int
    stats_lenient: bool
    log_level: str
    stable_subscription_sec: float = 30


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    http_rpc_url = str(raw["HTTP_RPC_URL"]).strip()
    ws_rpc_url = str(raw["WS_RPC_URL"]).strip()
    if not http_rpc_url or not ws_rpc_url:
        raise ValueError("HTTP_RPC_URL and WS_RPC_URL are required")
    crowdsale_address = normalize_address(raw["CROWDSALE_ADDRESS"])

    owner_private_key = os.environ.get("OWNER_PRIVATE_KEY") or raw.get("OWNER_PRIVATE_KEY") or None
    admin_api_key = os.environ.get("ADMIN_API_KEY") or raw.get("ADMIN_API_KEY") or None

    confirmations = int(raw.get("CONFIRMATIONS", 1))
    if confirmations <= 0:
        raise ValueError("CONFIRMATIONS must be >= 1")
    backoff_min = float(raw.get("RECONNECT_BACKOFF_MIN_SEC", 1))
    backoff_max = float(raw.get("RECONNECT_BACKOFF_MAX_SEC", 60))
    if backoff_min <= 0 or backoff_max < backoff_min:
        raise ValueError("reconnect backoff must satisfy 0 < MIN <= MAX")
    tx_wait_timeout_sec = float(raw.get("TX_WAIT_TIMEOUT_SEC", 180))
    if tx_wait_timeout_sec <= 0:
        raise ValueError("TX_WAIT_TIMEOUT_SEC must be > 0")

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    return AppConfig(
        chain_id=int(raw.get("CHAIN_ID", 11155111)),
        http_rpc_url=http_rpc_url,
        ws_rpc_url=ws_rpc_url,
        crowdsale_address=crowdsale_address,
        owner_private_key=owner_private_key,
        admin_api_key=admin_api_key,
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/crowdsale.db")),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 5000)),
        cors_allow_origins=cors_allow_origins,
        max_rpc_retries=max(1, int(raw.get("MAX_RPC_RETRIES", 5))),
        rpc_timeout_sec=float(raw.get("RPC_TIMEOUT_SEC", 12)),
        tx_wait_timeout_sec=tx_wait_timeout_sec,
        tx_poll_interval_sec=float(raw.get("TX_POLL_INTERVAL_SEC", 2)),
        confirmations=confirmations,
        reconnect_backoff_min_sec=backoff_min,
        reconnect_backoff_max_sec=backoff_max,
        replay_blocks=max(0, int(raw.get("REPLAY_BLOCKS", 20))),
        backfill_chunk_blocks=max(1, int(raw.get("BACKFILL_CHUNK_BLOCKS", 500))),
        stats_lenient=_parse_bool(raw.get("STATS_LENIENT", True)),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        stable_subscription_sec=max(0.0, float(raw.get("STABLE_SUBSCRIPTION_SEC", 30))),
    )


class RPCClient:
    def __init__(self, url: str, max_retries: int = 5, timeout_sec: float = 12):
        self.url = url
        self.max_retries = max_retries
        self.timeout_sec = timeout_sec
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any], retries: Optional[int] = None) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        attempts = self.max_retries if retries is None else max(1, retries)
        backoff = 0.5
        for attempt in range(1, attempts + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    data = await resp.json(content_type=None)
            except asyncio.TimeoutError as e:
                failure: RpcError = RpcTimeoutError(
                    f"{method} timed out after {self.timeout_sec}s", reason="rpc timeout"
                )
                cause: Exception = e
            except (aiohttp.ClientError, ValueError) as e:
                failure = RpcError(f"{method} transport error: {e}")
                cause = e
            else:
                if not isinstance(data, dict):
                    raise RpcError(f"{method} returned a malformed response")
                if "error" in data:
                    raise rpc_error_from_payload(method, data["error"])
                return data.get("result")

            if attempt >= attempts:
                raise failure from cause
            logger.debug("rpc %s attempt %d failed: %s", method, attempt, failure)
            await asyncio.sleep(backoff)
            backoff *= 2

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result


@dataclass
class PendingTransaction:
    tx_hash: str
    nonce: int
    method: str


class ChainClient:
    """
    Read and write access to the crowdsale contract.

    Reads go straight to the node and may run concurrently. Writes are signed
    by the single configured owner key and serialized by a lock so that nonces
    are handed out one at a time.
    """

    def __init__(
        self,
        rpc: RPCClient,
        contract_address: str,
        private_key: Optional[str] = None,
        chain_id: int = 11155111,
        confirmations: int = 1,
        tx_wait_timeout_sec: float = 180,
        poll_interval_sec: float = 2,
        backfill_chunk_blocks: int = 500,
    ):
        self.rpc = rpc
        self.contract_address = to_checksum_address(normalize_address(contract_address))
        self.chain_id = chain_id
        self.confirmations = max(1, confirmations)
        self.tx_wait_timeout_sec = tx_wait_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.backfill_chunk_blocks = max(1, backfill_chunk_blocks)
        self._account = Account.from_key(private_key) if private_key else None
        self._write_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._last_tx_hash: Optional[str] = None

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def read_call(self, method: str, args: Sequence[Any] = ()) -> Any:
        if method not in READ_METHODS:
            raise ValueError(f"{method} is not a read-only contract method")
        data = encode_call(method, args)
        output = await self.rpc.eth_call(self.contract_address, data)
        return decode_result(method, output)

    async def read_optional(self, method: str, args: Sequence[Any] = (), default: Any = None) -> Any:
        try:
            return await self.read_call(method, args)
        except CallRevertedError:
            logger.debug("contract does not implement %s, using default %r", method, default)
            return default

    async def write_call(self, method: str, args: Sequence[Any] = ()) -> PendingTransaction:
        if method not in WRITE_METHODS:
            raise ValueError(f"{method} is not a state-changing contract method")
        if self._account is None:
            raise SignerNotConfiguredError("OWNER_PRIVATE_KEY is not configured; write calls are disabled")
        data = encode_call(method, args)
        sender = self._account.address

        async with self._write_lock:
            pending_nonce = parse_hex_int(
                await self.rpc.call("eth_getTransactionCount", [sender, "pending"])
            )
            if self._next_nonce is not None and pending_nonce < self._next_nonce:
                await self._drop_stale_nonce(pending_nonce)
            nonce = pending_nonce if self._next_nonce is None else max(pending_nonce, self._next_nonce)
            try:
                gas = parse_hex_int(
                    await self.rpc.call(
                        "eth_estimateGas",
                        [{"from": sender, "to": self.contract_address, "data": data}],
                    )
                )
            except CallRevertedError as e:
                raise TransactionRevertedError(None, e.reason) from e
            gas_price = parse_hex_int(await self.rpc.call("eth_gasPrice", []))
            signed = self._account.sign_transaction(
                {
                    "nonce": nonce,
                    "gasPrice": gas_price,
                    "gas": gas * 6 // 5,
                    "to": self.contract_address,
                    "value": 0,
                    "data": data,
                    "chainId": self.chain_id,
                }
            )
            tx_hash = encode_hex(signed.hash)
            try:
                await self.rpc.call(
                    "eth_sendRawTransaction", [encode_hex(signed.raw_transaction)], retries=1
                )
            except RpcError:
                self._next_nonce = None
                raise
            self._next_nonce = nonce + 1
            self._last_tx_hash = tx_hash

        logger.info("submitted %s tx %s (nonce %d)", method, tx_hash, nonce)
        return PendingTransaction(tx_hash=tx_hash, nonce=nonce, method=method)

    async def _drop_stale_nonce(self, pending_nonce: int) -> None:
        # node is behind our local nonce: keep ours only while our last tx is still known
        known = None
        if self._last_tx_hash:
            known = await self.rpc.call("eth_getTransactionByHash", [self._last_tx_hash])
        if known is None:
            logger.warning(
                "tx %s unknown to node, reusing pending nonce %d instead of %d",
                self._last_tx_hash,
                pending_nonce,
                self._next_nonce,
            )
            self._next_nonce = None

    def reset_nonce(self) -> None:
        self._next_nonce = None

    async def await_finality(
        self, pending: PendingTransaction, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        wait_sec = self.tx_wait_timeout_sec if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._poll_receipt(pending.tx_hash), timeout=wait_sec)
        except asyncio.TimeoutError as e:
            # the tx may have been dropped; the next write re-reads the node's pending nonce
            self.reset_nonce()
            raise RpcTimeoutError(
                f"transaction {pending.tx_hash} not final after {wait_sec}s",
                reason="timed out waiting for transaction finality",
            ) from e

    async def _poll_receipt(self, tx_hash: str) -> Dict[str, Any]:
        while True:
            receipt = await self.rpc.get_receipt(tx_hash)
            if receipt and receipt.get("blockNumber"):
                if receipt.get("status") is not None and parse_hex_int(receipt["status"]) == 0:
                    raise TransactionRevertedError(tx_hash)
                if self.confirmations <= 1:
                    return receipt
                latest = await self.rpc.get_latest_block_number()
                if latest - parse_hex_int(receipt["blockNumber"]) + 1 >= self.confirmations:
                    return receipt
            await asyncio.sleep(self.poll_interval_sec)

    async def get_latest_block_number(self) -> int:
        return await self.rpc.get_latest_block_number()

    def purchase_log_filter(self) -> Dict[str, Any]:
        return {"address": self.contract_address, "topics": [PURCHASE_TOPIC0]}

    async def get_purchase_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        cursor = from_block
        while cursor <= to_block:
            chunk_end = min(to_block, cursor + self.backfill_chunk_blocks - 1)
            logs.extend(
                await self.rpc.get_logs(
                    cursor, chunk_end, address=self.contract_address, topics=[PURCHASE_TOPIC0]
                )
            )
            cursor = chunk_end + 1
        return logs


@dataclass
class PurchaseEvent:
    purchaser: str
    beneficiary: str
    wei_paid: int
    token_amount: int
    tx_hash: str
    block_number: int
    log_index: int
    observed_at: str


def decode_purchase_log(log: Dict[str, Any], observed_at: Optional[str] = None) -> PurchaseEvent:
    topics = log.get("topics") or []
    if len(topics) != 3 or str(topics[0]).lower() != PURCHASE_TOPIC0:
        raise ValueError("log is not a TokensPurchased event")
    tx_hash = log.get("transactionHash")
    if not tx_hash:
        raise ValueError("log has no transactionHash")
    try:
        wei_paid, token_amount = abi_decode(["uint256", "uint256"], decode_hex(log.get("data") or "0x"))
    except DecodingError as e:
        raise ValueError(f"undecodable event data: {e}") from e
    return PurchaseEvent(
        purchaser=decode_topic_address(topics[1]),
        beneficiary=decode_topic_address(topics[2]),
        wei_paid=int(wei_paid),
        token_amount=int(token_amount),
        tx_hash=str(tx_hash).lower(),
        block_number=parse_hex_int(log.get("blockNumber")),
        log_index=parse_hex_int(log.get("logIndex")),
        observed_at=observed_at or utc_now_iso(),
    )


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextlib.contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except sqlite3.Error as e:
                with contextlib.suppress(sqlite3.Error):
                    self.conn.rollback()
                raise PersistenceError(f"{type(e).__name__}: {e}") from e

    def _init_schema(self) -> None:
        with self._tx() as conn:
            conn.executescript(
                """
                PRAGMA journal_mode=WAL;
                PRAGMA synchronous=NORMAL;

                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tx_hash TEXT NOT NULL UNIQUE,
                    user_address TEXT NOT NULL,
                    beneficiary_address TEXT NOT NULL,
                    eth_amount_wei TEXT NOT NULL,
                    token_amount_wei TEXT NOT NULL,
                    eth_amount TEXT NOT NULL,
                    token_amount TEXT NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_transactions_created_at
                    ON transactions(created_at);

                CREATE TABLE IF NOT EXISTS whitelist_status (
                    user_address TEXT PRIMARY KEY,
                    is_whitelisted_on_chain INTEGER NOT NULL,
                    whitelisted_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS site_settings (
                    setting_key TEXT PRIMARY KEY,
                    setting_value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS dead_letters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tx_hash TEXT,
                    reason TEXT NOT NULL,
                    payload TEXT,
                    created_at INTEGER NOT NULL
                );
                """
            )

    def get_state(self, key: str) -> Optional[str]:
        with self._tx() as conn:
            row = conn.execute("SELECT value FROM system_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._tx() as conn:
            self._set_state(conn, key, value)

    def _set_state(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            """
            INSERT INTO system_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, int(time.time())),
        )

    def insert_purchase(self, event: PurchaseEvent, checkpoint_ceiling: Optional[int] = None) -> bool:
        """
        Insert one purchase and advance the ingest checkpoint in the same commit.

        The checkpoint never moves past ``checkpoint_ceiling``: that is the
        lowest block holding a purchase that failed to persist, which replay
        must revisit.
        """
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO transactions(
                    tx_hash, user_address, beneficiary_address,
                    eth_amount_wei, token_amount_wei, eth_amount, token_amount,
                    block_number, log_index, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.tx_hash,
                    event.purchaser,
                    event.beneficiary,
                    str(event.wei_paid),
                    str(event.token_amount),
                    format_ether(event.wei_paid),
                    format_ether(event.token_amount),
                    event.block_number,
                    event.log_index,
                    event.observed_at,
                ),
            )
            inserted = cur.rowcount == 1
            row = conn.execute(
                "SELECT value FROM system_state WHERE key = ?", (INGEST_CHECKPOINT_KEY,)
            ).fetchone()
            current = parse_checkpoint(row["value"] if row else None)
            target = event.block_number
            if checkpoint_ceiling is not None:
                target = min(target, checkpoint_ceiling)
            if target > (current or 0):
                self._set_state(conn, INGEST_CHECKPOINT_KEY, str(target))
        return inserted

    def get_purchase(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE tx_hash = ?", (tx_hash.lower(),)
            ).fetchone()
        return dict(row) if row else None

    def count_transactions(self) -> int:
        with self._tx() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM transactions").fetchone()
        return int(row["n"])

    def latest_transactions(self, limit_n: int = LATEST_TRANSACTIONS_LIMIT) -> List[Dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT tx_hash, user_address, eth_amount, token_amount, created_at
                FROM transactions
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit_n,),
            ).fetchall()
        return [dict(r) for r in rows]

    def upsert_whitelist(self, address: str, on_chain: bool, whitelisted_at: str) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO whitelist_status(user_address, is_whitelisted_on_chain, whitelisted_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_address) DO UPDATE SET
                    is_whitelisted_on_chain = excluded.is_whitelisted_on_chain,
                    whitelisted_at = excluded.whitelisted_at
                """,
                (address.lower(), 1 if on_chain else 0, whitelisted_at),
            )

    def get_whitelist_record(self, address: str) -> Optional[Dict[str, Any]]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM whitelist_status WHERE user_address = ?", (address.lower(),)
            ).fetchone()
        if not row:
            return None
        out = dict(row)
        out["is_whitelisted_on_chain"] = bool(out["is_whitelisted_on_chain"])
        return out

    def count_whitelist(self) -> int:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM whitelist_status WHERE is_whitelisted_on_chain = 1"
            ).fetchone()
        return int(row["n"])

    def save_dead_letter(self, tx_hash: Optional[str], reason: str, payload: Optional[Dict[str, Any]]) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO dead_letters(tx_hash, reason, payload, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    tx_hash,
                    reason,
                    json.dumps(payload, ensure_ascii=False, default=str) if payload else None,
                    int(time.time()),
                ),
            )

    def list_dead_letters(self, limit_n: int = 50) -> List[Dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM dead_letters ORDER BY id DESC LIMIT ?", (limit_n,)
            ).fetchall()
        return [dict(r) for r in rows]

    def get_site_setting(self, key: str) -> Optional[Any]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT setting_value FROM site_settings WHERE setting_key = ?", (key,)
            ).fetchone()
        return json.loads(row["setting_value"]) if row else None

    def set_site_setting(self, key: str, value: Any) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO site_settings(setting_key, setting_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value, ensure_ascii=False), int(time.time())),
            )


class IngestorState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class EventIngestor:
    """
    Mirrors TokensPurchased logs into the transactions table.

    A subscription task owns the websocket and the reconnect backoff. Every
    new subscription also starts a retried replay of the blocks missed while
    disconnected, next to the live stream. Both only decode logs and put them
    on a queue. A separate persist task drains the queue and does the
    idempotent insert, so a bad row never stalls the subscription.

    A purchase that fails to persist is dead-lettered and pins the ingest
    checkpoint at its block until it is stored, so replay revisits it.
    """

    def __init__(
        self,
        chain: ChainClient,
        storage: Storage,
        ws_url: str,
        backoff_min_sec: float = 1,
        backoff_max_sec: float = 60,
        replay_blocks: int = 20,
        queue_size: int = 10000,
        stable_after_sec: float = 30,
    ):
        self.chain = chain
        self.storage = storage
        self.ws_url = ws_url
        self.backoff_min_sec = backoff_min_sec
        self.backoff_max_sec = backoff_max_sec
        self.replay_blocks = replay_blocks
        self.stable_after_sec = stable_after_sec
        self.ws_timeout = aiohttp.ClientTimeout(total=None)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.state = IngestorState.DISCONNECTED
        self.subscribed_since: Optional[float] = None
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.stats: Dict[str, Any] = {
            "received": 0,
            "inserted": 0,
            "duplicates": 0,
            "removed_skipped": 0,
            "bad_frames": 0,
            "persist_errors": 0,
            "replay_errors": 0,
            "dead_letters": 0,
            "reconnects": 0,
            "last_block": 0,
        }
        # tx_hash -> block of purchases that failed to persist
        self.failed_blocks: Dict[str, int] = {}
        self._sleep: Callable[[float], Any] = asyncio.sleep

    async def start(self) -> None:
        self.stop_event.clear()
        self.tasks.append(asyncio.create_task(self.subscription_loop()))
        self.tasks.append(asyncio.create_task(self.persist_loop()))

    async def stop(self) -> None:
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self.tasks = []
        while not self.queue.empty():
            await self._persist_contained(self.queue.get_nowait())
            self.queue.task_done()
        self.state = IngestorState.DISCONNECTED

    def _was_stable(self) -> bool:
        if self.subscribed_since is None:
            return False
        return time.monotonic() - self.subscribed_since >= self.stable_after_sec

    async def subscription_loop(self) -> None:
        backoff = self.backoff_min_sec
        while not self.stop_event.is_set():
            self.state = IngestorState.CONNECTING
            self.subscribed_since = None
            try:
                await self._subscribe_once()
            except asyncio.CancelledError:
                self.state = IngestorState.DISCONNECTED
                raise
            except Exception as e:
                logger.warning("purchase subscription dropped: %s: %s", type(e).__name__, e)
            self.state = IngestorState.DISCONNECTED
            if self.stop_event.is_set():
                break
            if self._was_stable():
                backoff = self.backoff_min_sec
            delay = backoff
            backoff = min(backoff * 2, self.backoff_max_sec)
            self.stats["reconnects"] += 1
            logger.info("reconnecting purchase subscription in %.1fs", delay)
            await self._sleep(delay)

    async def _subscribe_once(self) -> None:
        async with aiohttp.ClientSession(timeout=self.ws_timeout) as session:
            async with session.ws_connect(self.ws_url, heartbeat=20) as ws:
                await ws.send_json(
                    {
                        "jsonrpc": "2.0",
                        "id": 1,
                        "method": "eth_subscribe",
                        "params": ["logs", self.chain.purchase_log_filter()],
                    }
                )
                subscription_id = await self._await_subscription(ws)
                self.state = IngestorState.SUBSCRIBED
                self.subscribed_since = time.monotonic()
                logger.info("subscribed to TokensPurchased on %s", self.chain.contract_address)

                # live logs flow while missed blocks are fetched
                replay = asyncio.create_task(self.replay_with_retry())
                try:
                    await self._receive_logs(ws, subscription_id)
                finally:
                    replay.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await replay

    async def _receive_logs(self, ws: aiohttp.ClientWebSocketResponse, subscription_id: str) -> None:
        while not self.stop_event.is_set():
            try:
                msg = await ws.receive(timeout=5)
            except asyncio.TimeoutError:
                continue
            if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                raise RpcError(f"websocket closed: {msg.type.name}")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            data = self._parse_frame(msg)
            if data is None or data.get("method") != "eth_subscription":
                continue
            params = data.get("params")
            if not isinstance(params, dict) or params.get("subscription") != subscription_id:
                continue
            log = params.get("result")
            if not isinstance(log, dict):
                self.stats["bad_frames"] += 1
                logger.warning("skipping subscription frame without a log object: %.200s", msg.data)
                continue
            await self.handle_log(log)

    def _parse_frame(self, msg: aiohttp.WSMessage) -> Optional[Dict[str, Any]]:
        try:
            data = msg.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            self.stats["bad_frames"] += 1
            logger.warning("skipping malformed websocket frame: %.200s", msg.data)
            return None
        return data

    async def _await_subscription(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        while True:
            msg = await ws.receive(timeout=10)
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise RpcError(f"websocket closed before subscription: {msg.type.name}")
            data = self._parse_frame(msg)
            if data is None or data.get("id") != 1:
                continue
            if "error" in data:
                raise rpc_error_from_payload("eth_subscribe", data["error"])
            return str(data.get("result"))

    async def replay_with_retry(self) -> None:
        delay = self.backoff_min_sec
        while not self.stop_event.is_set():
            try:
                replayed = await self.replay_missed()
            except Exception as e:
                self.stats["replay_errors"] += 1
                logger.warning(
                    "replay of missed blocks failed, retrying in %.1fs: %s: %s",
                    delay,
                    type(e).__name__,
                    e,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self.backoff_max_sec)
                continue
            if replayed:
                logger.info("replayed %d purchase log(s) from missed blocks", replayed)
            return

    async def replay_missed(self) -> int:
        head = await self.chain.get_latest_block_number()
        checkpoint = parse_checkpoint(
            await asyncio.to_thread(self.storage.get_state, INGEST_CHECKPOINT_KEY)
        )
        # the checkpoint block itself is replayed: its other logs may still be queued
        start = checkpoint if checkpoint is not None else max(0, head - self.replay_blocks)
        ceiling = self.checkpoint_ceiling()
        if ceiling is not None:
            start = min(start, ceiling)
        if start > head:
            return 0
        logs = await self.chain.get_purchase_logs(start, head)
        for log in logs:
            await self.handle_log(log)
        return len(logs)

    async def handle_log(self, log: Dict[str, Any]) -> None:
        self.stats["received"] += 1
        if log.get("removed"):
            self.stats["removed_skipped"] += 1
            logger.warning("skipping removed log from tx %s", log.get("transactionHash"))
            return
        try:
            event = decode_purchase_log(log)
        except ValueError as e:
            logger.error("undecodable purchase log %s: %s", log.get("transactionHash"), e)
            await self._dead_letter(log.get("transactionHash"), f"decode_failed: {e}", log)
            return
        self.stats["last_block"] = max(self.stats["last_block"], event.block_number)
        await self.queue.put(event)

    async def _dead_letter(self, tx_hash: Optional[str], reason: str, payload: Dict[str, Any]) -> None:
        self.stats["dead_letters"] += 1
        try:
            await asyncio.to_thread(self.storage.save_dead_letter, tx_hash, reason, payload)
        except PersistenceError:
            logger.exception("failed to record dead letter for tx %s", tx_hash)

    def checkpoint_ceiling(self) -> Optional[int]:
        return min(self.failed_blocks.values()) if self.failed_blocks else None

    async def persist_loop(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self._persist_contained(event)
            finally:
                self.queue.task_done()

    async def _persist_contained(self, event: PurchaseEvent) -> None:
        try:
            await self.persist_event(event)
        except Exception:
            self.stats["persist_errors"] += 1
            self.failed_blocks[event.tx_hash] = event.block_number
            logger.exception("unexpected error persisting purchase tx %s", event.tx_hash)

    async def persist_event(self, event: PurchaseEvent) -> bool:
        self.failed_blocks.pop(event.tx_hash, None)
        try:
            inserted = await asyncio.to_thread(
                self.storage.insert_purchase, event, self.checkpoint_ceiling()
            )
        except PersistenceError as e:
            self.stats["persist_errors"] += 1
            self.failed_blocks[event.tx_hash] = event.block_number
            logger.exception("failed to persist purchase tx %s", event.tx_hash)
            await self._dead_letter(event.tx_hash, f"persist_failed: {e}", asdict(event))
            return False
        if inserted:
            self.stats["inserted"] += 1
            logger.info(
                "recorded purchase tx %s: %s paid %s ETH for %s tokens",
                event.tx_hash,
                event.purchaser,
                format_ether(event.wei_paid),
                format_ether(event.token_amount),
            )
        else:
            self.stats["duplicates"] += 1
            logger.debug("purchase tx %s already recorded", event.tx_hash)
        return inserted


@dataclass
class WhitelistResult:
    account: str
    already_whitelisted: bool
    tx_hash: Optional[str] = None
    replica_updated: bool = True


class WhitelistReconciler:
    def __init__(self, chain: ChainClient, storage: Storage):
        self.chain = chain
        self.storage = storage

    async def is_whitelisted(self, account: str) -> bool:
        address = normalize_address(account)
        return bool(await self.chain.read_call("isWhitelisted", [address]))

    async def ensure_whitelisted(self, account: str) -> WhitelistResult:
        address = normalize_address(account)

        if await self.chain.read_call("isWhitelisted", [address]):
            replica_updated = await self._record_whitelisted(address, after_tx=False)
            return WhitelistResult(
                account=address, already_whitelisted=True, replica_updated=replica_updated
            )

        logger.info("addToWhitelist: %s", address)
        pending = await self.chain.write_call("addToWhitelist", [address])
        receipt = await self.chain.await_finality(pending)
        tx_hash = receipt.get("transactionHash") or pending.tx_hash
        replica_updated = await self._record_whitelisted(address, after_tx=True)
        return WhitelistResult(
            account=address,
            already_whitelisted=False,
            tx_hash=tx_hash,
            replica_updated=replica_updated,
        )

    async def _record_whitelisted(self, address: str, after_tx: bool) -> bool:
        try:
            await asyncio.to_thread(self.storage.upsert_whitelist, address, True, utc_now_iso())
            return True
        except PersistenceError:
            if after_tx:
                logger.exception(
                    "%s is whitelisted on-chain but the local replica update failed; replica is stale",
                    address,
                )
            else:
                logger.warning("could not refresh whitelist replica for %s", address, exc_info=True)
            return False


class StatsAggregator:
    def __init__(
        self,
        chain: ChainClient,
        storage: Storage,
        lenient: bool = True,
        latest_limit: int = LATEST_TRANSACTIONS_LIMIT,
    ):
        self.chain = chain
        self.storage = storage
        self.lenient = lenient
        self.latest_limit = latest_limit

    async def _offchain(self, fn: Callable[..., Any], default: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except PersistenceError:
            if not self.lenient:
                raise
            logger.warning("%s failed, using %r", fn.__name__, default, exc_info=True)
            return default

    async def compute_stats(self) -> Dict[str, Any]:
        try:
            whitelist_count, tx_count, latest, cap_wei, softcap_wei = await asyncio.gather(
                self._offchain(self.storage.count_whitelist, 0),
                self._offchain(self.storage.count_transactions, 0),
                self._offchain(self.storage.latest_transactions, [], self.latest_limit),
                self.chain.read_call("cap"),
                self.chain.read_optional("softCap", default=0),
            )
        except (RpcError, PersistenceError) as e:
            raise AggregationError(str(e)) from e

        return {
            "whitelistCount": int(whitelist_count or 0),
            "transactionCount": int(tx_count or 0),
            "latestTransactions": [
                {
                    "txHash": r["tx_hash"],
                    "address": r["user_address"],
                    "ethAmount": r["eth_amount"],
                    "tokenAmount": r["token_amount"],
                    "createdAt": r["created_at"],
                }
                for r in (latest or [])
            ],
            "hardcapEth": format_ether(cap_wei),
            "softcapEth": format_ether(softcap_wei or 0),
        }

    async def compute_raised(self) -> Dict[str, str]:
        try:
            wei_raised = await self.chain.read_call("weiRaised")
        except RpcError as e:
            raise AggregationError(str(e)) from e
        return {"ethRaised": format_ether(wei_raised)}


def error_response(message: str, exc: Optional[BaseException] = None, status: int = 500) -> web.Response:
    body: Dict[str, Any] = {"error": message}
    if exc is not None:
        body["details"] = getattr(exc, "reason", None) or str(exc)
    return web.json_response(body, status=status)


class CrowdsaleSync:
    def __init__(
        self,
        cfg: AppConfig,
        role: str = "all",
        chain: Optional[ChainClient] = None,
        storage: Optional[Storage] = None,
    ):
        if role not in {"all", "api", "listener"}:
            raise ValueError(f"invalid role: {role}")
        self.cfg = cfg
        self.role = role
        self.enable_api = role in {"all", "api"}
        self.enable_listener = role in {"all", "listener"}
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.storage = storage or Storage(cfg.sqlite_path)
        self.rpc: Optional[RPCClient] = None
        if chain is None:
            self.rpc = RPCClient(
                cfg.http_rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.rpc_timeout_sec
            )
            chain = ChainClient(
                self.rpc,
                cfg.crowdsale_address,
                private_key=cfg.owner_private_key if self.enable_api else None,
                chain_id=cfg.chain_id,
                confirmations=cfg.confirmations,
                tx_wait_timeout_sec=cfg.tx_wait_timeout_sec,
                poll_interval_sec=cfg.tx_poll_interval_sec,
                backfill_chunk_blocks=cfg.backfill_chunk_blocks,
            )
        self.chain = chain
        self.ingestor = EventIngestor(
            chain,
            self.storage,
            cfg.ws_rpc_url,
            backoff_min_sec=cfg.reconnect_backoff_min_sec,
            backoff_max_sec=cfg.reconnect_backoff_max_sec,
            replay_blocks=cfg.replay_blocks,
            stable_after_sec=cfg.stable_subscription_sec,
        )
        self.reconciler = WhitelistReconciler(chain, self.storage)
        self.aggregator = StatsAggregator(chain, self.storage, lenient=cfg.stats_lenient)
        self.stop_event = asyncio.Event()

    async def __aenter__(self) -> "CrowdsaleSync":
        if self.rpc is not None:
            await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        if self.rpc is not None:
            await self.rpc.__aexit__(exc_type, exc, tb)
        self.storage.close()

    async def whitelist_add_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json body"}, status=400)
        account = payload.get("account") if isinstance(payload, dict) else None
        if not account:
            return web.json_response({"error": "invalid Ethereum address"}, status=400)

        try:
            result = await self.reconciler.ensure_whitelisted(account)
        except InvalidAddressError:
            return web.json_response({"error": "invalid Ethereum address"}, status=400)
        except CrowdsaleSyncError as e:
            logger.error("whitelist add for %s failed: %s", account, e)
            return error_response("failed to process whitelist transaction", e)

        if result.already_whitelisted:
            message = f"address {result.account} is already whitelisted on-chain"
        else:
            message = f"address {result.account} added to the whitelist"
        body: Dict[str, Any] = {
            "success": True,
            "message": message,
            "replicaUpdated": result.replica_updated,
        }
        if result.tx_hash:
            body["txHash"] = result.tx_hash
        return web.json_response(body)

    async def stats_handler(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(await self.aggregator.compute_stats())
        except AggregationError as e:
            logger.error("failed to load admin stats: %s", e)
            return error_response("failed to load admin stats", e)

    async def raised_handler(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(await self.aggregator.compute_raised())
        except AggregationError as e:
            logger.error("failed to read weiRaised: %s", e)
            return error_response("failed to read total funds raised", e)

    async def whitelist_status_handler(self, request: web.Request) -> web.Response:
        address = str(request.match_info.get("address", "")).strip()
        try:
            status = await self.reconciler.is_whitelisted(address)
        except InvalidAddressError:
            return web.json_response({"error": "invalid address"}, status=400)
        except RpcError as e:
            logger.error("whitelist status for %s failed: %s", address, e)
            return error_response("failed to read whitelist status", e)
        return web.json_response({"isWhitelisted": status})

    async def site_settings_handler(self, request: web.Request) -> web.Response:
        try:
            content = await asyncio.to_thread(self.storage.get_site_setting, SITE_CONTENT_KEY)
        except PersistenceError as e:
            logger.error("failed to load site settings: %s", e)
            return error_response("failed to load site settings", e)
        return web.json_response(
            {"theme": DEFAULT_ADMIN_THEME, "content": content or DEFAULT_SITE_CONTENT}
        )

    async def site_settings_update_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json body"}, status=400)
        content = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(content, dict):
            return web.json_response({"error": "content must be a JSON object"}, status=400)
        try:
            await asyncio.to_thread(self.storage.set_site_setting, SITE_CONTENT_KEY, content)
        except PersistenceError as e:
            logger.error("failed to save site settings: %s", e)
            return error_response("failed to save site settings", e)
        return web.json_response({"success": True, "content": content})

    async def health_handler(self, request: web.Request) -> web.Response:
        try:
            last_block = await asyncio.to_thread(self.storage.get_state, INGEST_CHECKPOINT_KEY)
        except PersistenceError:
            last_block = None
        return web.json_response(
            {
                "ok": True,
                "role": self.role,
                "contract": self.chain.contract_address,
                "signer": getattr(self.chain, "signer_address", None),
                "ingestor": {
                    "enabled": self.enable_listener,
                    "state": self.ingestor.state.value,
                    "queueSize": self.ingestor.queue.qsize(),
                    "stats": dict(self.ingestor.stats),
                },
                "lastIngestedBlock": last_block,
            }
        )

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,X-API-Key"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        @web.middleware
        async def admin_auth_middleware(request: web.Request, handler):
            if not request.path.startswith("/api/admin/"):
                return await handler(request)
            if not self.cfg.admin_api_key:
                logger.error("ADMIN_API_KEY is not configured; admin endpoints are disabled")
                return web.json_response({"error": "admin key is not configured"}, status=500)
            api_key = request.headers.get("X-API-Key", "")
            if not api_key or not hmac.compare_digest(api_key, self.cfg.admin_api_key):
                return web.json_response({"error": "invalid admin API key"}, status=401)
            return await handler(request)

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        middlewares.append(admin_auth_middleware)
        app = web.Application(middlewares=middlewares)
        app.router.add_post("/api/admin/whitelist/add", self.whitelist_add_handler)
        app.router.add_get("/api/admin/stats", self.stats_handler)
        app.router.add_post("/api/admin/site-settings", self.site_settings_update_handler)
        app.router.add_get("/api/public/raised", self.raised_handler)
        app.router.add_get("/api/public/weiraised", self.raised_handler)
        app.router.add_get("/api/public/whitelist-status/{address}", self.whitelist_status_handler)
        app.router.add_get("/api/public/site-settings", self.site_settings_handler)
        app.router.add_get("/health", self.health_handler)
        return app

    async def run(self) -> None:
        if self.enable_listener:
            await self.ingestor.start()

        runner: Optional[web.AppRunner] = None
        if self.enable_api:
            app = await self.create_api_app()
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info(
                "api listening on http://%s:%d (signer %s, contract %s)",
                self.cfg.api_host,
                self.cfg.api_port,
                getattr(self.chain, "signer_address", None) or "none",
                self.chain.contract_address,
            )

        while not self.stop_event.is_set():
            await asyncio.sleep(1)

        if runner is not None:
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        if self.enable_listener:
            await self.ingestor.stop()


async def main_async(config_path: str, role: str) -> None:
    cfg = load_config(config_path)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with CrowdsaleSync(cfg, role=role) as app:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(app.run())
        wait_task = asyncio.create_task(stop_event.wait())

        await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        wait_task.cancel()
        await app.shutdown()
        # run() notices stop_event within a second and tears down the API runner
        await run_task


def main() -> None:
    parser = argparse.ArgumentParser(description="Crowdsale on-chain/off-chain sync service")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument(
        "--role",
        default="all",
        choices=["all", "api", "listener"],
        help="run role: all | api | listener",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config, args.role))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
