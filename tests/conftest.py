import json
from typing import Any, Dict, List, Optional, Set

import pytest
from eth_abi import encode as abi_encode
from eth_utils import encode_hex

from crowdsale_sync import (
    PURCHASE_TOPIC0,
    CallRevertedError,
    PendingTransaction,
    RpcError,
    Storage,
    TransactionRevertedError,
    load_config,
)

CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ALICE = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
BOB = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self, cap: int = 100 * 10**18, soft_cap: Optional[int] = None, wei_raised: int = 0):
        self.contract_address = CONTRACT
        self.signer_address = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
        self.whitelisted: Set[str] = set()
        self.cap = cap
        self.soft_cap = soft_cap
        self.wei_raised = wei_raised
        self.reads: List[tuple] = []
        self.writes: List[tuple] = []
        self.fail_reads = False
        self.revert_next = False
        self.latest_block = 100
        self.logs: List[Dict[str, Any]] = []
        self.log_queries: List[tuple] = []
        self._pending: Dict[str, tuple] = {}

    async def read_call(self, method: str, args=()):
        self.reads.append((method, tuple(args)))
        if self.fail_reads:
            raise RpcError("node unavailable", reason="connection refused")
        if method == "isWhitelisted":
            return args[0].lower() in self.whitelisted
        if method == "cap":
            return self.cap
        if method == "weiRaised":
            return self.wei_raised
        if method == "softCap":
            if self.soft_cap is None:
                raise CallRevertedError("softCap reverted")
            return self.soft_cap
        raise ValueError(method)

    async def read_optional(self, method: str, args=(), default=None):
        try:
            return await self.read_call(method, args)
        except CallRevertedError:
            return default

    async def write_call(self, method: str, args=()):
        self.writes.append((method, tuple(args)))
        tx_hash = "0x%064x" % len(self.writes)
        self._pending[tx_hash] = (method, tuple(args))
        return PendingTransaction(tx_hash=tx_hash, nonce=len(self.writes) - 1, method=method)

    async def await_finality(self, pending: PendingTransaction, timeout=None):
        if self.revert_next:
            raise TransactionRevertedError(pending.tx_hash)
        method, args = self._pending[pending.tx_hash]
        if method == "addToWhitelist":
            self.whitelisted.add(args[0].lower())
        return {"transactionHash": pending.tx_hash, "status": "0x1", "blockNumber": "0x65"}

    async def get_latest_block_number(self) -> int:
        return self.latest_block

    def purchase_log_filter(self):
        return {"address": self.contract_address, "topics": [PURCHASE_TOPIC0]}

    async def get_purchase_logs(self, from_block: int, to_block: int):
        self.log_queries.append((from_block, to_block))
        return [
            log for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block
        ]


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


@pytest.fixture
def purchase_log():
    def build(
        tx_index: int = 1,
        purchaser: str = ALICE,
        beneficiary: str = BOB,
        value: int = 10**18,
        amount: int = 1000 * 10**18,
        block: int = 90,
        **extra: Any,
    ) -> Dict[str, Any]:
        log = {
            "address": CONTRACT,
            "topics": [PURCHASE_TOPIC0, _topic(purchaser), _topic(beneficiary)],
            "data": encode_hex(abi_encode(["uint256", "uint256"], [value, amount])),
            "transactionHash": "0x%064x" % tx_index,
            "blockNumber": hex(block),
            "logIndex": "0x0",
            "removed": False,
        }
        log.update(extra)
        return log

    return build


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "ledger.db"))
    yield s
    s.close()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("OWNER_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)

    def write(**overrides: Any) -> str:
        raw = {
            "HTTP_RPC_URL": "http://127.0.0.1:8545",
            "WS_RPC_URL": "ws://127.0.0.1:8546",
            "CROWDSALE_ADDRESS": CONTRACT,
            "SQLITE_PATH": str(tmp_path / "app.db"),
            "ADMIN_API_KEY": "admin-secret",
        }
        raw.update(overrides)
        path = tmp_path / "config.json"
        path.write_text(json.dumps(raw), encoding="utf-8")
        return str(path)

    return write


@pytest.fixture
def app_config(config_file):
    return load_config(config_file())
