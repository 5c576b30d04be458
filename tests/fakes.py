"""In-memory doubles for the ledger, work server and browser.

``FakeLedger`` applies broadcast blocks to its own account table and rejects
blocks that are not built on the current frontier, so ordering bugs surface
as ``RpcError("Fork")`` the way a real node would refuse them.
"""

import secrets
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from core.exceptions import RpcError
from nano import keys
from nano.blocks import ZERO_HASH, StateBlock
from nano.rpc import AccountState, PendingBlock


def random_hash() -> str:
    return secrets.token_hex(32).upper()


class FakeLedger:
    def __init__(self):
        self.accounts: Dict[str, dict] = {}
        self.pending: Dict[str, Dict[str, PendingBlock]] = defaultdict(dict)
        self.broadcasts: List[StateBlock] = []
        self.fail_broadcast: Optional[Exception] = None
        self.on_broadcast: Optional[Callable[[StateBlock], None]] = None
        self.pending_calls = 0

    def open(self, address: str, balance: int, representative: Optional[str] = None) -> None:
        self.accounts[address] = {
            "balance": balance,
            "frontier": random_hash(),
            "representative": representative,
            "block_count": 1,
        }

    def fund(self, address: str, amount: int, source: str = "") -> str:
        block_hash = random_hash()
        self.pending[address][block_hash] = PendingBlock(block_hash, source, amount)
        return block_hash

    def balance(self, address: str) -> int:
        return self.accounts.get(address, {}).get("balance", 0)

    async def get_account_state(self, address: str) -> AccountState:
        account = self.accounts.get(address)
        if account is None:
            return AccountState.unopened()
        return AccountState(
            opened=True,
            balance=account["balance"],
            frontier=account["frontier"],
            pending=sum(p.amount for p in self.pending[address].values()),
            representative=account["representative"],
            block_count=account["block_count"],
        )

    async def get_pending_blocks(self, address: str, count: int = 10) -> List[PendingBlock]:
        self.pending_calls += 1
        return list(self.pending[address].values())[:count]

    async def get_pending_total(self, address: str) -> int:
        return sum(p.amount for p in self.pending[address].values())

    async def broadcast_block(self, block: StateBlock) -> str:
        self.broadcasts.append(block)
        if self.fail_broadcast:
            raise self.fail_broadcast

        account = self.accounts.get(block.account)
        previous = account["frontier"] if account else ZERO_HASH
        if block.previous != previous:
            raise RpcError("Fork")
        old_balance = account["balance"] if account else 0

        block_hash = block.block_hash()
        if block.subtype == "receive":
            if block.link not in self.pending[block.account]:
                raise RpcError("Unreceivable")
            received = self.pending[block.account].pop(block.link)
            if block.balance != old_balance + received.amount:
                raise RpcError("Balance mismatch")
        else:
            destination = keys.encode_address(bytes.fromhex(block.link))
            amount = old_balance - block.balance
            self.pending[destination][block_hash] = PendingBlock(block_hash, block.account, amount)

        self.accounts[block.account] = {
            "balance": block.balance,
            "frontier": block_hash,
            "representative": block.representative,
            "block_count": (account["block_count"] if account else 0) + 1,
        }
        if self.on_broadcast:
            self.on_broadcast(block)
        return block_hash


class FakeWork:
    def __init__(self):
        self.hashes: List[str] = []

    async def generate_work(self, block_hash: str, difficulty: str = "") -> str:
        self.hashes.append(block_hash)
        return "0123456789abcdef"


class FakeBrowser:
    def __init__(self, text: str = "", html: str = ""):
        self.text = text
        self.html = html
        self.launched = False
        self.closed = False
        self.typed: List[str] = []
        self.visited: List[str] = []
        self.on_navigate: Optional[Callable[[], object]] = None

    async def launch(self):
        self.launched = True
        return self

    async def navigate(self, url, wait_until="networkidle", timeout=None):
        self.visited.append(url)
        if self.on_navigate:
            await self.on_navigate()

    async def type_into(self, selector, text, delay_ms=50):
        self.typed.append(text)

    async def click_button_with_text(self, labels):
        return None

    async def wait_for_settle(self, timeout=30000):
        return None

    async def page_text(self):
        return self.text

    async def page_content(self):
        return self.html

    async def screenshot(self):
        return b"jpeg"

    async def close(self):
        self.closed = True
