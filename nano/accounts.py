"""Account engine: the only component that mutates ledger state.

Sends and receives are built against the frontier fetched at the start of
the operation.  Operations on one address are serialised with an
``asyncio.Lock`` so two sessions sharing a bank wallet cannot build two
blocks on the same frontier.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from core.events import EventBus
from core.exceptions import (
    AccountUnopened,
    Cancelled,
    InsufficientFunds,
    InvalidInput,
    SentryError,
    Timeout,
)
from nano import keys
from nano.blocks import build_receive, build_send
from nano.rpc import AccountState, LedgerRpcClient, PendingBlock
from nano.units import from_raw
from nano.work import DEFAULT_DIFFICULTY, WorkProvider

logger = logging.getLogger(__name__)

DEFAULT_REPRESENTATIVE = "nano_3kc8wwut3u8g1kwa6x4drkzu346bdbyqzsn14tmabrpeobn8igksfqkzajbb"


@dataclass
class ReceiveSummary:
    count: int = 0
    total_raw: int = 0
    hashes: List[str] = field(default_factory=list)


class AccountEngine:
    """Builds, signs and broadcasts blocks for wallet accounts.

    Args:
        rpc: Ledger RPC client (or a test double with the same coroutines).
        work: Proof-of-work provider.
        events: Optional event bus for user-visible log lines.
        representative: Fallback representative for accounts without one.
        difficulty: Work threshold requested for every block.
    """

    def __init__(self, rpc: LedgerRpcClient, work: WorkProvider, events: Optional[EventBus] = None,
                 representative: str = DEFAULT_REPRESENTATIVE, difficulty: str = DEFAULT_DIFFICULTY):
        self.rpc = rpc
        self.work = work
        self.events = events
        self.representative = representative
        self.difficulty = difficulty
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _log(self, level: str, message: str) -> None:
        if self.events:
            self.events.log("nano", level, message, logger)
        else:
            logger.info(message)

    def lock_for(self, address: str) -> asyncio.Lock:
        return self._locks[address]

    async def get_account_state(self, address: str) -> AccountState:
        return await self.rpc.get_account_state(address)

    async def get_pending_blocks(self, address: str) -> List[PendingBlock]:
        return await self.rpc.get_pending_blocks(address)

    async def sync(self, address: str) -> Dict[str, object]:
        """Snapshot of balance, pending total and pending blocks for display."""
        state = await self.rpc.get_account_state(address)
        pending = await self.rpc.get_pending_blocks(address)
        return {
            "address": address,
            "opened": state.opened,
            "balance": from_raw(state.balance),
            "balance_raw": state.balance,
            "pending": from_raw(state.pending),
            "pending_raw": state.pending,
            "block_count": state.block_count,
            "pending_blocks": pending,
        }

    async def send(self, account: keys.Account, to_address: str, amount_raw: int) -> str:
        """Send *amount_raw* from *account* to *to_address*; return the block hash.

        Raises:
            InvalidInput: Bad destination or non-positive amount.
            AccountUnopened: The source has never received funds.
            InsufficientFunds: The amount exceeds the current balance.
        """
        if not keys.is_valid_address(to_address):
            raise InvalidInput(f"Invalid recipient Nano address: {to_address}")
        if not isinstance(amount_raw, int) or amount_raw <= 0:
            raise InvalidInput(f"Invalid amount: {amount_raw!r}")

        async with self.lock_for(account.address):
            state = await self.rpc.get_account_state(account.address)
            if not state.opened:
                raise AccountUnopened("Account has not been opened yet (no incoming transactions)")
            if amount_raw > state.balance:
                raise InsufficientFunds(
                    f"Insufficient balance: {from_raw(state.balance)} < {from_raw(amount_raw)} NANO"
                )

            self._log("info", "Generating proof of work for send...")
            work = await self.work.generate_work(state.frontier, self.difficulty)
            block = build_send(
                account,
                frontier=state.frontier,
                representative=state.representative or self.representative,
                new_balance=state.balance - amount_raw,
                to_address=to_address,
                work=work,
            )
            self._log("info", "Broadcasting send block...")
            block_hash = await self.rpc.broadcast_block(block)

        self._log("success", f"Sent {from_raw(amount_raw)} NANO to {to_address[:20]}...")
        return block_hash

    async def receive(self, account: keys.Account, pending_hash: str, amount_raw: int) -> str:
        """Pocket one pending block into *account*; return the new block hash."""
        if not isinstance(amount_raw, int) or amount_raw <= 0:
            raise InvalidInput(f"Invalid amount: {amount_raw!r}")

        async with self.lock_for(account.address):
            state = await self.rpc.get_account_state(account.address)
            # first block: work is computed on the public key
            work_hash = state.frontier if state.opened else account.public_key

            self._log("info", "Generating proof of work for receive...")
            work = await self.work.generate_work(work_hash, self.difficulty)
            block = build_receive(
                account,
                frontier=state.frontier,
                representative=state.representative or self.representative,
                new_balance=state.balance + amount_raw,
                pending_hash=pending_hash,
                work=work,
            )
            self._log("info", "Broadcasting receive block...")
            block_hash = await self.rpc.broadcast_block(block)

        self._log("success", f"Received {from_raw(amount_raw)} NANO")
        return block_hash

    async def receive_all(self, account: keys.Account) -> ReceiveSummary:
        """Receive every pending block, one at a time, in RPC order.

        A block that fails is logged and skipped; the batch continues.
        """
        summary = ReceiveSummary()
        pending = await self.rpc.get_pending_blocks(account.address)
        if not pending:
            self._log("info", "No pending transactions to receive")
            return summary

        for block in pending:
            try:
                block_hash = await self.receive(account, block.hash, block.amount)
            except SentryError as e:
                self._log("error", f"Failed to receive {block.hash[:16]}...: {e}")
                continue
            summary.count += 1
            summary.total_raw += block.amount
            summary.hashes.append(block_hash)
        return summary

    async def wait_for_pending(
        self,
        address: str,
        timeout: float = 1800.0,
        poll_interval: float = 1.0,
        is_cancelled: Optional[Callable[[], bool]] = None,
        backup_after: int = 3,
        backup_delay: float = 3.0,
    ) -> List[PendingBlock]:
        """Poll until *address* has pending blocks and return them.

        After ``backup_after`` consecutive empty polls the aggregate pending
        total from ``account_info`` is consulted; when it is nonzero the
        block enumeration is retried once before normal polling resumes.

        Raises:
            Timeout: Nothing arrived within *timeout* seconds.
            Cancelled: ``is_cancelled()`` returned true at a loop head.
        """
        started = time.monotonic()
        empty_polls = 0

        while time.monotonic() - started < timeout:
            if is_cancelled and is_cancelled():
                raise Cancelled("Session stopped or paused")

            pending = await self.rpc.get_pending_blocks(address)
            if pending:
                self._log("success", "Pending transaction detected via RPC!")
                return pending

            empty_polls += 1
            if empty_polls >= backup_after:
                pending_total = await self.rpc.get_pending_total(address)
                if pending_total > 0:
                    self._log("info", f"Account shows {from_raw(pending_total)} NANO pending, "
                                      f"retrying block fetch...")
                    await asyncio.sleep(backup_delay)
                    pending = await self.rpc.get_pending_blocks(address)
                    if pending:
                        return pending
                    self._log("warning", "Pending amount exists but blocks not returned, will keep trying...")
                empty_polls = 0

            elapsed = int(time.monotonic() - started)
            logger.debug(f"Waiting for pending on {address[:20]}... ({elapsed}s elapsed)")
            await asyncio.sleep(poll_interval)

        raise Timeout(f"Timeout waiting for pending transaction after {timeout:.0f}s")
