"""Stateless client for a Nano node's JSON action protocol."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from core.exceptions import InvalidInput, RpcError, Timeout
from nano import keys
from nano.blocks import ZERO_HASH, StateBlock

logger = logging.getLogger(__name__)

ACCOUNT_NOT_FOUND = "Account not found"


@dataclass
class AccountState:
    """Ledger view of one account, valid for a single logical step."""

    opened: bool
    balance: int
    frontier: str
    pending: int = 0
    representative: Optional[str] = None
    block_count: int = 0

    @classmethod
    def unopened(cls) -> "AccountState":
        return cls(opened=False, balance=0, frontier=ZERO_HASH)


@dataclass
class PendingBlock:
    hash: str
    source: str
    amount: int


class JsonHttpClient:
    """Shared aiohttp session handling for JSON POST endpoints."""

    def __init__(self) -> None:
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, url: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """POST *payload* to *url* and return the decoded JSON object.

        Raises:
            Timeout: The request did not finish within *timeout* seconds.
            RpcError: Transport failure, non-2xx status or non-object body.
        """
        session = await self._get_session()
        try:
            async with session.post(url, json=payload,
                                    timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                if response.status < 200 or response.status >= 300:
                    raise RpcError(f"HTTP {response.status} from {url}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise Timeout(f"{payload.get('action')} timed out after {timeout}s ({url})") from None
        except aiohttp.ClientError as e:
            raise RpcError(f"Connection to {url} failed: {e}") from e
        except ValueError as e:
            raise RpcError(f"Malformed JSON from {url}: {e}") from e

        if not isinstance(data, dict):
            raise RpcError(f"Unexpected response from {url}: {data!r}")
        return data

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


class LedgerRpcClient(JsonHttpClient):
    """Request/response wrapper around a remote node.

    Consensus state is trusted from the node.  ``pending`` lookups fall back
    across ``fallback_urls``; ``account_info`` and ``process`` use the
    primary endpoint only.
    """

    def __init__(self, rpc_url: str, fallback_urls: Sequence[str] = (), timeout: float = 10.0):
        super().__init__()
        self.rpc_url = rpc_url
        self.endpoints: List[str] = [rpc_url] + [u for u in fallback_urls if u != rpc_url]
        self.timeout = timeout

    @staticmethod
    def _check_address(address: str) -> None:
        if not keys.is_valid_address(address):
            raise InvalidInput(f"Invalid Nano address: {address}")

    async def get_account_state(self, address: str) -> AccountState:
        self._check_address(address)
        data = await self._post(self.rpc_url, {
            "action": "account_info",
            "account": address,
            "representative": "true",
            "pending": "true",
        }, self.timeout)

        error = data.get("error")
        if error == ACCOUNT_NOT_FOUND:
            return AccountState.unopened()
        if error:
            raise RpcError(error)

        try:
            return AccountState(
                opened=True,
                balance=int(data["balance"]),
                frontier=data["frontier"],
                pending=int(data.get("pending") or data.get("receivable") or 0),
                representative=data.get("representative"),
                block_count=int(data.get("block_count") or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Malformed account_info response: {e}") from e

    async def get_pending_blocks(self, address: str, count: int = 10) -> List[PendingBlock]:
        """Return unreceived blocks for *address* in the order the node lists them.

        Each endpoint is tried in turn; the first non-empty answer wins.  An
        empty list is a normal result, not an error.
        """
        self._check_address(address)
        payload = {
            "action": "pending",
            "account": address,
            "count": str(count),
            "source": "true",
            "include_only_confirmed": "true",
        }
        errors = []
        for url in self.endpoints:
            try:
                data = await self._post(url, payload, self.timeout)
            except (RpcError, Timeout) as e:
                errors.append(str(e))
                continue

            error = data.get("error")
            if error == ACCOUNT_NOT_FOUND:
                continue
            if error:
                errors.append(error)
                continue

            blocks = self._parse_pending(data.get("blocks"))
            if blocks:
                return blocks

        if errors and len(errors) == len(self.endpoints):
            logger.warning(f"RPC issue checking pending for {address[:20]}...: {errors[-1]}")
        return []

    @staticmethod
    def _parse_pending(blocks: Any) -> List[PendingBlock]:
        # nodes answer "" instead of {} when nothing is pending
        if not isinstance(blocks, dict):
            return []
        result = []
        for block_hash, info in blocks.items():
            try:
                if isinstance(info, dict):
                    result.append(PendingBlock(block_hash, info.get("source", ""), int(info["amount"])))
                else:
                    result.append(PendingBlock(block_hash, "", int(info)))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed pending entry {block_hash}")
        return result

    async def get_pending_total(self, address: str) -> int:
        """Aggregate pending amount from ``account_info``; 0 when unknown."""
        self._check_address(address)
        for url in self.endpoints:
            try:
                data = await self._post(url, {
                    "action": "account_info",
                    "account": address,
                    "pending": "true",
                }, self.timeout)
                total = int(data.get("pending") or data.get("receivable") or 0)
            except (RpcError, Timeout, TypeError, ValueError):
                continue
            if total > 0:
                return total
        return 0

    async def broadcast_block(self, block: StateBlock) -> str:
        data = await self._post(self.rpc_url, {
            "action": "process",
            "json_block": "true",
            "subtype": block.subtype,
            "block": block.to_rpc(),
        }, self.timeout)
        if data.get("error"):
            raise RpcError(data["error"])
        if not data.get("hash"):
            raise RpcError(f"process returned no hash: {data!r}")
        return data["hash"]
