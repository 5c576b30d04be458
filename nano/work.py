"""Proof-of-work acquisition with a private worker and a public fallback."""

import hashlib
import logging
import re
from typing import Optional

from core.exceptions import InvalidInput, RpcError, Timeout
from nano.rpc import JsonHttpClient

logger = logging.getLogger(__name__)

DEFAULT_DIFFICULTY = "fffffff800000000"
_WORK_RE = re.compile(r"^[0-9a-fA-F]{16}$")


def work_value(block_hash: str, work: str) -> int:
    """Difficulty value reached by *work* on *block_hash*."""
    digest = hashlib.blake2b(bytes.fromhex(work)[::-1] + bytes.fromhex(block_hash), digest_size=8)
    return int.from_bytes(digest.digest(), "little")


def is_valid_work(block_hash: str, work: str, difficulty: str = DEFAULT_DIFFICULTY) -> bool:
    if not isinstance(work, str) or not _WORK_RE.match(work):
        return False
    return work_value(block_hash, work) >= int(difficulty, 16)


class WorkProvider(JsonHttpClient):
    """Obtains work for a block hash.

    The configured private worker (usually a GPU box) is asked first with a
    short timeout.  Anything wrong with its answer sends the request to the
    public endpoint, whose failure is final for this call.
    """

    def __init__(self, public_url: str, worker_url: Optional[str] = None,
                 worker_timeout: float = 30.0, public_timeout: float = 60.0):
        super().__init__()
        self.public_url = public_url
        self.worker_url = worker_url
        self.worker_timeout = worker_timeout
        self.public_timeout = public_timeout

    def _payload(self, block_hash: str, difficulty: str) -> dict:
        return {"action": "work_generate", "hash": block_hash, "difficulty": difficulty}

    async def _from_worker(self, block_hash: str, difficulty: str) -> Optional[str]:
        try:
            data = await self._post(self.worker_url, self._payload(block_hash, difficulty),
                                    self.worker_timeout)
        except (RpcError, Timeout) as e:
            logger.warning(f"Private PoW worker unavailable ({e}), using public endpoint")
            return None

        work = data.get("work")
        if data.get("error") or not is_valid_work(block_hash, work, difficulty):
            logger.warning(f"Private PoW worker returned unusable answer: {data.get('error') or work!r}")
            return None
        logger.info("PoW generated via private worker")
        return work

    async def generate_work(self, block_hash: str, difficulty: str = DEFAULT_DIFFICULTY) -> str:
        """Return a work value for *block_hash*.

        Raises:
            InvalidInput: *block_hash* is not 32 bytes of hex.
            RpcError: The public endpoint reported an error or no work.
            Timeout: The public endpoint did not answer in time.
        """
        try:
            if len(bytes.fromhex(block_hash)) != 32:
                raise ValueError
        except ValueError:
            raise InvalidInput(f"Invalid work hash: {block_hash!r}") from None

        if self.worker_url:
            work = await self._from_worker(block_hash, difficulty)
            if work:
                return work

        data = await self._post(self.public_url, self._payload(block_hash, difficulty),
                                self.public_timeout)
        if data.get("error"):
            raise RpcError(f"Work generation failed: {data['error']}")
        work = data.get("work")
        if not isinstance(work, str) or not _WORK_RE.match(work):
            raise RpcError(f"Work generation returned no work: {data!r}")
        return work
