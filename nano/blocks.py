"""State block construction and signing."""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.exceptions import InvalidInput
from nano import keys

ZERO_HASH = "0" * 64
_PREAMBLE = (6).to_bytes(32, "big")
_MAX_BALANCE = 2 ** 128 - 1


def _hash_bytes(value: str, what: str) -> bytes:
    try:
        data = bytes.fromhex(value)
    except ValueError:
        raise InvalidInput(f"Invalid {what}: {value!r}") from None
    if len(data) != 32:
        raise InvalidInput(f"Invalid {what}: {value!r}")
    return data


@dataclass
class StateBlock:
    """A universal state block.

    ``link`` is the destination public key for sends and the source block
    hash for receives.
    """

    account: str
    previous: str
    representative: str
    balance: int
    link: str
    subtype: str
    signature: Optional[str] = None
    work: Optional[str] = None

    def block_hash(self) -> str:
        if not 0 <= self.balance <= _MAX_BALANCE:
            raise InvalidInput(f"Balance out of range: {self.balance}")
        digest = hashlib.blake2b(digest_size=32)
        digest.update(_PREAMBLE)
        digest.update(keys.decode_address(self.account))
        digest.update(_hash_bytes(self.previous, "previous"))
        digest.update(keys.decode_address(self.representative))
        digest.update(self.balance.to_bytes(16, "big"))
        digest.update(_hash_bytes(self.link, "link"))
        return digest.hexdigest().upper()

    def sign(self, private_key: str) -> "StateBlock":
        signature = keys.sign(bytes.fromhex(private_key), bytes.fromhex(self.block_hash()))
        self.signature = signature.hex().upper()
        return self

    def to_rpc(self) -> Dict[str, Any]:
        """Serialise in the JSON form accepted by ``process`` with ``json_block``."""
        if self.signature is None or self.work is None:
            raise InvalidInput("Block must be signed and carry work before broadcast")
        return {
            "type": "state",
            "account": self.account,
            "previous": self.previous.upper(),
            "representative": self.representative,
            "balance": str(self.balance),
            "link": self.link.upper(),
            "link_as_account": keys.encode_address(bytes.fromhex(self.link)),
            "signature": self.signature,
            "work": self.work,
        }


def build_send(account: keys.Account, frontier: str, representative: str,
               new_balance: int, to_address: str, work: str) -> StateBlock:
    block = StateBlock(
        account=account.address,
        previous=frontier,
        representative=representative,
        balance=new_balance,
        link=keys.decode_address(to_address).hex().upper(),
        subtype="send",
        work=work,
    )
    return block.sign(account.private_key)


def build_receive(account: keys.Account, frontier: str, representative: str,
                  new_balance: int, pending_hash: str, work: str) -> StateBlock:
    block = StateBlock(
        account=account.address,
        previous=frontier,
        representative=representative,
        balance=new_balance,
        link=_hash_bytes(pending_hash, "pending hash").hex().upper(),
        subtype="receive",
        work=work,
    )
    return block.sign(account.private_key)
