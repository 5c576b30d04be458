"""Encrypted persistence of named Nano wallets.

The whole store is one JSON document encrypted with AES-256-GCM and written
as ``ivHex:authTagHex:cipherHex``.  The key is ``sha256(passphrase)``.

The store is constructed explicitly and handed to whoever needs it; nothing
here is module-global.
"""

import hashlib
import json
import logging
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, Field, ValidationError

from core.events import EventBus
from core.exceptions import CorruptStore, InvalidInput, ResourceMissing
from nano import keys

logger = logging.getLogger(__name__)

IV_BYTES = 16
TAG_BYTES = 16
MAX_NAME_LENGTH = 50


class AccountRecord(BaseModel):
    index: int
    address: str
    public_key: str


class Wallet(BaseModel):
    """A named seed and the accounts derived from it so far."""

    name: str
    seed: str
    accounts: List[AccountRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def account(self, index: int = 0) -> keys.Account:
        if not any(rec.index == index for rec in self.accounts):
            raise ResourceMissing(f"Account #{index} not derived in wallet '{self.name}'")
        return keys.derive_account(bytes.fromhex(self.seed), index)


class WalletInfo(BaseModel):
    name: str
    address: str
    created_at: datetime
    account_count: int


class _StoreDocument(BaseModel):
    wallets: Dict[str, Wallet] = Field(default_factory=dict)


def _key(passphrase: str) -> bytes:
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


def encrypt(plaintext: str, passphrase: str) -> str:
    iv = secrets.token_bytes(IV_BYTES)
    sealed = AESGCM(_key(passphrase)).encrypt(iv, plaintext.encode("utf-8"), None)
    cipher, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"


def decrypt(data: str, passphrase: str) -> str:
    """Inverse of :func:`encrypt`.

    Raises:
        CorruptStore: Wrong structure, bad hex, wrong key or tampered data.
    """
    parts = data.strip().split(":")
    if len(parts) != 3:
        raise CorruptStore("Invalid encrypted data format")
    try:
        iv, tag, cipher = (bytes.fromhex(p) for p in parts)
    except ValueError:
        raise CorruptStore("Invalid encrypted data format") from None
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise CorruptStore("Invalid encrypted data format")
    try:
        plain = AESGCM(_key(passphrase)).decrypt(iv, cipher + tag, None)
    except InvalidTag:
        raise CorruptStore("Wallet store failed authentication (wrong key or tampered file)") from None
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError:
        raise CorruptStore("Wallet store is not valid UTF-8") from None


class WalletStore:
    """Create, import, derive and persist wallets.

    Args:
        path: Location of the encrypted store file.
        passphrase: Secret the encryption key is derived from.
        events: Optional bus that receives user-visible log lines.
    """

    def __init__(self, path: Union[str, Path], passphrase: str, events: Optional[EventBus] = None):
        if not passphrase:
            raise InvalidInput("Wallet store passphrase must not be empty")
        self.path = Path(path)
        self._passphrase = passphrase
        self.events = events
        self._wallets: Dict[str, Wallet] = self._load()

    def _log(self, level: str, message: str) -> None:
        if self.events:
            self.events.log("nano", level, message, logger)
        else:
            logger.info(message)

    def _load(self) -> Dict[str, Wallet]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8")
        plain = decrypt(raw, self._passphrase)
        try:
            return _StoreDocument.model_validate(json.loads(plain)).wallets
        except (ValueError, ValidationError) as e:
            raise CorruptStore(f"Wallet store content is invalid: {e}") from e

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = _StoreDocument(wallets=self._wallets).model_dump_json()
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(encrypt(document, self._passphrase), encoding="utf-8")
        os.replace(tmp, self.path)

    @staticmethod
    def _check_name(name: str) -> None:
        if not isinstance(name, str) or not 1 <= len(name) <= MAX_NAME_LENGTH:
            raise InvalidInput("Invalid wallet name")

    def _add(self, name: str, seed: bytes) -> Wallet:
        self._check_name(name)
        if name in self._wallets:
            raise InvalidInput(f'Wallet "{name}" already exists')
        account = keys.derive_account(seed, 0)
        wallet = Wallet(
            name=name,
            seed=seed.hex().upper(),
            accounts=[AccountRecord(index=0, address=account.address, public_key=account.public_key)],
        )
        self._wallets[name] = wallet
        self.save()
        return wallet

    def create_wallet(self, name: str) -> Wallet:
        wallet = self._add(name, keys.generate_seed())
        self._log("success", f"Created new wallet: {name}")
        return wallet

    def import_wallet(self, name: str, seed_hex: str) -> Wallet:
        wallet = self._add(name, keys.parse_seed(seed_hex))
        self._log("success", f"Imported wallet: {name}")
        return wallet

    def delete_wallet(self, name: str) -> None:
        if name not in self._wallets:
            raise ResourceMissing(f'Wallet "{name}" not found')
        del self._wallets[name]
        self.save()
        self._log("info", f"Deleted wallet: {name}")

    def get_wallet(self, name: str) -> Wallet:
        try:
            return self._wallets[name]
        except KeyError:
            raise ResourceMissing(f'Wallet "{name}" not found') from None

    def get_account(self, name: str, index: int = 0) -> keys.Account:
        return self.get_wallet(name).account(index)

    def list_wallets(self) -> List[WalletInfo]:
        return [
            WalletInfo(
                name=w.name,
                address=w.accounts[0].address,
                created_at=w.created_at,
                account_count=len(w.accounts),
            )
            for w in self._wallets.values()
        ]

    def derive_account(self, name: str) -> keys.Account:
        """Append the next account to wallet *name* and return it."""
        wallet = self.get_wallet(name)
        next_index = len(wallet.accounts)
        account = keys.derive_account(bytes.fromhex(wallet.seed), next_index)
        wallet.accounts.append(
            AccountRecord(index=next_index, address=account.address, public_key=account.public_key)
        )
        self.save()
        self._log("success", f"Derived new account #{next_index}")
        return account

    def backup(self, name: str, confirmation: str) -> str:
        """Return the seed of wallet *name* as hex.

        *confirmation* must equal the store passphrase.
        """
        wallet = self.get_wallet(name)
        if not secrets.compare_digest(confirmation.encode("utf-8"), self._passphrase.encode("utf-8")):
            raise InvalidInput("Backup confirmation does not match the wallet store passphrase")
        self._log("warning", f"Backup requested for wallet: {name}")
        return wallet.seed
