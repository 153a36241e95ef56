"""The process-held signing key and the ways it can be configured."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from ..config.settings import WalletConfig, get_app_config
from ..utils.errors import ValidationError

KEYPAIR_LENGTH = 64


@dataclass(slots=True)
class Wallet:
    """Wrapper around a Solana keypair. The secret never leaves this object."""

    keypair: Keypair = field(repr=False)

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def sign_message(self, message: MessageV0) -> VersionedTransaction:
        return VersionedTransaction(message, [self.keypair])

    def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        """Re-sign a transaction assembled elsewhere (aggregator or bonding-curve APIs)."""

        message = transaction.message
        signers = list(message.account_keys[: message.header.num_required_signatures])
        if self.public_key not in signers:
            raise ValidationError("transaction does not require this wallet's signature")
        signature = self.keypair.sign_message(to_bytes_versioned(message))
        signatures = list(transaction.signatures) or [Signature.default()] * len(signers)
        signatures[signers.index(self.public_key)] = signature
        return VersionedTransaction.populate(message, signatures)


def _decode_private_key(encoded: str) -> bytes:
    try:
        return base58.b58decode(encoded.strip())
    except ValueError as exc:
        raise ValidationError("WALLET__PRIVATE_KEY is not valid base58") from exc


def _read_keypair_file(path: Path) -> bytes:
    """Read a ``solana-keygen`` JSON file: an array of 64 byte values."""

    path = path.expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"keypair file {path} does not exist") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"keypair file {path} is not JSON") from exc
    if not isinstance(data, list) or not all(isinstance(item, int) for item in data):
        raise ValidationError(f"keypair file {path} must hold an array of byte values")
    return bytes(data)


def load_wallet(config: Optional[WalletConfig] = None) -> Wallet:
    """Build the signer from an inline base58 key, falling back to a keypair file."""

    cfg = config or get_app_config().wallet
    if cfg.private_key:
        secret_key = _decode_private_key(cfg.private_key)
    elif cfg.keypair_path:
        secret_key = _read_keypair_file(Path(cfg.keypair_path))
    else:
        raise ValidationError("no wallet configured; set WALLET__PRIVATE_KEY or WALLET__KEYPAIR_PATH")
    if len(secret_key) != KEYPAIR_LENGTH:
        raise ValidationError(f"wallet secret must be {KEYPAIR_LENGTH} bytes, got {len(secret_key)}")
    return Wallet(keypair=Keypair.from_bytes(secret_key))


__all__ = ["KEYPAIR_LENGTH", "Wallet", "load_wallet"]
