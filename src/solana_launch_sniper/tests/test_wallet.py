from __future__ import annotations

import json
from pathlib import Path

import base58
import pytest
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from solana_launch_sniper.config.settings import WalletConfig
from solana_launch_sniper.execution.wallet import Wallet, load_wallet
from solana_launch_sniper.utils.errors import ValidationError


def test_inline_key_and_keypair_file_load_the_same_wallet(tmp_path: Path) -> None:
    keypair = Keypair()
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(bytes(keypair))))

    inline = load_wallet(WalletConfig(private_key=base58.b58encode(bytes(keypair)).decode()))
    from_file = load_wallet(WalletConfig(keypair_path=path))
    assert inline.public_key == keypair.pubkey()
    assert from_file.public_key == keypair.pubkey()


@pytest.mark.parametrize(
    "config",
    [
        WalletConfig(),
        WalletConfig(private_key="not-base58-0OIl"),
        WalletConfig(private_key=base58.b58encode(b"short").decode()),
        WalletConfig(keypair_path=Path("/nonexistent/id.json")),
    ],
)
def test_bad_wallet_configuration_is_a_validation_error(config: WalletConfig) -> None:
    with pytest.raises(ValidationError):
        load_wallet(config)


def test_keypair_file_must_be_a_byte_array(tmp_path: Path) -> None:
    path = tmp_path / "id.json"
    path.write_text(json.dumps({"secret": "abc"}))
    with pytest.raises(ValidationError):
        load_wallet(WalletConfig(keypair_path=path))


def test_repr_hides_the_keypair() -> None:
    assert "keypair" not in repr(Wallet(keypair=Keypair()))


def test_sign_transaction_requires_this_wallet_as_signer() -> None:
    wallet = Wallet(keypair=Keypair())
    other = Keypair()
    instruction = Instruction(Pubkey.default(), b"", [])
    foreign = MessageV0.try_compile(other.pubkey(), [instruction], [], Hash.default())
    with pytest.raises(ValidationError):
        wallet.sign_transaction(VersionedTransaction(foreign, [other]))

    own = MessageV0.try_compile(wallet.public_key, [instruction], [], Hash.default())
    signed = wallet.sign_transaction(wallet.sign_message(own))
    assert signed.signatures[0] == wallet.keypair.sign_message(to_bytes_versioned(own))
