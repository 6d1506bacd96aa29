"""
Shared fixtures for midlanchor tests.
"""

from __future__ import annotations

from typing import Any

import pytest
from coincurve import PrivateKey

from midlanchor.approval import ApprovalChannel
from midlanchor.bitcoin.address import (
    address_to_scriptpubkey,
    pubkey_to_p2tr_address,
    pubkey_to_p2wpkh_address,
)
from midlanchor.connector import KeyPairConnector
from midlanchor.models import UTXO, Account, AddressType, Network, NetworkType


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def regtest() -> Network:
    return Network.from_id(NetworkType.REGTEST)


@pytest.fixture
def connector(sample_mnemonic: str, regtest: Network) -> KeyPairConnector:
    return KeyPairConnector.from_mnemonic(sample_mnemonic, regtest)


@pytest.fixture
def payment_account(connector: KeyPairConnector) -> Account:
    return next(a for a in connector.accounts() if a.address_type == AddressType.P2WPKH)


@pytest.fixture
def ordinals_account(connector: KeyPairConnector) -> Account:
    return next(a for a in connector.accounts() if a.address_type == AddressType.P2TR)


@pytest.fixture
def recipient(regtest: Network) -> str:
    """A regtest P2WPKH address nobody in the tests owns."""
    return pubkey_to_p2wpkh_address(PrivateKey.from_int(7).public_key.format(), regtest)


@pytest.fixture
def taproot_recipient(regtest: Network) -> str:
    return pubkey_to_p2tr_address(PrivateKey.from_int(11).public_key.format(), regtest)


def make_utxo(account: Account, network: Network, value: int, txid_byte: int = 1, vout: int = 0) -> UTXO:
    return UTXO(
        txid=f"{txid_byte:02x}" * 32,
        vout=vout,
        value=value,
        address=account.address,
        scriptpubkey=address_to_scriptpubkey(account.address, network).hex(),
        confirmations=6,
    )


class StubChannel(ApprovalChannel):
    """Answers every approval request with a fixed value for the affirmative field."""

    def __init__(self, answer: Any = True):
        self.answer = answer
        self.requests: list[tuple[str, str]] = []

    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> Any:
        field_name = requested_schema["required"][0]
        self.requests.append((field_name, message))
        return {field_name: self.answer}
