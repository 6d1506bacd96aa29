"""
Signing connectors.

A connector exposes the user's Bitcoin accounts and signs PSBTs and BIP322
messages for them. Keys never leave the connector.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from coincurve import PrivateKey
from loguru import logger

from midlanchor.bitcoin.address import (
    address_to_scriptpubkey,
    pubkey_to_p2tr_address,
    pubkey_to_p2wpkh_address,
)
from midlanchor.bitcoin.bip32 import HDKey, account_path, mnemonic_to_seed
from midlanchor.bitcoin.bip322 import sign_simple
from midlanchor.bitcoin.transaction import TransactionError, sign_p2tr_input, sign_p2wpkh_input
from midlanchor.errors import SigningError
from midlanchor.models import Account, AddressPurpose, AddressType, Network
from midlanchor.psbt import Psbt

_TYPE_BY_PURPOSE = {
    AddressPurpose.PAYMENT: AddressType.P2WPKH,
    AddressPurpose.ORDINALS: AddressType.P2TR,
}


class Connector(ABC):
    @abstractmethod
    def accounts(self) -> list[Account]:
        """Accounts this connector can act for"""

    @abstractmethod
    async def sign_message(self, message: str, address: str) -> str:
        """BIP322 simple signature (base64) of message by address"""

    @abstractmethod
    async def sign_psbt(self, psbt: Psbt, sign_inputs: dict[str, list[int]]) -> Psbt:
        """
        Sign the given input indices, keyed by the address that owns them.
        Returns a new, finalized-where-signed Psbt.
        """


class KeyPairConnector(Connector):
    """In-process connector holding private keys derived from a mnemonic."""

    def __init__(self, keys: dict[str, tuple[PrivateKey, Account]]):
        self._keys = keys

    @classmethod
    def from_mnemonic(
        cls, mnemonic: str, network: Network, passphrase: str = ""
    ) -> KeyPairConnector:
        master = HDKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))

        keys: dict[str, tuple[PrivateKey, Account]] = {}
        for purpose, addr_type in _TYPE_BY_PURPOSE.items():
            hd_key = master.derive(account_path(purpose, network))
            pubkey = hd_key.get_public_key_bytes()
            if addr_type == AddressType.P2TR:
                address = pubkey_to_p2tr_address(pubkey, network)
            else:
                address = pubkey_to_p2wpkh_address(pubkey, network)

            account = Account(
                address=address,
                public_key=pubkey.hex(),
                purpose=purpose,
                address_type=addr_type,
            )
            keys[address] = (hd_key.private_key, account)
            logger.debug(f"Derived {purpose.value} account {address}")

        return cls(keys)

    def accounts(self) -> list[Account]:
        return [account for _, account in self._keys.values()]

    def _key_for(self, address: str) -> tuple[PrivateKey, Account]:
        try:
            return self._keys[address]
        except KeyError:
            raise SigningError(f"No key for address {address}") from None

    async def sign_message(self, message: str, address: str) -> str:
        private_key, account = self._key_for(address)
        return sign_simple(message, private_key, account.address_type)

    async def sign_psbt(self, psbt: Psbt, sign_inputs: dict[str, list[int]]) -> Psbt:
        tx = psbt.unsigned_tx()
        prevouts = psbt.prevouts()
        signed = psbt

        for address, indices in sign_inputs.items():
            private_key, account = self._key_for(address)
            pubkey = bytes.fromhex(account.public_key)

            for index in indices:
                if index >= len(psbt.inputs):
                    raise SigningError(f"Input {index} does not exist")
                inp = psbt.inputs[index]

                try:
                    if account.address_type == AddressType.P2TR:
                        if not inp.is_taproot:
                            raise SigningError(f"Input {index} is not a taproot input")
                        (sig,) = sign_p2tr_input(tx, index, prevouts, private_key)
                        signed = signed.with_input(index, tap_key_sig=sig)
                    else:
                        sig, _ = sign_p2wpkh_input(tx, index, inp.value, private_key)
                        signed = signed.with_input(index, partial_sigs=((pubkey, sig),))
                except TransactionError as e:
                    raise SigningError(f"Failed to sign input {index}: {e}") from e

                logger.debug(f"Signed input {index} for {address}")

        return signed.finalize()


class WatchOnlyConnector(Connector):
    """
    Connector for an address whose keys live elsewhere. PSBTs are returned
    unsigned for external signing; messages cannot be signed.
    """

    def __init__(
        self,
        address: str,
        public_key: str,
        address_type: AddressType = AddressType.P2TR,
        purpose: AddressPurpose = AddressPurpose.ORDINALS,
    ):
        self._account = Account(
            address=address,
            public_key=public_key,
            purpose=purpose,
            address_type=address_type,
        )

    def accounts(self) -> list[Account]:
        return [self._account]

    async def sign_message(self, message: str, address: str) -> str:
        raise SigningError("Message signing is not supported by a watch-only account")

    async def sign_psbt(self, psbt: Psbt, sign_inputs: dict[str, list[int]]) -> Psbt:
        logger.info("Watch-only account: returning PSBT unsigned for external signing")
        return psbt


def owned_input_indices(psbt: Psbt, account: Account, network: Network) -> list[int]:
    script = address_to_scriptpubkey(account.address, network)
    return [n for n, inp in enumerate(psbt.inputs) if inp.script == script]


async def sign_owned_inputs(
    connector: Connector, psbt: Psbt, account: Account, network: Network
) -> Psbt:
    """Ask the connector to sign every input that spends from account."""
    indices = owned_input_indices(psbt, account, network)
    if not indices:
        raise SigningError(f"No inputs in the transaction belong to {account.address}")

    logger.debug(f"Signing inputs {indices} for {account.address}")
    return await connector.sign_psbt(psbt, {account.address: indices})
