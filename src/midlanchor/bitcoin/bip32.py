"""
BIP32 HD key derivation for connector accounts.

Implements BIP84 (native segwit payment) and BIP86 (taproot ordinals)
derivation paths.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

from midlanchor.constants import SECP256K1_N
from midlanchor.models import AddressPurpose, Network

HARDENED = 0x80000000

_PURPOSE_BY_ACCOUNT = {
    AddressPurpose.PAYMENT: 84,
    AddressPurpose.ORDINALS: 86,
}


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/86'/0'/0'/0/0")
        ' or h indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue

            hardened = part.endswith(("'", "h"))
            index = int(part.rstrip("'h"))
            if hardened:
                index += HARDENED

            key = key._derive_child(index)

        return key

    def _derive_child(self, index: int) -> HDKey:
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self._public_key.format(compressed=True) + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset_int = int.from_bytes(hmac_result[:32], "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_key_int = (self._private_key.to_int() + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        return HDKey(PrivateKey.from_int(child_key_int), hmac_result[32:], depth=self.depth + 1)

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        return self._public_key.format(compressed=compressed)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert BIP39 mnemonic to seed (PBKDF2-HMAC-SHA512, 2048 rounds)."""
    mnemonic_bytes = " ".join(mnemonic.split()).encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)


def account_path(purpose: AddressPurpose, network: Network, index: int = 0) -> str:
    """First receive address path: m/84'/coin'/0'/0/i or m/86'/coin'/0'/0/i"""
    coin_type = 0 if network.is_mainnet else 1
    return f"m/{_PURPOSE_BY_ACCOUNT[purpose]}'/{coin_type}'/0'/0/{index}"
