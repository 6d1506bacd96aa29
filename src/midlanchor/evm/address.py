"""
EVM address derivation.

A contract created by ``sender`` with account nonce ``n`` lives at the last
20 bytes of keccak256(rlp([sender, n])). The sender address of a Bitcoin
account is derived from its secp256k1 public key the usual Ethereum way.
"""

from __future__ import annotations

import rlp
from coincurve import PublicKey
from eth_utils import is_address, keccak, to_canonical_address, to_checksum_address

from midlanchor.errors import InvalidInput


def predict_contract_address(sender: str, nonce: int) -> str:
    if not is_address(sender):
        raise InvalidInput(f"Invalid EVM address: {sender}")
    if nonce < 0:
        raise InvalidInput(f"Nonce must be non-negative, got {nonce}")

    encoded = rlp.encode([to_canonical_address(sender), nonce])
    return to_checksum_address(keccak(encoded)[12:])


def evm_address_from_public_key(public_key: str | bytes) -> str:
    """
    Args:
        public_key: 33-byte compressed or 32-byte x-only key (hex or bytes).
            x-only keys are taken with even Y.
    """
    if isinstance(public_key, str):
        try:
            public_key = bytes.fromhex(public_key[2:] if public_key.startswith("0x") else public_key)
        except ValueError as e:
            raise InvalidInput("Public key is not valid hex") from e

    if len(public_key) == 32:
        public_key = b"\x02" + public_key
    try:
        uncompressed = PublicKey(public_key).format(compressed=False)
    except ValueError as e:
        raise InvalidInput(f"Invalid public key: {e}") from e

    return to_checksum_address(keccak(uncompressed[1:])[12:])
