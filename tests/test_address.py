"""
Tests for Bitcoin address encoding and decoding.
"""

from __future__ import annotations

import pytest
from coincurve import PrivateKey

from midlanchor.bitcoin.address import (
    BECH32_CONST,
    CHARSET,
    address_to_scriptpubkey,
    address_type,
    bech32_create_checksum,
    convertbits,
    decode_segwit_address,
    encode_segwit_address,
    is_valid_address,
    pubkey_to_p2tr_address,
    pubkey_to_p2wpkh_address,
    scriptpubkey_to_address,
)
from midlanchor.errors import InvalidAddress, InvalidInput
from midlanchor.models import AddressType, Network

MAINNET = Network.from_id("mainnet")
TESTNET = Network.from_id("testnet")
REGTEST = Network.from_id("regtest")

P2WPKH_PROGRAM = bytes.fromhex("751e76e8199196d454941c45d1b3a323f1433bd6")


class TestSegwitDecoding:
    def test_bip173_p2wpkh(self) -> None:
        script = address_to_scriptpubkey("BC1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4", MAINNET)
        assert script == bytes.fromhex("0014") + P2WPKH_PROGRAM

    def test_bip173_p2wsh(self) -> None:
        script = address_to_scriptpubkey(
            "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7", TESTNET
        )
        assert script == bytes.fromhex(
            "00201863143c14c5166804bd19203356da136c985678cd4d27a1b8c6329604903262"
        )

    def test_bip350_taproot(self) -> None:
        script = address_to_scriptpubkey(
            "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0", MAINNET
        )
        assert script == bytes.fromhex(
            "512079be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )

    def test_regtest_prefix(self) -> None:
        address = encode_segwit_address("bcrt", 0, P2WPKH_PROGRAM)
        assert address.startswith("bcrt1q")
        assert decode_segwit_address("bcrt", address) == (0, P2WPKH_PROGRAM)

    def test_mixed_case_rejected(self) -> None:
        with pytest.raises(InvalidAddress, match="mixed case"):
            address_to_scriptpubkey("bc1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4", MAINNET)

    def test_bad_checksum_rejected(self) -> None:
        with pytest.raises(InvalidAddress):
            address_to_scriptpubkey("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5", MAINNET)

    def test_taproot_with_bech32_checksum_rejected(self) -> None:
        """Witness v1 must use bech32m."""
        data = [1] + convertbits(bytes(32), 8, 5)
        checksum = bech32_create_checksum("bc", data, BECH32_CONST)
        address = "bc1" + "".join(CHARSET[d] for d in data + checksum)

        with pytest.raises(InvalidAddress, match="checksum variant"):
            address_to_scriptpubkey(address, MAINNET)

    def test_wrong_network_rejected(self) -> None:
        with pytest.raises(InvalidAddress):
            address_to_scriptpubkey("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", REGTEST)

    def test_invalid_address_is_invalid_input(self) -> None:
        with pytest.raises(InvalidInput):
            address_to_scriptpubkey("not-an-address", REGTEST)

    def test_empty_address(self) -> None:
        assert not is_valid_address("", REGTEST)


class TestBase58:
    def test_p2pkh(self) -> None:
        assert address_type("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", MAINNET) == AddressType.P2PKH

    def test_p2sh(self) -> None:
        assert address_type("3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy", MAINNET) == AddressType.P2SH

    def test_mainnet_base58_on_testnet(self) -> None:
        assert not is_valid_address("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", TESTNET)

    def test_script_roundtrip(self) -> None:
        script = address_to_scriptpubkey("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", MAINNET)
        assert scriptpubkey_to_address(script, MAINNET) == "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"


class TestAddressTypes:
    def test_classification(self) -> None:
        pubkey = PrivateKey.from_int(3).public_key.format()
        assert address_type(pubkey_to_p2wpkh_address(pubkey, REGTEST), REGTEST) == AddressType.P2WPKH
        assert address_type(pubkey_to_p2tr_address(pubkey, REGTEST), REGTEST) == AddressType.P2TR
        assert (
            address_type(
                "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7", TESTNET
            )
            == AddressType.P2WSH
        )

    def test_taproot_accepts_xonly_key(self) -> None:
        pubkey = PrivateKey.from_int(5).public_key.format()
        assert pubkey_to_p2tr_address(pubkey, REGTEST) == pubkey_to_p2tr_address(
            pubkey[1:], REGTEST
        )

    def test_p2wpkh_requires_compressed_key(self) -> None:
        pubkey = PrivateKey.from_int(5).public_key.format(compressed=False)
        with pytest.raises(ValueError):
            pubkey_to_p2wpkh_address(pubkey, REGTEST)

    def test_op_return_has_no_address(self) -> None:
        assert scriptpubkey_to_address(b"\x6a", REGTEST) is None
