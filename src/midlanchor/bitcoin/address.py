"""
Bitcoin address encoding and decoding.

Segwit addresses use BIP173 bech32 (witness v0) and BIP350 bech32m (v1+).
Legacy P2PKH/P2SH addresses use base58check.
"""

from __future__ import annotations

import hashlib

import base58
from coincurve import PublicKey

from midlanchor.bitcoin.transaction import tagged_hash
from midlanchor.errors import InvalidAddress
from midlanchor.models import AddressType, Network

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

# (P2PKH, P2SH) version bytes
_BASE58_VERSIONS = {
    "bitcoin": (0x00, 0x05),
    "testnet": (0x6F, 0xC4),
    "regtest": (0x6F, 0xC4),
}


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def bech32_polymod(values: list[int]) -> int:
    """Bech32 checksum polymod"""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int]:
    """Convert between bit groups"""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            raise ValueError("Invalid data value")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("Invalid bits")

    return ret


def encode_segwit_address(hrp: str, witness_version: int, witness_program: bytes) -> str:
    const = BECH32_CONST if witness_version == 0 else BECH32M_CONST
    data = [witness_version] + convertbits(witness_program, 8, 5)
    combined = data + bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join(CHARSET[d] for d in combined)


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """
    Decode a segwit address for the expected human-readable part.

    Returns:
        (witness_version, witness_program)

    Raises:
        ValueError: If the address is malformed or for another network
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError("mixed case")
    address = address.lower()

    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError("bad separator position or length")
    if address[:pos] != hrp:
        raise ValueError(f"expected prefix '{hrp}', got '{address[:pos]}'")
    if any(c not in CHARSET for c in address[pos + 1 :]):
        raise ValueError("invalid character")

    data = [CHARSET.find(c) for c in address[pos + 1 :]]
    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise ValueError("bad checksum")

    witness_version = data[0]
    if witness_version > 16:
        raise ValueError("invalid witness version")
    program = bytes(convertbits(data[1:-6], 5, 8, pad=False))
    if not 2 <= len(program) <= 40:
        raise ValueError("invalid program length")
    if witness_version == 0 and len(program) not in (20, 32):
        raise ValueError("invalid v0 program length")
    if (witness_version == 0) != (const == BECH32_CONST):
        raise ValueError("wrong checksum variant for witness version")

    return witness_version, program


def _segwit_script(witness_version: int, program: bytes) -> bytes:
    opcode = 0x00 if witness_version == 0 else 0x50 + witness_version
    return bytes([opcode, len(program)]) + program


def address_to_scriptpubkey(address: str, network: Network) -> bytes:
    """
    Convert an address to its scriptPubKey for the given network.

    Raises:
        InvalidAddress: If the address does not decode for this network
    """
    if not address:
        raise InvalidAddress(address, "empty")

    if address.lower().startswith(network.hrp + "1"):
        try:
            version, program = decode_segwit_address(network.hrp, address)
        except ValueError as e:
            raise InvalidAddress(address, str(e)) from e
        return _segwit_script(version, program)

    try:
        payload = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddress(address, f"not a {network.id.value} address") from e

    if len(payload) != 21:
        raise InvalidAddress(address, "bad payload length")

    p2pkh_version, p2sh_version = _BASE58_VERSIONS[network.bitcoin_network]
    version, body = payload[0], payload[1:]
    if version == p2pkh_version:
        return b"\x76\xa9\x14" + body + b"\x88\xac"
    if version == p2sh_version:
        return b"\xa9\x14" + body + b"\x87"
    raise InvalidAddress(address, f"not a {network.id.value} address")


def scriptpubkey_to_address(script: bytes, network: Network) -> str | None:
    """Reverse of address_to_scriptpubkey. Returns None for non-standard scripts."""
    p2pkh_version, p2sh_version = _BASE58_VERSIONS[network.bitcoin_network]

    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return base58.b58encode_check(bytes([p2pkh_version]) + script[3:23]).decode()
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return base58.b58encode_check(bytes([p2sh_version]) + script[2:22]).decode()
    if 4 <= len(script) <= 42 and script[1] == len(script) - 2:
        if script[0] == 0x00:
            return encode_segwit_address(network.hrp, 0, script[2:])
        if 0x51 <= script[0] <= 0x60:
            return encode_segwit_address(network.hrp, script[0] - 0x50, script[2:])
    return None


def address_type(address: str, network: Network) -> AddressType:
    """Classify an address by its output script."""
    script = address_to_scriptpubkey(address, network)

    if script[0] == 0x00:
        return AddressType.P2WPKH if len(script) == 22 else AddressType.P2WSH
    if script[0] == 0x51 and len(script) == 34:
        return AddressType.P2TR
    if script[0] == 0x76:
        return AddressType.P2PKH
    if script[0] == 0xA9:
        return AddressType.P2SH
    raise InvalidAddress(address, "unsupported witness version")


def is_valid_address(address: str, network: Network) -> bool:
    try:
        address_to_scriptpubkey(address, network)
    except InvalidAddress:
        return False
    return True


def pubkey_to_p2wpkh_address(pubkey: bytes, network: Network) -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return encode_segwit_address(network.hrp, 0, hash160(pubkey))


def taproot_tweak_pubkey(pubkey: bytes) -> bytes:
    """
    BIP86 output key for an internal key with no script tree.

    Args:
        pubkey: 33-byte compressed or 32-byte x-only internal key

    Returns:
        32-byte x-only output key
    """
    if len(pubkey) == 33:
        pubkey = pubkey[1:]
    if len(pubkey) != 32:
        raise ValueError(f"Invalid internal key length: {len(pubkey)}")

    tweak = tagged_hash("TapTweak", pubkey)
    output_key = PublicKey(b"\x02" + pubkey).add(tweak)
    return output_key.format(compressed=True)[1:]


def pubkey_to_p2tr_address(pubkey: bytes, network: Network) -> str:
    """BIP86 key-path-only taproot address (BIP350 bech32m encoding)."""
    return encode_segwit_address(network.hrp, 1, taproot_tweak_pubkey(pubkey))


def p2tr_scriptpubkey(pubkey: bytes) -> bytes:
    return _segwit_script(1, taproot_tweak_pubkey(pubkey))


def p2wpkh_scriptpubkey(pubkey: bytes) -> bytes:
    """OP_0 <20-byte-hash>"""
    return _segwit_script(0, hash160(pubkey))
