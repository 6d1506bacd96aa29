"""
Bitcoin transaction serialization, sighash computation and input signing.

Supports the two spend types the anchoring pipeline signs:
- P2WPKH inputs (BIP143 sighash, ECDSA)
- P2TR key-path inputs (BIP341 sighash, BIP340 Schnorr)
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from coincurve import PrivateKey

from midlanchor.constants import DEFAULT_LOCKTIME, DEFAULT_SEQUENCE, SECP256K1_N, TX_VERSION

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01


class TransactionError(Exception):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    return sha256(sha256(data))


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || msg)"""
    tag_hash = sha256(tag.encode())
    return sha256(tag_hash + tag_hash + msg)


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint at offset, returns (value, new_offset)."""
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(data[offset : offset + 2], "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(data[offset : offset + 4], "little"), offset + 4
    return int.from_bytes(data[offset : offset + 8], "little"), offset + 8


def serialize_witness(stack: Sequence[bytes]) -> bytes:
    result = encode_varint(len(stack))
    for item in stack:
        result += encode_varint(len(item)) + item
    return result


def parse_witness(data: bytes, offset: int = 0) -> tuple[tuple[bytes, ...], int]:
    count, offset = read_varint(data, offset)
    items = []
    for _ in range(count):
        item_len, offset = read_varint(data, offset)
        items.append(data[offset : offset + item_len])
        offset += item_len
    return tuple(items), offset


@dataclass(frozen=True)
class TxIn:
    # txid in RPC (big-endian) hex
    txid: str
    vout: int
    sequence: int = DEFAULT_SEQUENCE
    script_sig: bytes = b""
    witness: tuple[bytes, ...] = ()

    def outpoint_bytes(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + self.vout.to_bytes(4, "little")


@dataclass(frozen=True)
class TxOut:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return self.value.to_bytes(8, "little") + encode_varint(len(self.script)) + self.script


@dataclass(frozen=True)
class Transaction:
    inputs: tuple[TxIn, ...]
    outputs: tuple[TxOut, ...]
    version: int = TX_VERSION
    locktime: int = DEFAULT_LOCKTIME
    _cache: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness

        result = self.version.to_bytes(4, "little")
        if with_witness:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.outpoint_bytes()
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += inp.sequence.to_bytes(4, "little")

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for inp in self.inputs:
                result += serialize_witness(inp.witness)

        result += self.locktime.to_bytes(4, "little")
        return result

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, in RPC byte order."""
        if "txid" not in self._cache:
            self._cache["txid"] = hash256(self.serialize(include_witness=False))[::-1].hex()
        return self._cache["txid"]

    @property
    def vsize(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        weight = base_size * 3 + total_size
        return (weight + 3) // 4

    def hex(self) -> str:
        return self.serialize().hex()

    def with_witness(self, input_index: int, witness: Sequence[bytes]) -> Transaction:
        inputs = list(self.inputs)
        inputs[input_index] = replace(inputs[input_index], witness=tuple(witness))
        return replace(self, inputs=tuple(inputs))

    @classmethod
    def deserialize(cls, tx_bytes: bytes) -> Transaction:
        try:
            offset = 0
            version = int.from_bytes(tx_bytes[0:4], "little")
            offset += 4

            has_witness = False
            if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
                has_witness = True
                offset += 2

            input_count, offset = read_varint(tx_bytes, offset)
            raw_inputs = []
            for _ in range(input_count):
                txid = tx_bytes[offset : offset + 32][::-1].hex()
                offset += 32
                vout = int.from_bytes(tx_bytes[offset : offset + 4], "little")
                offset += 4
                script_len, offset = read_varint(tx_bytes, offset)
                script_sig = tx_bytes[offset : offset + script_len]
                offset += script_len
                sequence = int.from_bytes(tx_bytes[offset : offset + 4], "little")
                offset += 4
                raw_inputs.append((txid, vout, sequence, script_sig))

            output_count, offset = read_varint(tx_bytes, offset)
            outputs = []
            for _ in range(output_count):
                value = int.from_bytes(tx_bytes[offset : offset + 8], "little")
                offset += 8
                script_len, offset = read_varint(tx_bytes, offset)
                outputs.append(TxOut(value, tx_bytes[offset : offset + script_len]))
                offset += script_len

            witnesses: list[tuple[bytes, ...]] = [()] * input_count
            if has_witness:
                for i in range(input_count):
                    witnesses[i], offset = parse_witness(tx_bytes, offset)

            if offset + 4 != len(tx_bytes):
                raise ValueError(f"unexpected length {len(tx_bytes)}, parsed {offset + 4}")
            locktime = int.from_bytes(tx_bytes[offset : offset + 4], "little")

        except (IndexError, ValueError) as e:
            raise TransactionError(f"Failed to parse transaction: {e}") from e

        inputs = tuple(
            TxIn(txid=txid, vout=vout, sequence=sequence, script_sig=script_sig, witness=wit)
            for (txid, vout, sequence, script_sig), wit in zip(raw_inputs, witnesses)
        )
        return cls(inputs=inputs, outputs=tuple(outputs), version=version, locktime=locktime)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        try:
            raw = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise TransactionError(f"Transaction is not valid hex: {e}") from e
        return cls.deserialize(raw)


def p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """
    BIP143 scriptCode for P2WPKH: the P2PKH script of the key hash.

    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    pubkey_hash = hashlib.new("ripemd160", sha256(pubkey_bytes)).digest()
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


def bip143_sighash(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionError(f"Unsupported sighash type: {sighash_type}")

    hash_prevouts = hash256(b"".join(inp.outpoint_bytes() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target = tx.inputs[input_index]
    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + target.outpoint_bytes()
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )
    return hash256(preimage)


def bip341_sighash(
    tx: Transaction,
    input_index: int,
    prevouts: Sequence[TxOut],
    sighash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """
    BIP341 key-path signature hash (no annex).

    Args:
        tx: Transaction being signed
        input_index: Index of the input to sign
        prevouts: The outputs spent by every input, in input order
        sighash_type: SIGHASH_DEFAULT or SIGHASH_ALL

    Returns:
        32-byte TapSighash
    """
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")
    if len(prevouts) != len(tx.inputs):
        raise TransactionError("Taproot signing needs the prevout of every input")
    if sighash_type not in (SIGHASH_DEFAULT, SIGHASH_ALL):
        raise TransactionError(f"Unsupported sighash type: {sighash_type}")

    sha_prevouts = sha256(b"".join(inp.outpoint_bytes() for inp in tx.inputs))
    sha_amounts = sha256(b"".join(p.value.to_bytes(8, "little") for p in prevouts))
    sha_scriptpubkeys = sha256(
        b"".join(encode_varint(len(p.script)) + p.script for p in prevouts)
    )
    sha_sequences = sha256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    sha_outputs = sha256(b"".join(out.serialize() for out in tx.outputs))

    spend_type = 0  # key path, no annex
    msg = (
        b"\x00"  # epoch
        + bytes([sighash_type])
        + tx.version.to_bytes(4, "little")
        + tx.locktime.to_bytes(4, "little")
        + sha_prevouts
        + sha_amounts
        + sha_scriptpubkeys
        + sha_sequences
        + sha_outputs
        + bytes([spend_type])
        + input_index.to_bytes(4, "little")
    )
    return tagged_hash("TapSighash", msg)


def taproot_tweak_seckey(private_key: PrivateKey) -> PrivateKey:
    """Tweak an internal key for a BIP86 (no script tree) key-path spend."""
    pubkey = private_key.public_key.format(compressed=True)
    secret = private_key.to_int()
    if pubkey[0] == 0x03:
        secret = SECP256K1_N - secret

    tweak = int.from_bytes(tagged_hash("TapTweak", pubkey[1:]), "big")
    if tweak >= SECP256K1_N:
        raise TransactionError("Taproot tweak out of range")

    return PrivateKey.from_int((secret + tweak) % SECP256K1_N)


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    value: int,
    private_key: PrivateKey,
) -> list[bytes]:
    """Sign a P2WPKH input, returns the witness stack [signature, pubkey]."""
    pubkey = private_key.public_key.format(compressed=True)
    sighash = bip143_sighash(tx, input_index, p2wpkh_script_code(pubkey), value)

    # sighash is already SHA256d, hasher=None skips hashing
    signature = private_key.sign(sighash, hasher=None)
    return [signature + bytes([SIGHASH_ALL]), pubkey]


def sign_p2tr_input(
    tx: Transaction,
    input_index: int,
    prevouts: Sequence[TxOut],
    private_key: PrivateKey,
) -> list[bytes]:
    """Sign a P2TR key-path input with SIGHASH_DEFAULT, returns [signature]."""
    sighash = bip341_sighash(tx, input_index, prevouts)
    tweaked = taproot_tweak_seckey(private_key)
    return [tweaked.sign_schnorr(sighash)]
