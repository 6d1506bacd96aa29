"""
BIP174 (v0) partially signed Bitcoin transactions.

Only the fields the anchoring pipeline produces and consumes are modelled:
the global unsigned transaction, per-input witness UTXO, partial ECDSA
signatures, taproot key-path signature, taproot internal key and final
script witness. Unknown keys are dropped on parse.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from midlanchor.bitcoin.address import address_to_scriptpubkey, scriptpubkey_to_address
from midlanchor.bitcoin.transaction import (
    Transaction,
    TransactionError,
    TxIn,
    TxOut,
    encode_varint,
    parse_witness,
    read_varint,
    serialize_witness,
)
from midlanchor.constants import DEFAULT_LOCKTIME, DEFAULT_SEQUENCE, TX_VERSION
from midlanchor.errors import InvalidInput
from midlanchor.models import Network, SelectionResult

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_INTERNAL_KEY = 0x17


class PsbtError(InvalidInput):
    pass


@dataclass(frozen=True)
class PsbtInput:
    txid: str
    vout: int
    value: int
    script: bytes
    sequence: int = DEFAULT_SEQUENCE
    tap_internal_key: bytes | None = None
    partial_sigs: tuple[tuple[bytes, bytes], ...] = ()  # (pubkey, signature)
    tap_key_sig: bytes | None = None
    final_witness: tuple[bytes, ...] | None = None

    @property
    def is_taproot(self) -> bool:
        return len(self.script) == 34 and self.script[:2] == b"\x51\x20"

    @property
    def prevout(self) -> TxOut:
        return TxOut(value=self.value, script=self.script)


@dataclass(frozen=True)
class PsbtOutput:
    value: int
    script: bytes
    address: str | None = field(default=None, compare=False)


def _write_kv(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    entries = []
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return entries, offset
        key = data[offset : offset + key_len]
        offset += key_len
        value_len, offset = read_varint(data, offset)
        value = data[offset : offset + value_len]
        if len(value) != value_len:
            raise PsbtError("Truncated PSBT value")
        offset += value_len
        entries.append((key, value))


@dataclass(frozen=True)
class Psbt:
    """An unsigned (or partially signed) transaction. Signing returns a new Psbt."""

    inputs: tuple[PsbtInput, ...]
    outputs: tuple[PsbtOutput, ...]
    version: int = TX_VERSION
    locktime: int = DEFAULT_LOCKTIME

    def unsigned_tx(self) -> Transaction:
        return Transaction(
            inputs=tuple(TxIn(txid=i.txid, vout=i.vout, sequence=i.sequence) for i in self.inputs),
            outputs=tuple(TxOut(value=o.value, script=o.script) for o in self.outputs),
            version=self.version,
            locktime=self.locktime,
        )

    @property
    def unsigned_txid(self) -> str:
        return self.unsigned_tx().txid

    def digest(self) -> str:
        """
        Identifier of the exact transaction being approved.

        Segwit txids do not commit to witnesses, so this is also the txid of
        the signed transaction.
        """
        return self.unsigned_txid

    @property
    def input_value(self) -> int:
        return sum(i.value for i in self.inputs)

    @property
    def output_value(self) -> int:
        return sum(o.value for o in self.outputs)

    @property
    def fee(self) -> int:
        return self.input_value - self.output_value

    def prevouts(self) -> list[TxOut]:
        return [i.prevout for i in self.inputs]

    def with_input(self, index: int, **changes: Any) -> Psbt:
        inputs = list(self.inputs)
        inputs[index] = replace(inputs[index], **changes)
        return replace(self, inputs=tuple(inputs))

    @property
    def is_finalized(self) -> bool:
        return all(i.final_witness is not None for i in self.inputs)

    def finalize(self) -> Psbt:
        """Move signatures into final witnesses for every signed input."""
        inputs = []
        for inp in self.inputs:
            if inp.final_witness is not None:
                inputs.append(inp)
            elif inp.tap_key_sig is not None:
                inputs.append(
                    replace(inp, final_witness=(inp.tap_key_sig,), tap_key_sig=None)
                )
            elif len(inp.partial_sigs) == 1:
                pubkey, sig = inp.partial_sigs[0]
                inputs.append(replace(inp, final_witness=(sig, pubkey), partial_sigs=()))
            else:
                inputs.append(inp)
        return replace(self, inputs=tuple(inputs))

    def extract(self) -> Transaction:
        """
        Extract the signed network transaction.

        Raises:
            PsbtError: If any input has no final witness
        """
        missing = [n for n, i in enumerate(self.inputs) if i.final_witness is None]
        if missing:
            raise PsbtError(f"Inputs {missing} are not signed")

        tx = self.unsigned_tx()
        for n, inp in enumerate(self.inputs):
            tx = tx.with_witness(n, inp.final_witness)
        return tx

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        unsigned = self.unsigned_tx().serialize(include_witness=False)
        result += _write_kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), unsigned)
        result += b"\x00"

        for inp in self.inputs:
            result += _write_kv(bytes([PSBT_IN_WITNESS_UTXO]), inp.prevout.serialize())
            for pubkey, sig in inp.partial_sigs:
                result += _write_kv(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
            if inp.final_witness is not None:
                result += _write_kv(
                    bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), serialize_witness(inp.final_witness)
                )
            if inp.tap_key_sig is not None:
                result += _write_kv(bytes([PSBT_IN_TAP_KEY_SIG]), inp.tap_key_sig)
            if inp.tap_internal_key is not None:
                result += _write_kv(bytes([PSBT_IN_TAP_INTERNAL_KEY]), inp.tap_internal_key)
            result += b"\x00"

        for _ in self.outputs:
            result += b"\x00"

        return result

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def deserialize(cls, data: bytes, network: Network | None = None) -> Psbt:
        if not data.startswith(PSBT_MAGIC):
            raise PsbtError("Missing PSBT magic bytes")

        try:
            return cls._parse(data, network)
        except (IndexError, ValueError, TransactionError) as e:
            raise PsbtError(f"Malformed PSBT: {e}") from e

    @classmethod
    def _parse(cls, data: bytes, network: Network | None) -> Psbt:
        global_map, offset = _read_map(data, len(PSBT_MAGIC))
        unsigned_raw = None
        for key, value in global_map:
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                unsigned_raw = value
        if unsigned_raw is None:
            raise PsbtError("PSBT has no unsigned transaction")

        tx = Transaction.deserialize(unsigned_raw)
        if any(i.script_sig or i.witness for i in tx.inputs):
            raise PsbtError("Unsigned transaction carries signatures")

        inputs = []
        for txin in tx.inputs:
            entries, offset = _read_map(data, offset)
            witness_utxo = None
            fields: dict[str, Any] = {}
            partial_sigs = []
            for key, value in entries:
                key_type = key[0]
                if key_type == PSBT_IN_WITNESS_UTXO:
                    amount = int.from_bytes(value[:8], "little")
                    script_len, pos = read_varint(value, 8)
                    witness_utxo = (amount, value[pos : pos + script_len])
                elif key_type == PSBT_IN_PARTIAL_SIG:
                    partial_sigs.append((key[1:], value))
                elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                    fields["final_witness"], _ = parse_witness(value)
                elif key_type == PSBT_IN_TAP_KEY_SIG:
                    fields["tap_key_sig"] = value
                elif key_type == PSBT_IN_TAP_INTERNAL_KEY:
                    fields["tap_internal_key"] = value
                else:
                    logger.debug(f"Dropping unknown PSBT input key type {key_type:#04x}")

            if witness_utxo is None:
                raise PsbtError(f"Input {txin.txid}:{txin.vout} has no witness UTXO")

            inputs.append(
                PsbtInput(
                    txid=txin.txid,
                    vout=txin.vout,
                    sequence=txin.sequence,
                    value=witness_utxo[0],
                    script=witness_utxo[1],
                    partial_sigs=tuple(partial_sigs),
                    **fields,
                )
            )

        outputs = []
        for txout in tx.outputs:
            _, offset = _read_map(data, offset)
            address = scriptpubkey_to_address(txout.script, network) if network else None
            outputs.append(PsbtOutput(value=txout.value, script=txout.script, address=address))

        return cls(
            inputs=tuple(inputs),
            outputs=tuple(outputs),
            version=tx.version,
            locktime=tx.locktime,
        )

    @classmethod
    def from_base64(cls, psbt_b64: str, network: Network | None = None) -> Psbt:
        try:
            data = base64.b64decode(psbt_b64.strip(), validate=True)
        except binascii.Error as e:
            raise PsbtError(f"PSBT is not valid base64: {e}") from e
        return cls.deserialize(data, network)

    def describe(self, network: Network) -> dict[str, Any]:
        """Human-readable view of the transaction."""
        return {
            "txid": self.unsigned_txid,
            "version": self.version,
            "locktime": self.locktime,
            "inputs": [
                {
                    "txid": i.txid,
                    "vout": i.vout,
                    "sequence": i.sequence,
                    "value": i.value,
                    "address": scriptpubkey_to_address(i.script, network),
                    "signed": i.final_witness is not None,
                }
                for i in self.inputs
            ],
            "outputs": [
                {
                    "address": o.address or scriptpubkey_to_address(o.script, network),
                    "value": o.value,
                }
                for o in self.outputs
            ],
            "fee": self.fee,
            "finalized": self.is_finalized,
        }


def build_psbt(
    selection: SelectionResult,
    network: Network,
    *,
    tap_internal_key: bytes | None = None,
    locktime: int = DEFAULT_LOCKTIME,
) -> Psbt:
    """
    Draft the anchoring transaction from a coin selection.

    Args:
        selection: Inputs and outputs chosen by the coin selector
        network: Network every output address must decode for
        tap_internal_key: x-only internal key recorded on taproot inputs

    Raises:
        InvalidAddress: An output address is not valid for network
    """
    if tap_internal_key is not None and len(tap_internal_key) == 33:
        tap_internal_key = tap_internal_key[1:]

    inputs = []
    for utxo in selection.inputs:
        inp = PsbtInput(
            txid=utxo.txid,
            vout=utxo.vout,
            value=utxo.value,
            script=bytes.fromhex(utxo.scriptpubkey),
        )
        if inp.is_taproot and tap_internal_key is not None:
            inp = replace(inp, tap_internal_key=tap_internal_key)
        inputs.append(inp)

    outputs = tuple(
        PsbtOutput(
            value=target.value,
            script=address_to_scriptpubkey(target.address, network),
            address=target.address,
        )
        for target in selection.outputs
    )

    psbt = Psbt(inputs=tuple(inputs), outputs=outputs, locktime=locktime)
    logger.debug(
        f"Built PSBT {psbt.unsigned_txid}: {len(inputs)} input(s), "
        f"{len(outputs)} output(s), fee {psbt.fee} sats"
    )
    return psbt


def decode_psbt(psbt_b64: str, network: Network) -> dict[str, Any]:
    return Psbt.from_base64(psbt_b64, network).describe(network)
