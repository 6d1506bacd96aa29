"""
BIP322 "simple" message signatures for P2WPKH and P2TR addresses.

The signature is the witness of the virtual to_sign transaction, encoded as
a witness stack and then base64.
"""

from __future__ import annotations

import base64

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from loguru import logger

from midlanchor.bitcoin.address import (
    address_to_scriptpubkey,
    hash160,
    taproot_tweak_pubkey,
)
from midlanchor.bitcoin.transaction import (
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    Transaction,
    TransactionError,
    TxIn,
    TxOut,
    bip143_sighash,
    bip341_sighash,
    p2wpkh_script_code,
    parse_witness,
    serialize_witness,
    sign_p2tr_input,
    sign_p2wpkh_input,
    tagged_hash,
)
from midlanchor.errors import InvalidAddress, SigningError
from midlanchor.models import AddressType, Network

_NULL_TXID = "00" * 32


def message_hash(message: str | bytes) -> bytes:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return tagged_hash("BIP0322-signed-message", message)


def to_spend_tx(message: str | bytes, script_pubkey: bytes) -> Transaction:
    script_sig = b"\x00\x20" + message_hash(message)
    return Transaction(
        version=0,
        locktime=0,
        inputs=(TxIn(txid=_NULL_TXID, vout=0xFFFFFFFF, sequence=0, script_sig=script_sig),),
        outputs=(TxOut(value=0, script=script_pubkey),),
    )


def to_sign_tx(to_spend: Transaction) -> Transaction:
    return Transaction(
        version=0,
        locktime=0,
        inputs=(TxIn(txid=to_spend.txid, vout=0, sequence=0),),
        outputs=(TxOut(value=0, script=b"\x6a"),),
    )


def sign_simple(
    message: str | bytes,
    private_key: PrivateKey,
    address_type: AddressType,
) -> str:
    """
    Produce a base64 BIP322 simple signature.

    Args:
        message: Message to sign
        private_key: Key owning the address (untweaked internal key for P2TR)
        address_type: P2WPKH or P2TR
    """
    pubkey = private_key.public_key.format(compressed=True)
    if address_type == AddressType.P2WPKH:
        script = b"\x00\x14" + hash160(pubkey)
    elif address_type == AddressType.P2TR:
        script = b"\x51\x20" + taproot_tweak_pubkey(pubkey)
    else:
        raise SigningError(f"BIP322 signing is not supported for {address_type.value} addresses")

    to_spend = to_spend_tx(message, script)
    to_sign = to_sign_tx(to_spend)
    prevout = to_spend.outputs[0]

    if address_type == AddressType.P2WPKH:
        witness = sign_p2wpkh_input(to_sign, 0, 0, private_key)
    else:
        witness = sign_p2tr_input(to_sign, 0, [prevout], private_key)

    return base64.b64encode(serialize_witness(witness)).decode("ascii")


def verify_simple(message: str | bytes, address: str, signature: str, network: Network) -> bool:
    """Verify a BIP322 simple signature. Returns False on any failure."""
    try:
        script = address_to_scriptpubkey(address, network)
        raw = base64.b64decode(signature, validate=True)
        witness, end = parse_witness(raw)
    except (InvalidAddress, ValueError, IndexError) as e:
        logger.debug(f"BIP322 signature for {address} did not parse: {e}")
        return False
    if end != len(raw):
        return False

    to_spend = to_spend_tx(message, script)
    to_sign = to_sign_tx(to_spend)

    try:
        if len(script) == 22 and script[:2] == b"\x00\x14":
            if len(witness) != 2:
                return False
            sig, pubkey = witness
            if not sig or hash160(pubkey) != script[2:] or sig[-1] != SIGHASH_ALL:
                return False
            sighash = bip143_sighash(to_sign, 0, p2wpkh_script_code(pubkey), 0)
            return PublicKey(pubkey).verify(sig[:-1], sighash, hasher=None)

        if len(script) == 34 and script[:2] == b"\x51\x20":
            if len(witness) != 1:
                return False
            sig = witness[0]
            if len(sig) == 65:
                sighash_type = sig[64]
                if sighash_type == SIGHASH_DEFAULT:
                    return False
                sig = sig[:64]
            elif len(sig) == 64:
                sighash_type = SIGHASH_DEFAULT
            else:
                return False
            sighash = bip341_sighash(to_sign, 0, [to_spend.outputs[0]], sighash_type)
            return PublicKeyXOnly(script[2:]).verify(sig, sighash)

    except (ValueError, TransactionError) as e:
        logger.debug(f"BIP322 verification for {address} failed: {e}")
        return False

    logger.debug(f"BIP322 verification is not supported for {address}")
    return False
