"""
Domain models for the anchoring pipeline.

Boundary types that callers construct (Target, Intention, Account) are pydantic
models validated on construction. Chain snapshots and intermediate results are
frozen dataclasses: they are produced by this package and never mutated.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum

import rlp
from eth_utils import (
    big_endian_to_int,
    is_address,
    keccak,
    to_canonical_address,
    to_checksum_address,
)
from pydantic import BaseModel, ConfigDict, Field, field_validator

from midlanchor.errors import ApprovalDeclined


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    TESTNET4 = "testnet4"
    SIGNET = "signet"
    REGTEST = "regtest"


class AddressType(str, Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"


class AddressPurpose(str, Enum):
    PAYMENT = "payment"
    ORDINALS = "ordinals"


class ApprovalScope(str, Enum):
    SIGN = "sign"
    BROADCAST = "broadcast"


_MEMPOOL_BASE = "https://mempool.space"
_MIDL_REGTEST_MEMPOOL = "https://mempool.regtest.midl.xyz"


class Network(BaseModel):
    """Bitcoin network the pipeline operates on."""

    model_config = ConfigDict(frozen=True)

    id: NetworkType
    bitcoin_network: str  # "bitcoin" | "testnet" | "regtest"
    hrp: str
    explorer_url: str
    mempool_api_url: str

    @classmethod
    def from_id(cls, network_id: NetworkType | str) -> Network:
        network_id = NetworkType(network_id)

        if network_id == NetworkType.MAINNET:
            return cls(
                id=network_id,
                bitcoin_network="bitcoin",
                hrp="bc",
                explorer_url=f"{_MEMPOOL_BASE}/tx/",
                mempool_api_url=f"{_MEMPOOL_BASE}/api",
            )
        if network_id == NetworkType.REGTEST:
            return cls(
                id=network_id,
                bitcoin_network="regtest",
                hrp="bcrt",
                explorer_url=f"{_MIDL_REGTEST_MEMPOOL}/tx/",
                mempool_api_url=f"{_MIDL_REGTEST_MEMPOOL}/api",
            )
        # testnet, testnet4 and signet share the tb prefix and testnet params
        return cls(
            id=network_id,
            bitcoin_network="testnet",
            hrp="tb",
            explorer_url=f"{_MEMPOOL_BASE}/{network_id.value}/tx/",
            mempool_api_url=f"{_MEMPOOL_BASE}/{network_id.value}/api",
        )

    @property
    def is_mainnet(self) -> bool:
        return self.id == NetworkType.MAINNET

    def tx_url(self, txid: str) -> str:
        return f"{self.explorer_url}{txid}"


@dataclass(frozen=True)
class UTXO:
    """An unspent output as observed on chain. Never mutated locally."""

    txid: str
    vout: int
    value: int
    address: str
    scriptpubkey: str
    confirmations: int = 0

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class Target(BaseModel):
    """A desired payment output."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., min_length=1)
    value: int = Field(..., gt=0, strict=True, description="Amount in satoshis")


@dataclass(frozen=True)
class SelectionResult:
    """
    Result of coin selection.

    ``outputs`` holds the payment targets followed by the change output, if
    one was emitted. Invariant: input_value == output_value + fee.
    """

    inputs: tuple[UTXO, ...]
    outputs: tuple[Target, ...]
    fee: int
    fee_rate: float
    change_index: int | None = None

    @property
    def input_value(self) -> int:
        return sum(u.value for u in self.inputs)

    @property
    def output_value(self) -> int:
        return sum(o.value for o in self.outputs)

    @property
    def change_value(self) -> int:
        if self.change_index is None:
            return 0
        return self.outputs[self.change_index].value


class Account(BaseModel):
    """A Bitcoin account exposed by a connector. Read-only for this package."""

    model_config = ConfigDict(frozen=True)

    address: str
    public_key: str
    purpose: AddressPurpose
    address_type: AddressType


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class Intention(BaseModel):
    """
    A pending EVM side effect, not yet anchored to a Bitcoin transaction.

    ``to`` is None for contract deployments.
    """

    model_config = ConfigDict(frozen=True)

    to: str | None = None
    data: str = "0x"
    value: int = Field(default=0, ge=0)
    chain_id: int = Field(..., gt=0)

    @field_validator("to")
    @classmethod
    def validate_to(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not is_address(v):
            raise ValueError(f"Invalid EVM address: {v}")
        return to_checksum_address(v)

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: str) -> str:
        if not v.startswith("0x"):
            v = "0x" + v
        body = v[2:]
        if len(body) % 2:
            raise ValueError("Calldata must have an even number of hex digits")
        try:
            bytes.fromhex(body)
        except ValueError as e:
            raise ValueError("Calldata is not valid hex") from e
        return v.lower()

    @property
    def is_deployment(self) -> bool:
        return self.to is None

    @property
    def data_bytes(self) -> bytes:
        return _hex_to_bytes(self.data)

    def encode(self) -> bytes:
        """Canonical RLP encoding: [to, value, data, chain_id]."""
        to = to_canonical_address(self.to) if self.to else b""
        return rlp.encode([to, self.value, self.data_bytes, self.chain_id])

    def digest(self) -> bytes:
        return keccak(self.encode())


class DeploymentMetadata(BaseModel):
    """Address prediction data for a deployment intention."""

    model_config = ConfigDict(frozen=True)

    sender: str
    nonce: int = Field(..., ge=0)
    predicted_address: str


class BindingSignature(BaseModel):
    """BIP322 simple signature over the binding message (base64 witness)."""

    model_config = ConfigDict(frozen=True)

    address: str
    public_key: str
    signature: str


class SignedIntention(BaseModel):
    """An intention bound to exactly one anchoring Bitcoin transaction."""

    model_config = ConfigDict(frozen=True)

    intention: Intention
    nonce: int = Field(..., ge=0)
    gas_limit: int = Field(..., gt=0)
    anchoring_txid: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    binding: BindingSignature

    def serialize(self) -> bytes:
        """
        RLP encoding submitted to the EVM node:
        [nonce, gas, to, value, data, chainId, btcTxid, btcAddress, btcPubkey, bip322Sig]
        """
        intention = self.intention
        to = to_canonical_address(intention.to) if intention.to else b""
        return rlp.encode(
            [
                self.nonce,
                self.gas_limit,
                to,
                intention.value,
                intention.data_bytes,
                intention.chain_id,
                bytes.fromhex(self.anchoring_txid),
                self.binding.address.encode("ascii"),
                bytes.fromhex(self.binding.public_key),
                base64.b64decode(self.binding.signature),
            ]
        )

    def serialize_hex(self) -> str:
        return "0x" + self.serialize().hex()

    @property
    def tx_hash(self) -> str:
        return "0x" + keccak(self.serialize()).hex()

    @classmethod
    def deserialize(cls, raw: bytes) -> SignedIntention:
        fields = rlp.decode(raw)
        if len(fields) != 10:
            raise ValueError(f"Expected 10 fields, got {len(fields)}")
        nonce, gas, to, value, data, chain_id, txid, address, pubkey, sig = fields
        return cls(
            intention=Intention(
                to=to_checksum_address(to) if to else None,
                data="0x" + data.hex(),
                value=big_endian_to_int(value),
                chain_id=big_endian_to_int(chain_id),
            ),
            nonce=big_endian_to_int(nonce),
            gas_limit=big_endian_to_int(gas),
            anchoring_txid=txid.hex(),
            binding=BindingSignature(
                address=address.decode("ascii"),
                public_key=pubkey.hex(),
                signature=base64.b64encode(sig).decode("ascii"),
            ),
        )


@dataclass(frozen=True)
class ApprovalDecision:
    """
    Outcome of one approval request. Ephemeral and never persisted.

    ``subject`` identifies the exact artefact that was approved (the Bitcoin
    txid), so a decision cannot be replayed against another transaction.
    """

    approved: bool
    scope: ApprovalScope
    subject: str
    reason: str = ""

    def require(self, scope: ApprovalScope, subject: str) -> None:
        """Raise ApprovalDeclined unless this approves exactly (scope, subject)."""
        if not self.approved:
            raise ApprovalDeclined(scope.value, self.reason or "not approved")
        if self.scope != scope:
            raise ApprovalDeclined(
                scope.value, f"approval was granted for '{self.scope.value}', not '{scope.value}'"
            )
        if self.subject != subject:
            raise ApprovalDeclined(scope.value, "approval was granted for a different transaction")
