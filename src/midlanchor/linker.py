"""
Cross-chain linking: binds EVM intentions to one signed Bitcoin transaction.

Each intention gets a BIP322 signature over a binding message that commits
to the chain id, the anchoring txid, the EVM nonce, the gas limit and the
intention digest.
A signed intention is valid for exactly one anchoring txid; there is no
rebind operation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from midlanchor.bitcoin.bip322 import verify_simple
from midlanchor.bitcoin.transaction import Transaction
from midlanchor.connector import Connector, sign_owned_inputs
from midlanchor.constants import BINDING_MESSAGE_PREFIX, DEFAULT_GAS_LIMIT
from midlanchor.errors import InvalidInput, SigningError
from midlanchor.models import (
    Account,
    ApprovalDecision,
    ApprovalScope,
    BindingSignature,
    Intention,
    Network,
    SignedIntention,
)
from midlanchor.psbt import Psbt


def binding_message(
    intention: Intention, anchoring_txid: str, nonce: int, gas_limit: int
) -> str:
    return ":".join(
        [
            BINDING_MESSAGE_PREFIX,
            str(intention.chain_id),
            anchoring_txid,
            str(nonce),
            str(gas_limit),
            intention.digest().hex(),
        ]
    )


@dataclass(frozen=True)
class LinkedAnchor:
    psbt: Psbt
    raw_tx: Transaction
    anchoring_txid: str
    signed_intentions: tuple[SignedIntention, ...]

    @property
    def raw_tx_hex(self) -> str:
        return self.raw_tx.hex()


class CrossChainLinker:
    def __init__(
        self,
        connector: Connector,
        account: Account,
        network: Network,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ):
        self.connector = connector
        self.account = account
        self.network = network
        self.gas_limit = gas_limit

    async def sign_anchor(self, psbt: Psbt, decision: ApprovalDecision) -> Psbt:
        """
        Sign every input of psbt owned by the account.

        Raises:
            ApprovalDeclined: decision does not approve signing this psbt
            SigningError: The connector left inputs unsigned
        """
        decision.require(ApprovalScope.SIGN, psbt.digest())

        signed = await sign_owned_inputs(self.connector, psbt, self.account, self.network)
        if not signed.is_finalized:
            raise SigningError("Connector did not sign every input of the anchoring transaction")
        return signed

    async def link(
        self,
        psbt: Psbt,
        intentions: Sequence[Intention],
        decision: ApprovalDecision,
        nonce: int,
    ) -> LinkedAnchor:
        """
        Sign the anchoring transaction and bind each intention to its txid.

        Intentions receive consecutive nonces starting at ``nonce``.
        """
        if not intentions:
            raise InvalidInput("At least one intention is required")

        signed_psbt = await self.sign_anchor(psbt, decision)
        raw_tx = signed_psbt.extract()
        anchoring_txid = raw_tx.txid
        logger.info(f"Signed anchoring transaction {anchoring_txid}")

        signed_intentions = []
        for offset, intention in enumerate(intentions):
            intention_nonce = nonce + offset
            message = binding_message(
                intention, anchoring_txid, intention_nonce, self.gas_limit
            )
            signature = await self.connector.sign_message(message, self.account.address)

            signed_intentions.append(
                SignedIntention(
                    intention=intention,
                    nonce=intention_nonce,
                    gas_limit=self.gas_limit,
                    anchoring_txid=anchoring_txid,
                    binding=BindingSignature(
                        address=self.account.address,
                        public_key=self.account.public_key,
                        signature=signature,
                    ),
                )
            )
            logger.debug(f"Bound intention with nonce {intention_nonce} to {anchoring_txid}")

        return LinkedAnchor(
            psbt=signed_psbt,
            raw_tx=raw_tx,
            anchoring_txid=anchoring_txid,
            signed_intentions=tuple(signed_intentions),
        )


def verify_binding(signed: SignedIntention, anchoring_txid: str, network: Network) -> bool:
    """Check that signed is bound to anchoring_txid."""
    if signed.anchoring_txid != anchoring_txid:
        return False
    message = binding_message(signed.intention, anchoring_txid, signed.nonce, signed.gas_limit)
    return verify_simple(message, signed.binding.address, signed.binding.signature, network)
