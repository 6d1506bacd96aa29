"""
Dual-chain submission.

The anchoring Bitcoin transaction and its signed intentions are sent to the
EVM node in a single eth_sendBTCTransactions call. Failures are classified
by asking the Bitcoin backend whether the anchoring transaction exists:
- node refused it and the network does not know it: BitcoinRejected, safe to
  retry with fresh coins
- transport failure or failed lookup: AnchorOutcomeUnknown, poll, do not resubmit
- known to the network: PartialAnchorFailure, the BTC fee is spent

Nothing here is retried automatically.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from midlanchor.backends.base import BitcoinBackend
from midlanchor.constants import DEFAULT_RECEIPT_POLL_INTERVAL, DEFAULT_RECEIPT_TIMEOUT
from midlanchor.errors import (
    AnchorError,
    AnchorOutcomeUnknown,
    BackendError,
    BitcoinRejected,
    PartialAnchorFailure,
)
from midlanchor.evm.rpc import EvmRpcClient, EvmRpcError
from midlanchor.linker import LinkedAnchor
from midlanchor.models import ApprovalDecision, ApprovalScope


class SubmissionStatus(str, Enum):
    CONFIRMED = "confirmed"
    SUBMITTED_UNCONFIRMED = "submitted_unconfirmed"


@dataclass(frozen=True)
class SubmissionResult:
    anchoring_txid: str
    evm_tx_hashes: tuple[str, ...]
    status: SubmissionStatus
    receipts: dict[str, dict[str, Any]] = field(default_factory=dict)


class DualChainSubmitter:
    def __init__(
        self,
        backend: BitcoinBackend,
        evm_rpc: EvmRpcClient,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        poll_interval: float = DEFAULT_RECEIPT_POLL_INTERVAL,
    ):
        self.backend = backend
        self.evm_rpc = evm_rpc
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

    async def submit(self, linked: LinkedAnchor, decision: ApprovalDecision) -> SubmissionResult:
        """
        Submit both halves of an anchor and wait for EVM receipts.

        Raises:
            ApprovalDeclined: decision does not approve broadcasting this txid
            BitcoinRejected: The anchoring transaction was not accepted
            PartialAnchorFailure: Bitcoin accepted, EVM rejected
            AnchorOutcomeUnknown: Submission may have landed; poll before retrying
        """
        txid = linked.anchoring_txid
        decision.require(ApprovalScope.BROADCAST, txid)

        raw_hex = linked.raw_tx_hex
        reject_reason = await self.backend.test_mempool_accept(raw_hex)
        if reject_reason is not None:
            logger.error(f"Anchoring transaction {txid} failed mempool preflight: {reject_reason}")
            raise BitcoinRejected(txid, reject_reason)

        tx_hashes = [s.tx_hash for s in linked.signed_intentions]
        logger.info(f"Submitting anchor {txid} with {len(tx_hashes)} intention(s)")

        try:
            await self.evm_rpc.send_btc_transactions(
                [s.serialize_hex() for s in linked.signed_intentions], raw_hex
            )
        except BackendError as e:
            await self._classify_failure(txid, tx_hashes, e)

        logger.info(f"Anchor {txid} submitted, waiting for EVM receipts")
        receipts = await self.wait_for_receipts(txid, tx_hashes)

        status = (
            SubmissionStatus.CONFIRMED
            if len(receipts) == len(tx_hashes)
            else SubmissionStatus.SUBMITTED_UNCONFIRMED
        )
        return SubmissionResult(
            anchoring_txid=txid,
            evm_tx_hashes=tuple(tx_hashes),
            status=status,
            receipts=receipts,
        )

    async def _classify_failure(self, txid: str, tx_hashes: list[str], error: AnchorError) -> None:
        try:
            status = await self.backend.get_transaction_status(txid)
        except BackendError as e:
            logger.error(f"Could not look up anchoring transaction {txid}: {e}")
            raise AnchorOutcomeUnknown(
                txid, f"{error.error_message}; status lookup failed: {e.error_message}", tx_hashes
            ) from error

        if status is not None:
            logger.critical(
                f"PARTIAL ANCHOR FAILURE: Bitcoin transaction {txid} was accepted "
                f"but the EVM side was rejected: {error.error_message}"
            )
            raise PartialAnchorFailure(txid, error.error_message, tx_hashes) from error

        # Only an answer from the node proves it refused the pair
        if not isinstance(error, EvmRpcError):
            logger.error(f"Anchor {txid} may have been relayed: {error.error_message}")
            raise AnchorOutcomeUnknown(txid, error.error_message, tx_hashes) from error

        logger.error(f"Anchor {txid} rejected: {error.error_message}")
        raise BitcoinRejected(txid, error.error_message) from error

    async def wait_for_receipts(self, txid: str, tx_hashes: list[str]) -> dict[str, dict]:
        """
        Poll for EVM receipts until all arrive or the timeout passes.

        A timeout is not an error; the missing hashes are left out of the
        result. Cancelling stops waiting and does not undo the submission.
        """
        receipts: dict[str, dict] = {}
        deadline = time.monotonic() + self.receipt_timeout

        try:
            while True:
                for tx_hash in tx_hashes:
                    if tx_hash in receipts:
                        continue
                    try:
                        receipt = await self.evm_rpc.get_transaction_receipt(tx_hash)
                    except BackendError as e:
                        logger.warning(f"Receipt lookup for {tx_hash} failed: {e}")
                        continue
                    if receipt is None:
                        continue

                    if int(str(receipt.get("status", "0x1")), 16) == 0:
                        logger.critical(
                            f"PARTIAL ANCHOR FAILURE: EVM transaction {tx_hash} reverted "
                            f"after Bitcoin transaction {txid} was accepted"
                        )
                        raise PartialAnchorFailure(txid, f"{tx_hash} reverted", list(tx_hashes))
                    receipts[tx_hash] = receipt

                if len(receipts) == len(tx_hashes):
                    return receipts

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        f"Timed out after {self.receipt_timeout:.0f}s waiting for receipts; "
                        f"{len(tx_hashes) - len(receipts)} of {len(tx_hashes)} still pending"
                    )
                    return receipts
                await asyncio.sleep(min(self.poll_interval, remaining))

        except asyncio.CancelledError:
            logger.warning(f"Stopped waiting for receipts of anchor {txid}; submission stands")
            raise

    async def broadcast_bitcoin(self, raw_hex: str, txid: str, decision: ApprovalDecision) -> str:
        """
        Broadcast a plain signed Bitcoin transaction.

        Raises:
            ApprovalDeclined: decision does not approve broadcasting txid
            BitcoinRejected: The network rejected the transaction
        """
        decision.require(ApprovalScope.BROADCAST, txid)
        return await self.backend.broadcast_transaction(raw_hex)
