"""
Error taxonomy for the anchoring pipeline.

Every failure a caller can see derives from AnchorError and converts to a
structured ``{"error": ..., "error_message": ...}`` payload at the pipeline
edge. Financial operations are never retried automatically: the caller decides
whether to retry with fresh state.

Confirmation timeouts are not errors; see SubmissionStatus.SUBMITTED_UNCONFIRMED.
"""

from __future__ import annotations

from typing import Any


class AnchorError(Exception):
    """Base class for failures reported to callers."""

    def __init__(self, message: str):
        super().__init__(message)
        self.error_message = message

    def to_failure(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "error_message": self.error_message}


class InvalidInput(AnchorError):
    """Caller supplied a malformed request. Reported immediately, not retried."""


class InvalidAddress(InvalidInput):
    def __init__(self, address: str, reason: str = ""):
        message = f"Invalid address: {address}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
        self.address = address


class InsufficientFunds(AnchorError):
    """No subset of the UTXO set covers targets plus fee."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient funds: need at least {required} sats, have {available} sats"
        )
        self.required = required
        self.available = available


class ApprovalDeclined(AnchorError):
    """The human approval gate did not return an explicit affirmative. Terminal."""

    def __init__(self, scope: str, reason: str):
        super().__init__(f"Approval for '{scope}' declined: {reason}")
        self.scope = scope
        self.reason = reason


class SigningError(AnchorError):
    """The connector could not produce the requested signatures."""


class BackendError(AnchorError):
    """A chain backend could not be reached or returned garbage."""


class BitcoinRejected(AnchorError):
    """
    The Bitcoin network rejected the anchoring transaction before confirmation.

    Nothing was confirmed on either chain, so a retry with a fresh coin
    selection is safe.
    """

    def __init__(self, txid: str, reason: str):
        super().__init__(f"Bitcoin transaction {txid} rejected: {reason}")
        self.txid = txid
        self.reason = reason


class PartialAnchorFailure(AnchorError):
    """
    The Bitcoin transaction was accepted but the EVM side was rejected.

    The BTC fee is spent and the EVM effect will never happen. This must be
    surfaced prominently and is fatal for the attempt.
    """

    def __init__(self, anchoring_txid: str, reason: str, evm_tx_hashes: list[str] | None = None):
        super().__init__(
            f"Bitcoin transaction {anchoring_txid} was accepted but the EVM intention "
            f"was rejected: {reason}"
        )
        self.anchoring_txid = anchoring_txid
        self.reason = reason
        self.evm_tx_hashes = evm_tx_hashes or []

    def to_failure(self) -> dict[str, Any]:
        failure = super().to_failure()
        failure["anchoring_txid"] = self.anchoring_txid
        failure["evm_tx_hashes"] = self.evm_tx_hashes
        return failure


class AnchorOutcomeUnknown(AnchorError):
    """
    Submission failed in a way that does not show whether the node took it.

    The anchoring transaction may already be relayed. Re-poll its status and
    the EVM receipts; do not resubmit with a fresh coin selection.
    """

    def __init__(self, anchoring_txid: str, reason: str, evm_tx_hashes: list[str] | None = None):
        super().__init__(
            f"Outcome of anchor {anchoring_txid} is unknown, poll before retrying: {reason}"
        )
        self.anchoring_txid = anchoring_txid
        self.reason = reason
        self.evm_tx_hashes = evm_tx_hashes or []

    def to_failure(self) -> dict[str, Any]:
        failure = super().to_failure()
        failure["anchoring_txid"] = self.anchoring_txid
        failure["evm_tx_hashes"] = self.evm_tx_hashes
        return failure
