"""
midlanchor - Anchor EVM intentions to Bitcoin transactions

Provides coin selection, PSBT drafting, intention encoding, cross-chain
binding and dual-chain submission behind a human approval gate.
"""

__version__ = "0.1.0"

from midlanchor.errors import (
    AnchorError,
    AnchorOutcomeUnknown,
    ApprovalDeclined,
    BackendError,
    BitcoinRejected,
    InsufficientFunds,
    InvalidAddress,
    InvalidInput,
    PartialAnchorFailure,
    SigningError,
)
from midlanchor.models import (
    UTXO,
    Account,
    ApprovalDecision,
    ApprovalScope,
    Intention,
    Network,
    NetworkType,
    SignedIntention,
    Target,
)

__all__ = [
    "Account",
    "AnchorError",
    "AnchorOutcomeUnknown",
    "ApprovalDecision",
    "ApprovalDeclined",
    "ApprovalScope",
    "BackendError",
    "BitcoinRejected",
    "InsufficientFunds",
    "Intention",
    "InvalidAddress",
    "InvalidInput",
    "Network",
    "NetworkType",
    "PartialAnchorFailure",
    "SignedIntention",
    "SigningError",
    "Target",
    "UTXO",
]
