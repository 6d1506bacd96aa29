"""
Bitcoin backend implementations.

Available backends:
- MempoolSpaceBackend: mempool.space-compatible REST API
"""

from midlanchor.backends.base import BitcoinBackend, FeeRates, TransactionStatus
from midlanchor.backends.mempool import MempoolSpaceBackend

__all__ = [
    "BitcoinBackend",
    "FeeRates",
    "MempoolSpaceBackend",
    "TransactionStatus",
]
