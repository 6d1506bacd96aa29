"""
Base Bitcoin backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from midlanchor.models import UTXO


@dataclass(frozen=True)
class FeeRates:
    """Recommended fee rates in sat/vB."""

    fastest: int
    half_hour: int
    hour: int
    economy: int
    minimum: int


@dataclass(frozen=True)
class TransactionStatus:
    txid: str
    confirmed: bool
    block_height: int | None = None
    block_time: int | None = None


class BitcoinBackend(ABC):
    """
    Abstract Bitcoin data provider: UTXOs, fees and broadcast.
    Backends hold no wallet state.
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[UTXO]:
        """Get UTXOs for an address"""

    @abstractmethod
    async def get_address_balance(self, address: str) -> int:
        """Get confirmed plus mempool balance for an address in satoshis"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def get_transaction_status(self, txid: str) -> TransactionStatus | None:
        """Status of a transaction the network knows about, None if unknown"""

    @abstractmethod
    async def get_fee_rates(self) -> FeeRates:
        """Recommended fee rates"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    async def test_mempool_accept(self, tx_hex: str) -> str | None:
        """
        Check whether the mempool would accept a transaction.

        Returns:
            None if accepted (or if the backend cannot check), otherwise the
            rejection reason
        """
        return None

    async def find_public_key(self, address: str) -> str | None:
        """Recover an address's public key from its spending history, if any."""
        return None

    async def close(self) -> None:
        """Close backend connection"""
