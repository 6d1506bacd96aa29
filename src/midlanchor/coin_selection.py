"""
UTXO coin selection for anchoring transactions.

Selection is deterministic for a given UTXO snapshot: candidates are ordered
by value descending, then by (txid, vout). A blackjack pass looks for an
input set that pays targets and fee without a change output; otherwise an
accumulative pass adds inputs until the targets and fee are covered.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from loguru import logger

from midlanchor.bitcoin.address import address_type
from midlanchor.constants import (
    DEFAULT_DUST_THRESHOLD,
    INPUT_VBYTES,
    OUTPUT_VBYTES,
    TX_OVERHEAD_VBYTES,
)
from midlanchor.errors import InsufficientFunds, InvalidInput
from midlanchor.models import UTXO, AddressType, Network, SelectionResult, Target


def estimate_vsize(input_types: Sequence[str], output_types: Sequence[str]) -> int:
    """
    Estimate the virtual size of a transaction.

    Args:
        input_types: Address type of each input ("p2wpkh", "p2tr", ...)
        output_types: Address type of each output
    """
    try:
        return (
            TX_OVERHEAD_VBYTES
            + sum(INPUT_VBYTES[t] for t in input_types)
            + sum(OUTPUT_VBYTES[t] for t in output_types)
        )
    except KeyError as e:
        raise InvalidInput(f"Cannot estimate size for address type {e}") from e


def estimate_fee(
    input_types: Sequence[str], output_types: Sequence[str], fee_rate: float
) -> int:
    """Fee in satoshis for the estimated vsize at fee_rate sat/vB (rounded up)."""
    return math.ceil(estimate_vsize(input_types, output_types) * fee_rate)


def _sort_key(utxo: UTXO) -> tuple[int, str, int]:
    return (-utxo.value, utxo.txid, utxo.vout)


class CoinSelector:
    """
    Selects inputs of a single address type to pay a set of targets.

    Change below the dust threshold is never emitted; it is added to the fee.
    """

    def __init__(
        self,
        network: Network,
        input_type: AddressType | str,
        dust_threshold: int = DEFAULT_DUST_THRESHOLD,
    ):
        self.network = network
        self.input_type = AddressType(input_type).value
        if self.input_type not in INPUT_VBYTES:
            raise InvalidInput(f"Cannot spend inputs of type {self.input_type}")
        self.dust_threshold = dust_threshold

    def _output_type(self, address: str) -> str:
        return address_type(address, self.network).value

    def select(
        self,
        utxos: Sequence[UTXO],
        targets: Sequence[Target],
        fee_rate: float,
        change_address: str,
    ) -> SelectionResult:
        """
        Select inputs for targets at fee_rate sat/vB.

        Returns:
            SelectionResult whose outputs are the targets in order, followed by
            the change output when one is emitted

        Raises:
            InvalidInput: No targets, or a non-positive fee rate
            InvalidAddress: A target or change address does not decode
            InsufficientFunds: No subset of utxos covers targets plus fee
        """
        if not targets:
            raise InvalidInput("At least one target is required")
        if fee_rate <= 0:
            raise InvalidInput(f"Fee rate must be positive, got {fee_rate}")

        target_types = [self._output_type(t.address) for t in targets]
        change_type = self._output_type(change_address)
        target_value = sum(t.value for t in targets)

        input_cost = math.ceil(INPUT_VBYTES[self.input_type] * fee_rate)
        candidates = sorted((u for u in utxos if u.value > input_cost), key=_sort_key)
        skipped = len(utxos) - len(candidates)
        if skipped:
            logger.debug(f"Skipping {skipped} UTXO(s) worth less than their input cost")

        def fee_for(n_inputs: int, with_change: bool) -> int:
            outputs = target_types + [change_type] if with_change else target_types
            return estimate_fee([self.input_type] * n_inputs, outputs, fee_rate)

        result = self._blackjack(candidates, targets, target_value, fee_for, fee_rate, change_type)
        if result is None:
            result = self._accumulative(
                candidates, targets, target_value, fee_for, fee_rate, change_address
            )

        if result is None:
            available = sum(u.value for u in utxos)
            required = target_value + fee_for(max(len(candidates), 1), False)
            logger.warning(
                f"Coin selection failed: need {required} sats, have {available} sats"
            )
            raise InsufficientFunds(required=required, available=available)

        logger.debug(
            f"Selected {len(result.inputs)} input(s) worth {result.input_value} sats, "
            f"fee {result.fee} sats, change {result.change_value} sats"
        )
        return result

    def _blackjack(self, candidates, targets, target_value, fee_for, fee_rate, change_type):
        # Excess up to the cost of a change output plus dust is paid as fee
        threshold = math.ceil(OUTPUT_VBYTES[change_type] * fee_rate) + self.dust_threshold

        selected: list[UTXO] = []
        total = 0
        for utxo in candidates:
            fee = fee_for(len(selected) + 1, False)
            if total + utxo.value > target_value + fee + threshold:
                continue

            selected.append(utxo)
            total += utxo.value
            if total >= target_value + fee:
                return SelectionResult(
                    inputs=tuple(selected),
                    outputs=tuple(targets),
                    fee=total - target_value,
                    fee_rate=fee_rate,
                )
        return None

    def _accumulative(self, candidates, targets, target_value, fee_for, fee_rate, change_address):
        selected: list[UTXO] = []
        total = 0
        for utxo in candidates:
            selected.append(utxo)
            total += utxo.value

            if total < target_value + fee_for(len(selected), False):
                continue

            change = total - target_value - fee_for(len(selected), True)
            if change >= self.dust_threshold:
                outputs = tuple(targets) + (Target(address=change_address, value=change),)
                return SelectionResult(
                    inputs=tuple(selected),
                    outputs=outputs,
                    fee=total - target_value - change,
                    fee_rate=fee_rate,
                    change_index=len(targets),
                )

            # change would be dust: fold it into the fee
            return SelectionResult(
                inputs=tuple(selected),
                outputs=tuple(targets),
                fee=total - target_value,
                fee_rate=fee_rate,
            )
        return None
