"""
Tests for midlanchor.coin_selection
"""

from __future__ import annotations

import random

import pytest
from conftest import make_utxo

from midlanchor.coin_selection import CoinSelector, estimate_fee, estimate_vsize
from midlanchor.errors import InsufficientFunds, InvalidAddress, InvalidInput
from midlanchor.models import Account, Network, Target


@pytest.fixture
def selector(regtest: Network) -> CoinSelector:
    return CoinSelector(regtest, "p2wpkh")


def test_estimate_vsize():
    assert estimate_vsize(["p2wpkh"], ["p2wpkh", "p2wpkh"]) == 11 + 68 + 31 + 31


def test_estimate_fee_rounds_up():
    assert estimate_fee(["p2tr"], ["p2tr"], 1.01) == 114


def test_estimate_unknown_type():
    with pytest.raises(InvalidInput):
        estimate_vsize(["p2ms"], [])


def test_single_utxo_with_change(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [make_utxo(payment_account, regtest, 15_000)]
    result = selector.select(
        utxos, [Target(address=recipient, value=10_000)], 5, payment_account.address
    )

    assert result.fee == 705
    assert result.change_index == 1
    assert result.change_value == 4_295
    assert result.outputs[0] == Target(address=recipient, value=10_000)
    assert result.outputs[1].address == payment_account.address


def test_insufficient_funds(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [make_utxo(payment_account, regtest, 5_000)]
    with pytest.raises(InsufficientFunds) as exc_info:
        selector.select(
            utxos, [Target(address=recipient, value=10_000)], 5, payment_account.address
        )

    assert exc_info.value.available == 5_000
    assert exc_info.value.required > 10_000


def test_exact_match_has_no_change(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [
        make_utxo(payment_account, regtest, 50_000, txid_byte=1),
        make_utxo(payment_account, regtest, 10_600, txid_byte=2),
    ]
    result = selector.select(
        utxos, [Target(address=recipient, value=10_000)], 5, payment_account.address
    )

    assert [u.value for u in result.inputs] == [10_600]
    assert result.change_index is None
    assert result.fee == 600


def test_small_excess_paid_as_fee(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [make_utxo(payment_account, regtest, 11_000)]
    result = selector.select(
        utxos, [Target(address=recipient, value=10_000)], 5, payment_account.address
    )

    assert result.change_index is None
    assert result.fee == 1_000


def test_accumulates_multiple_inputs(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [make_utxo(payment_account, regtest, 6_000, txid_byte=n) for n in range(1, 4)]
    result = selector.select(
        utxos, [Target(address=recipient, value=10_000)], 2, payment_account.address
    )

    assert len(result.inputs) == 2
    assert result.input_value == result.output_value + result.fee


def test_uneconomic_utxo_skipped(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [
        make_utxo(payment_account, regtest, 300, txid_byte=1),
        make_utxo(payment_account, regtest, 15_000, txid_byte=2),
    ]
    result = selector.select(
        utxos, [Target(address=recipient, value=10_000)], 5, payment_account.address
    )

    assert all(u.value != 300 for u in result.inputs)


def test_selection_is_deterministic(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [
        make_utxo(payment_account, regtest, value, txid_byte=n, vout=n % 3)
        for n, value in enumerate([4_000, 7_000, 7_000, 12_000, 2_500, 9_000], start=1)
    ]
    targets = [Target(address=recipient, value=20_000)]

    expected = selector.select(utxos, targets, 3, payment_account.address)
    shuffled = list(utxos)
    for seed in range(5):
        random.Random(seed).shuffle(shuffled)
        assert selector.select(shuffled, targets, 3, payment_account.address) == expected


def test_value_is_conserved(
    selector: CoinSelector, payment_account: Account, regtest: Network, recipient: str
):
    utxos = [make_utxo(payment_account, regtest, v, txid_byte=n) for n, v in enumerate([8_000, 30_000, 1_200], 1)]
    for fee_rate in (1, 2.5, 10, 40):
        result = selector.select(
            utxos, [Target(address=recipient, value=7_500)], fee_rate, payment_account.address
        )
        assert result.input_value == result.output_value + result.fee
        assert result.fee >= estimate_fee(
            ["p2wpkh"] * len(result.inputs),
            ["p2wpkh"] * len(result.outputs),
            fee_rate,
        )


class TestValidation:
    def test_no_targets(self, selector: CoinSelector, payment_account: Account) -> None:
        with pytest.raises(InvalidInput):
            selector.select([], [], 5, payment_account.address)

    def test_non_positive_fee_rate(
        self, selector: CoinSelector, payment_account: Account, recipient: str
    ) -> None:
        with pytest.raises(InvalidInput):
            selector.select([], [Target(address=recipient, value=1_000)], 0, payment_account.address)

    def test_bad_target_address(self, selector: CoinSelector, payment_account: Account) -> None:
        with pytest.raises(InvalidAddress):
            selector.select(
                [], [Target(address="bc1qnotreal", value=1_000)], 5, payment_account.address
            )

    def test_unspendable_input_type(self, regtest: Network) -> None:
        with pytest.raises(InvalidInput):
            CoinSelector(regtest, "p2wsh")
