"""
Tests for binding intentions to the anchoring transaction.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from conftest import make_utxo

from midlanchor.coin_selection import CoinSelector
from midlanchor.connector import KeyPairConnector
from midlanchor.errors import ApprovalDeclined, InvalidInput
from midlanchor.linker import CrossChainLinker, binding_message, verify_binding
from midlanchor.models import (
    Account,
    ApprovalDecision,
    ApprovalScope,
    Intention,
    Network,
    Target,
)
from midlanchor.psbt import Psbt, build_psbt

TOKEN = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def _anchor_psbt(account: Account, network: Network) -> Psbt:
    selector = CoinSelector(network, account.address_type)
    selection = selector.select(
        [make_utxo(account, network, 20_000)],
        [Target(address=account.address, value=1_000)],
        2,
        account.address,
    )
    return build_psbt(
        selection, network, tap_internal_key=bytes.fromhex(account.public_key)
    )


def _approve(psbt: Psbt) -> ApprovalDecision:
    return ApprovalDecision(approved=True, scope=ApprovalScope.SIGN, subject=psbt.digest())


@pytest.fixture
def intentions() -> list[Intention]:
    return [
        Intention(to=TOKEN, data="0xa9059cbb", chain_id=777),
        Intention(data="0x6080604052", chain_id=777),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("account_fixture", ["payment_account", "ordinals_account"])
async def test_link_binds_every_intention(
    request: pytest.FixtureRequest,
    account_fixture: str,
    connector: KeyPairConnector,
    regtest: Network,
    intentions: list[Intention],
):
    account = request.getfixturevalue(account_fixture)
    psbt = _anchor_psbt(account, regtest)
    linker = CrossChainLinker(connector, account, regtest, gas_limit=500_000)

    linked = await linker.link(psbt, intentions, _approve(psbt), nonce=7)

    assert linked.anchoring_txid == psbt.unsigned_txid
    assert linked.raw_tx.txid == linked.anchoring_txid
    assert [s.nonce for s in linked.signed_intentions] == [7, 8]
    for signed in linked.signed_intentions:
        assert signed.anchoring_txid == linked.anchoring_txid
        assert signed.gas_limit == 500_000
        assert signed.binding.address == account.address
        assert verify_binding(signed, linked.anchoring_txid, regtest)


@pytest.mark.asyncio
async def test_binding_rejects_other_txid(
    connector: KeyPairConnector,
    payment_account: Account,
    regtest: Network,
    intentions: list[Intention],
):
    psbt = _anchor_psbt(payment_account, regtest)
    linker = CrossChainLinker(connector, payment_account, regtest)
    linked = await linker.link(psbt, intentions[:1], _approve(psbt), nonce=0)
    signed = linked.signed_intentions[0]

    assert not verify_binding(signed, "cd" * 32, regtest)
    moved = signed.model_copy(update={"anchoring_txid": "cd" * 32})
    assert not verify_binding(moved, "cd" * 32, regtest)


@pytest.mark.asyncio
async def test_declined_decision_signs_nothing(
    payment_account: Account, regtest: Network, intentions: list[Intention]
):
    connector = AsyncMock(spec=KeyPairConnector)
    psbt = _anchor_psbt(payment_account, regtest)
    linker = CrossChainLinker(connector, payment_account, regtest)
    decision = ApprovalDecision(
        approved=False, scope=ApprovalScope.SIGN, subject=psbt.digest(), reason="user said no"
    )

    with pytest.raises(ApprovalDeclined, match="user said no"):
        await linker.link(psbt, intentions, decision, nonce=0)

    connector.sign_psbt.assert_not_called()
    connector.sign_message.assert_not_called()


@pytest.mark.asyncio
async def test_approval_for_another_transaction(
    connector: KeyPairConnector, payment_account: Account, regtest: Network, intentions
):
    psbt = _anchor_psbt(payment_account, regtest)
    linker = CrossChainLinker(connector, payment_account, regtest)
    decision = ApprovalDecision(approved=True, scope=ApprovalScope.SIGN, subject="cd" * 32)

    with pytest.raises(ApprovalDeclined):
        await linker.link(psbt, intentions, decision, nonce=0)


@pytest.mark.asyncio
async def test_link_requires_intentions(
    connector: KeyPairConnector, payment_account: Account, regtest: Network
):
    psbt = _anchor_psbt(payment_account, regtest)
    linker = CrossChainLinker(connector, payment_account, regtest)
    with pytest.raises(InvalidInput):
        await linker.link(psbt, [], _approve(psbt), nonce=0)


def test_binding_message_format():
    intention = Intention(to=TOKEN, data="0x", chain_id=777)
    message = binding_message(intention, "ab" * 32, 3, 250_000)

    prefix, version, chain_id, txid, nonce, gas_limit, digest = message.split(":")
    assert (prefix, version) == ("midl-anchor", "v1")
    assert chain_id == "777"
    assert txid == "ab" * 32
    assert nonce == "3"
    assert gas_limit == "250000"
    assert digest == intention.digest().hex()


@pytest.mark.asyncio
async def test_binding_rejects_changed_gas_limit(
    connector: KeyPairConnector,
    payment_account: Account,
    regtest: Network,
    intentions: list[Intention],
):
    psbt = _anchor_psbt(payment_account, regtest)
    linker = CrossChainLinker(connector, payment_account, regtest, gas_limit=500_000)
    linked = await linker.link(psbt, intentions[:1], _approve(psbt), nonce=0)
    signed = linked.signed_intentions[0]

    relayed = signed.model_copy(update={"gas_limit": 21_000})

    assert relayed.tx_hash != signed.tx_hash
    assert verify_binding(signed, linked.anchoring_txid, regtest)
    assert not verify_binding(relayed, linked.anchoring_txid, regtest)
