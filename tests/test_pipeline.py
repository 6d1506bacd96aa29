"""
End-to-end tests for pipeline operations with mocked chain backends.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from conftest import StubChannel, make_utxo

from midlanchor import pipeline
from midlanchor.backends.base import BitcoinBackend, FeeRates
from midlanchor.config import Settings
from midlanchor.context import Context, build_context
from midlanchor.errors import InvalidInput, SigningError
from midlanchor.evm.address import evm_address_from_public_key, predict_contract_address
from midlanchor.evm.intention import encode_call, encode_deploy
from midlanchor.evm.rpc import EvmRpcClient
from midlanchor.models import Account, AddressType, Network
from midlanchor.psbt import Psbt

TOKEN = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ERC20_TRANSFER = [
    {
        "type": "function",
        "name": "transfer",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
    }
]


@pytest.fixture
def backend() -> AsyncMock:
    backend = AsyncMock(spec=BitcoinBackend)
    backend.test_mempool_accept.return_value = None
    backend.get_transaction_status.return_value = None
    backend.find_public_key.return_value = None
    backend.get_fee_rates.return_value = FeeRates(
        fastest=20, half_hour=12, hour=5, economy=2, minimum=1
    )
    return backend


@pytest.fixture
def evm_rpc() -> AsyncMock:
    rpc = AsyncMock(spec=EvmRpcClient)
    rpc.get_transaction_count.return_value = 3
    rpc.send_btc_transactions.return_value = None
    rpc.get_transaction_receipt.return_value = {"status": "0x1"}
    return rpc


async def _mnemonic_context(
    mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, channel: StubChannel, **overrides
) -> Context:
    settings = Settings(_env_file=None, mnemonic=mnemonic, **overrides)
    return await build_context(settings, channel, backend=backend, evm_rpc=evm_rpc)


def _fund(backend: AsyncMock, ctx: Context, *values: int) -> None:
    backend.get_utxos.return_value = [
        make_utxo(ctx.account, ctx.network, value, txid_byte=n)
        for n, value in enumerate(values, start=1)
    ]


class TestContext:
    @pytest.mark.asyncio
    async def test_mnemonic_mode_defaults_to_payment_account(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, payment_account: Account
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())

        assert ctx.account == payment_account
        assert ctx.can_sign
        assert ctx.chain_id == 777

    @pytest.mark.asyncio
    async def test_mnemonic_mode_taproot(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, ordinals_account: Account
    ) -> None:
        ctx = await _mnemonic_context(
            sample_mnemonic, backend, evm_rpc, StubChannel(), address_type="p2tr"
        )
        assert ctx.account == ordinals_account

    @pytest.mark.asyncio
    async def test_no_account_configured(self, backend: AsyncMock, evm_rpc: AsyncMock) -> None:
        with pytest.raises(InvalidInput):
            await build_context(Settings(_env_file=None), backend=backend, evm_rpc=evm_rpc)

    @pytest.mark.asyncio
    async def test_address_mode_recovers_public_key(
        self, backend: AsyncMock, evm_rpc: AsyncMock, ordinals_account: Account
    ) -> None:
        backend.find_public_key.return_value = ordinals_account.public_key
        settings = Settings(_env_file=None, account_address=ordinals_account.address)

        ctx = await build_context(settings, backend=backend, evm_rpc=evm_rpc)

        assert not ctx.can_sign
        assert ctx.account.address_type == AddressType.P2TR
        assert ctx.account.public_key == ordinals_account.public_key
        backend.find_public_key.assert_awaited_once_with(ordinals_account.address)

    @pytest.mark.asyncio
    async def test_address_mode_type_mismatch(
        self, backend: AsyncMock, evm_rpc: AsyncMock, ordinals_account: Account
    ) -> None:
        settings = Settings(
            _env_file=None,
            account_address=ordinals_account.address,
            account_pubkey=ordinals_account.public_key,
            address_type="p2wpkh",
        )
        with pytest.raises(InvalidInput):
            await build_context(settings, backend=backend, evm_rpc=evm_rpc)

    @pytest.mark.asyncio
    async def test_coin_selector_follows_settings(
        self,
        sample_mnemonic: str,
        backend: AsyncMock,
        evm_rpc: AsyncMock,
        ordinals_account: Account,
    ) -> None:
        ctx = await _mnemonic_context(
            sample_mnemonic, backend, evm_rpc, StubChannel(), dust_threshold=1_000
        )

        assert ctx.coin_selector().input_type == "p2wpkh"
        assert ctx.coin_selector().dust_threshold == 1_000
        assert ctx.coin_selector(ordinals_account).input_type == "p2tr"


class TestTransfers:
    @pytest.mark.asyncio
    async def test_prepare_transfer_uses_recommended_rate(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, recipient: str
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())
        _fund(backend, ctx, 15_000)

        result = await pipeline.prepare_transfer(ctx, [{"address": recipient, "value": 10_000}])

        assert result.fee == 705
        assert result.fee_rate == 5
        assert result.change == 4_295
        assert result.outputs[0].address == recipient
        assert Psbt.from_base64(result.psbt).unsigned_txid == result.txid
        backend.broadcast_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_estimate_fee(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, recipient: str
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())
        _fund(backend, ctx, 15_000)

        estimate = await pipeline.estimate_transfer_fee(
            ctx, [{"address": recipient, "value": 10_000}], fee_rate=5
        )

        assert estimate.fee == 705
        assert estimate.vsize == 141
        assert estimate.inputs == 1
        assert estimate.outputs == 2

    @pytest.mark.asyncio
    async def test_insufficient_funds_payload(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, recipient: str
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())
        _fund(backend, ctx, 5_000)

        result = await pipeline.run(
            pipeline.prepare_transfer(ctx, [{"address": recipient, "value": 10_000}], fee_rate=5)
        )

        assert result["error"] == "InsufficientFunds"
        assert "5000 sats" in result["error_message"]

    @pytest.mark.asyncio
    async def test_invalid_target_payload(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())

        result = await pipeline.run(
            pipeline.prepare_transfer(ctx, [{"address": "bcrt1qxyz", "value": -1}], fee_rate=5)
        )
        assert result["error"] == "InvalidInput"

    @pytest.mark.asyncio
    async def test_sign_then_broadcast(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, recipient: str
    ) -> None:
        channel = StubChannel(True)
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, channel)
        _fund(backend, ctx, 15_000)
        prepared = await pipeline.prepare_transfer(
            ctx, [{"address": recipient, "value": 10_000}], fee_rate=5
        )

        signed = await pipeline.sign_psbt(ctx, prepared.psbt)
        assert signed.finalized
        assert signed.txid == prepared.txid

        backend.broadcast_transaction.return_value = prepared.txid
        result = await pipeline.broadcast_transaction(ctx, signed.tx_hex)

        assert result.txid == prepared.txid
        assert result.explorer_url.endswith(prepared.txid)
        assert [field for field, _ in channel.requests] == ["approved", "confirm"]

    @pytest.mark.asyncio
    async def test_declined_signature(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, recipient: str
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel(False))
        _fund(backend, ctx, 15_000)
        prepared = await pipeline.prepare_transfer(
            ctx, [{"address": recipient, "value": 10_000}], fee_rate=5
        )

        result = await pipeline.run(pipeline.sign_psbt(ctx, prepared.psbt))

        assert result["error"] == "ApprovalDeclined"

    @pytest.mark.asyncio
    async def test_validate_address(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock, taproot_recipient: str
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())

        good = await pipeline.validate_address(ctx, taproot_recipient)
        bad = await pipeline.validate_address(ctx, "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4")

        assert good.valid and good.address_type == "p2tr"
        assert not bad.valid
        assert bad.reason


class TestAnchoring:
    @pytest.mark.asyncio
    async def test_anchor_deploy_and_call(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        channel = StubChannel(True)
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, channel)
        _fund(backend, ctx, 30_000)
        sender = evm_address_from_public_key(ctx.account.public_key)
        intentions = [
            encode_deploy("0x6080604052", ctx.chain_id),
            encode_call(TOKEN, ERC20_TRANSFER, "transfer", [sender, 1], chain_id=ctx.chain_id),
        ]

        result = await pipeline.anchor_intentions(ctx, intentions, fee_rate=2)

        assert result.status == "confirmed"
        assert len(result.evm_tx_hashes) == 2
        assert [d.nonce for d in result.deployments] == [3]
        assert result.deployments[0].predicted_address == predict_contract_address(sender, 3)
        assert [field for field, _ in channel.requests] == ["approved", "confirm"]

        evm_rpc.get_transaction_count.assert_awaited_once_with(sender)
        evm_rpc.send_btc_transactions.assert_awaited_once()
        serialized, raw_hex = evm_rpc.send_btc_transactions.call_args.args
        assert len(serialized) == 2
        assert result.anchoring_txid in channel.requests[1][1]

    @pytest.mark.asyncio
    async def test_declined_anchor_sends_nothing(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel(False))
        _fund(backend, ctx, 30_000)

        result = await pipeline.run(
            pipeline.deploy_contract(ctx, "0x6080604052", fee_rate=2)
        )

        assert result["error"] == "ApprovalDeclined"
        evm_rpc.send_btc_transactions.assert_not_called()
        backend.test_mempool_accept.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_anchor_payload(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        backend.test_mempool_accept.return_value = "insufficient fee"
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel(True))
        _fund(backend, ctx, 30_000)

        result = await pipeline.run(pipeline.deploy_contract(ctx, "0x6080604052", fee_rate=2))

        assert result["error"] == "BitcoinRejected"
        evm_rpc.send_btc_transactions.assert_not_called()

    @pytest.mark.asyncio
    async def test_call_value_converted_to_wei(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())
        _fund(backend, ctx, 30_000)

        prepared = await pipeline.prepare_contract_call(
            ctx, TOKEN, ERC20_TRANSFER, "transfer", [TOKEN, 5], value=2, fee_rate=2
        )

        assert prepared.intentions[0].value == 2 * 10**10
        assert prepared.nonce == 3
        assert prepared.deployment is None

    @pytest.mark.asyncio
    async def test_watch_only_prepares_but_cannot_anchor(
        self, backend: AsyncMock, evm_rpc: AsyncMock, ordinals_account: Account, regtest: Network
    ) -> None:
        settings = Settings(
            _env_file=None,
            account_address=ordinals_account.address,
            account_pubkey=ordinals_account.public_key,
        )
        ctx = await build_context(settings, StubChannel(True), backend=backend, evm_rpc=evm_rpc)
        _fund(backend, ctx, 30_000)

        prepared = await pipeline.prepare_contract_deploy(ctx, "0x6080604052", fee_rate=2)
        sender = evm_address_from_public_key(ordinals_account.public_key)

        assert prepared.deployment is not None
        assert prepared.deployment.predicted_address == predict_contract_address(sender, 3)
        psbt = Psbt.from_base64(prepared.psbt, regtest)
        assert psbt.inputs[0].tap_internal_key == bytes.fromhex(ordinals_account.public_key)[1:]

        with pytest.raises(SigningError):
            await pipeline.deploy_contract(ctx, "0x6080604052", fee_rate=2)
        evm_rpc.send_btc_transactions.assert_not_called()


class TestReadOnly:
    @pytest.mark.asyncio
    async def test_account_and_network(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())

        account = await pipeline.run(pipeline.get_account(ctx))
        network = await pipeline.run(pipeline.get_network(ctx))

        assert account["address"] == ctx.account.address
        assert account["can_sign"] is True
        assert account["evm_address"].startswith("0x")
        assert network == {
            "id": "regtest",
            "bitcoin_network": "regtest",
            "explorer_url": ctx.network.explorer_url,
            "evm_chain_id": 777,
        }

    @pytest.mark.asyncio
    async def test_balance_and_utxos(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())
        _fund(backend, ctx, 1_000, 2_500)
        backend.get_address_balance.return_value = 3_500

        balance = await pipeline.get_balance(ctx)
        utxos = await pipeline.get_utxos(ctx)

        assert balance.balance_btc == 0.000035
        assert utxos.total == 3_500
        assert len(utxos.utxos) == 2

    @pytest.mark.asyncio
    async def test_fee_rates_and_height(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        backend.get_block_height.return_value = 812_000
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())

        assert (await pipeline.get_block_height(ctx)).height == 812_000
        assert (await pipeline.get_fee_rates(ctx)).hour == 5

    @pytest.mark.asyncio
    async def test_predict_address(
        self, sample_mnemonic: str, backend: AsyncMock, evm_rpc: AsyncMock
    ) -> None:
        ctx = await _mnemonic_context(sample_mnemonic, backend, evm_rpc, StubChannel())
        sender = "0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0"

        prediction = await pipeline.predict_address(ctx, sender=sender, nonce=1)

        assert prediction.predicted_address.lower() == "0x343c43a37d37dff08ae8c4a11544c718abb4fcf8"
        evm_rpc.get_transaction_count.assert_not_called()
