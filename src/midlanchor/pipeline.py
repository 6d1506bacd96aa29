"""
Pipeline operations: the surface exposed to tool layers and the CLI.

Every operation takes the immutable Context first and returns a pydantic
result model, or raises an AnchorError. ``run()`` converts errors into the
structured failure payload at the edge.

Signing and broadcasting always pass through the approval gate; a decline
stops the operation before any signature or network call.
"""

from __future__ import annotations

from collections.abc import Awaitable, Mapping, Sequence
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from midlanchor.bitcoin.address import address_type
from midlanchor.bitcoin.transaction import Transaction, TransactionError
from midlanchor.coin_selection import estimate_vsize
from midlanchor.connector import sign_owned_inputs
from midlanchor.constants import SATS_PER_BTC, WEI_PER_SATOSHI
from midlanchor.context import Context
from midlanchor.errors import AnchorError, InvalidAddress, InvalidInput, SigningError
from midlanchor.evm.address import evm_address_from_public_key, predict_contract_address
from midlanchor.evm.intention import encode_call, encode_deploy
from midlanchor.models import (
    UTXO,
    Account,
    AddressType,
    ApprovalScope,
    DeploymentMetadata,
    Intention,
    SelectionResult,
    Target,
)
from midlanchor.psbt import Psbt, build_psbt


class OutputView(BaseModel):
    address: str
    value: int


class FeeEstimate(BaseModel):
    fee: int
    fee_btc: float
    fee_rate: float
    inputs: int
    outputs: int
    vsize: int


class PreparedTransfer(BaseModel):
    psbt: str
    txid: str
    fee: int
    fee_rate: float
    inputs: int
    outputs: list[OutputView]
    change: int


class PreparedAnchor(BaseModel):
    psbt: str
    txid: str
    fee: int
    fee_rate: float
    evm_address: str
    nonce: int
    intentions: list[Intention]
    deployment: DeploymentMetadata | None = None


class DecodedPsbt(BaseModel):
    txid: str
    version: int
    locktime: int
    inputs: list[dict[str, Any]]
    outputs: list[dict[str, Any]]
    fee: int
    finalized: bool


class AddressValidation(BaseModel):
    address: str
    valid: bool
    network: str
    address_type: str | None = None
    reason: str | None = None


class SignedPsbt(BaseModel):
    psbt: str
    txid: str
    finalized: bool
    tx_hex: str | None = None


class BroadcastResult(BaseModel):
    txid: str
    explorer_url: str


class AnchorResult(BaseModel):
    anchoring_txid: str
    evm_tx_hashes: list[str]
    status: str
    explorer_url: str
    deployments: list[DeploymentMetadata] = []


class Balance(BaseModel):
    address: str
    balance: int
    balance_btc: float


class UtxoView(BaseModel):
    txid: str
    vout: int
    value: int
    confirmations: int


class UtxoSet(BaseModel):
    address: str
    utxos: list[UtxoView]
    total: int


class BlockHeight(BaseModel):
    height: int


class FeeRatesView(BaseModel):
    fastest: int
    half_hour: int
    hour: int
    economy: int
    minimum: int


class NetworkInfo(BaseModel):
    id: str
    bitcoin_network: str
    explorer_url: str
    evm_chain_id: int


class AccountInfo(BaseModel):
    address: str
    public_key: str
    purpose: str
    address_type: str
    evm_address: str | None = None
    can_sign: bool


class AddressPrediction(BaseModel):
    sender: str
    nonce: int
    predicted_address: str


def _parse_targets(targets: Sequence[Target | Mapping[str, Any]]) -> list[Target]:
    parsed = []
    for t in targets:
        if isinstance(t, Target):
            parsed.append(t)
            continue
        try:
            parsed.append(Target(**t))
        except (ValidationError, TypeError) as e:
            raise InvalidInput(f"Invalid target {t!r}: {e}") from e
    if not parsed:
        raise InvalidInput("At least one recipient is required")
    return parsed


def _account_for(ctx: Context, source: str | None) -> Account:
    if source is None or source == ctx.account.address:
        return ctx.account
    for account in ctx.connector.accounts():
        if account.address == source:
            return account
    raise InvalidInput(f"Address {source} does not belong to the connected wallet")


def _evm_address(account: Account) -> str:
    if not account.public_key:
        raise InvalidInput(f"Public key for {account.address} is unknown; set MIDL_ACCOUNT_PUBKEY")
    return evm_address_from_public_key(account.public_key)


async def _resolve_fee_rate(ctx: Context, fee_rate: float | None) -> float:
    if fee_rate is None:
        fee_rate = (await ctx.backend.get_fee_rates()).hour
        logger.debug(f"Using recommended fee rate {fee_rate} sat/vB")
    if fee_rate <= 0:
        raise InvalidInput(f"Fee rate must be positive, got {fee_rate}")
    return fee_rate


async def _select(
    ctx: Context, account: Account, targets: list[Target], fee_rate: float
) -> SelectionResult:
    utxos = await ctx.backend.get_utxos(account.address)
    selector = ctx.coin_selector(account)
    return selector.select(utxos, targets, fee_rate, change_address=account.address)


def _build(ctx: Context, account: Account, selection: SelectionResult) -> Psbt:
    internal_key = None
    if account.address_type == AddressType.P2TR and account.public_key:
        internal_key = bytes.fromhex(account.public_key)
    return build_psbt(selection, ctx.network, tap_internal_key=internal_key)


def _approval_message(title: str, psbt: Psbt, ctx: Context) -> str:
    lines = [f"{title} {psbt.unsigned_txid} on {ctx.network.id.value}"]
    for output in psbt.describe(ctx.network)["outputs"]:
        lines.append(f"  {output['address'] or 'script'}: {output['value']} sats")
    lines.append(f"Fee: {psbt.fee} sats")
    return "\n".join(lines)


async def estimate_transfer_fee(
    ctx: Context,
    targets: Sequence[Target | Mapping[str, Any]],
    fee_rate: float | None = None,
    source: str | None = None,
) -> FeeEstimate:
    parsed = _parse_targets(targets)
    account = _account_for(ctx, source)
    rate = await _resolve_fee_rate(ctx, fee_rate)
    selection = await _select(ctx, account, parsed, rate)

    output_types = [address_type(o.address, ctx.network).value for o in selection.outputs]
    return FeeEstimate(
        fee=selection.fee,
        fee_btc=selection.fee / SATS_PER_BTC,
        fee_rate=rate,
        inputs=len(selection.inputs),
        outputs=len(selection.outputs),
        vsize=estimate_vsize([account.address_type.value] * len(selection.inputs), output_types),
    )


async def prepare_transfer(
    ctx: Context,
    targets: Sequence[Target | Mapping[str, Any]],
    fee_rate: float | None = None,
    source: str | None = None,
) -> PreparedTransfer:
    """Draft an unsigned transfer. Nothing is signed or broadcast."""
    parsed = _parse_targets(targets)
    account = _account_for(ctx, source)
    rate = await _resolve_fee_rate(ctx, fee_rate)
    selection = await _select(ctx, account, parsed, rate)
    psbt = _build(ctx, account, selection)

    logger.info(f"Prepared transfer {psbt.unsigned_txid} (fee {selection.fee} sats)")
    return PreparedTransfer(
        psbt=psbt.to_base64(),
        txid=psbt.unsigned_txid,
        fee=selection.fee,
        fee_rate=rate,
        inputs=len(selection.inputs),
        outputs=[OutputView(address=o.address, value=o.value) for o in selection.outputs],
        change=selection.change_value,
    )


async def decode_psbt(ctx: Context, psbt_b64: str) -> DecodedPsbt:
    psbt = Psbt.from_base64(psbt_b64, ctx.network)
    return DecodedPsbt(**psbt.describe(ctx.network))


async def validate_address(ctx: Context, address: str) -> AddressValidation:
    network = ctx.network.id.value
    try:
        kind = address_type(address, ctx.network).value
    except InvalidAddress as e:
        return AddressValidation(
            address=address, valid=False, network=network, reason=e.error_message
        )
    return AddressValidation(address=address, valid=True, network=network, address_type=kind)


async def sign_psbt(ctx: Context, psbt_b64: str, address: str | None = None) -> SignedPsbt:
    """Sign every input owned by the account, after human approval."""
    psbt = Psbt.from_base64(psbt_b64, ctx.network)
    account = _account_for(ctx, address)
    if not ctx.can_sign:
        raise SigningError("Watch-only account cannot sign; sign the PSBT externally")

    decision = await ctx.approval_gate.request(
        ApprovalScope.SIGN, _approval_message("Sign transaction", psbt, ctx), psbt.digest()
    )
    decision.require(ApprovalScope.SIGN, psbt.digest())

    signed = await sign_owned_inputs(ctx.connector, psbt, account, ctx.network)
    tx_hex = signed.extract().hex() if signed.is_finalized else None
    logger.info(f"Signed PSBT {signed.unsigned_txid}")
    return SignedPsbt(
        psbt=signed.to_base64(),
        txid=signed.unsigned_txid,
        finalized=signed.is_finalized,
        tx_hex=tx_hex,
    )


async def broadcast_transaction(ctx: Context, tx_hex: str) -> BroadcastResult:
    """Broadcast a signed raw transaction, after human approval."""
    try:
        tx = Transaction.from_hex(tx_hex.strip())
    except TransactionError as e:
        raise InvalidInput(str(e)) from e

    txid = tx.txid
    outputs = ", ".join(f"{o.value} sats" for o in tx.outputs)
    decision = await ctx.approval_gate.request(
        ApprovalScope.BROADCAST,
        f"Broadcast transaction {txid} on {ctx.network.id.value} (outputs: {outputs})",
        txid,
    )
    broadcast_txid = await ctx.submitter().broadcast_bitcoin(tx_hex.strip(), txid, decision)
    return BroadcastResult(txid=broadcast_txid, explorer_url=ctx.network.tx_url(broadcast_txid))


async def _prepare_anchor(
    ctx: Context,
    intentions: Sequence[Intention],
    targets: Sequence[Target | Mapping[str, Any]] | None,
    fee_rate: float | None,
) -> tuple[Psbt, SelectionResult, str, int]:
    if not intentions:
        raise InvalidInput("At least one intention is required")
    account = ctx.account
    evm_address = _evm_address(account)

    if targets:
        parsed = _parse_targets(targets)
    else:
        # no recipients: anchor with a payment back to ourselves
        parsed = [Target(address=account.address, value=ctx.settings.anchor_output_value)]

    rate = await _resolve_fee_rate(ctx, fee_rate)
    selection = await _select(ctx, account, parsed, rate)
    psbt = _build(ctx, account, selection)
    nonce = await ctx.evm_rpc.get_transaction_count(evm_address)
    logger.debug(f"EVM sender {evm_address} at nonce {nonce}")
    return psbt, selection, evm_address, nonce


async def prepare_contract_deploy(
    ctx: Context,
    bytecode: str,
    abi: Sequence[dict[str, Any]] | None = None,
    args: Sequence[Any] | None = None,
    fee_rate: float | None = None,
) -> PreparedAnchor:
    """Draft a deployment and its anchoring transaction; predicts the contract address."""
    intention = encode_deploy(bytecode, ctx.chain_id, abi=abi, args=args)
    psbt, selection, evm_address, nonce = await _prepare_anchor(ctx, [intention], None, fee_rate)
    predicted = predict_contract_address(evm_address, nonce)

    logger.info(f"Prepared deployment anchored by {psbt.unsigned_txid}, contract at {predicted}")
    return PreparedAnchor(
        psbt=psbt.to_base64(),
        txid=psbt.unsigned_txid,
        fee=selection.fee,
        fee_rate=selection.fee_rate,
        evm_address=evm_address,
        nonce=nonce,
        intentions=[intention],
        deployment=DeploymentMetadata(
            sender=evm_address, nonce=nonce, predicted_address=predicted
        ),
    )


async def prepare_contract_call(
    ctx: Context,
    contract: str,
    abi: Sequence[dict[str, Any]],
    function: str,
    args: Sequence[Any] | None = None,
    value: int = 0,
    fee_rate: float | None = None,
) -> PreparedAnchor:
    """
    Draft a contract call and its anchoring transaction.

    ``value`` is in satoshis and is attached to the call as wei.
    """
    intention = encode_call(
        contract, abi, function, list(args or []), value * WEI_PER_SATOSHI, ctx.chain_id
    )
    psbt, selection, evm_address, nonce = await _prepare_anchor(ctx, [intention], None, fee_rate)

    logger.info(f"Prepared call to {intention.to}.{function} anchored by {psbt.unsigned_txid}")
    return PreparedAnchor(
        psbt=psbt.to_base64(),
        txid=psbt.unsigned_txid,
        fee=selection.fee,
        fee_rate=selection.fee_rate,
        evm_address=evm_address,
        nonce=nonce,
        intentions=[intention],
    )


async def anchor_intentions(
    ctx: Context,
    intentions: Sequence[Intention],
    targets: Sequence[Target | Mapping[str, Any]] | None = None,
    fee_rate: float | None = None,
) -> AnchorResult:
    """
    Full pipeline: select, draft, approve, sign, bind, approve, submit.

    Raises:
        ApprovalDeclined: A human did not approve signing or broadcasting
        BitcoinRejected: Nothing was anchored; safe to retry
        PartialAnchorFailure: The BTC transaction landed but the EVM side failed
        AnchorOutcomeUnknown: Submission may have landed; poll, do not resubmit
    """
    if not ctx.can_sign:
        raise SigningError("Watch-only account cannot anchor; use the prepare operations")

    psbt, _, evm_address, nonce = await _prepare_anchor(ctx, intentions, targets, fee_rate)

    sign_decision = await ctx.approval_gate.request(
        ApprovalScope.SIGN,
        _approval_message(f"Sign anchor for {len(intentions)} EVM intention(s):", psbt, ctx),
        psbt.digest(),
    )
    linked = await ctx.linker().link(psbt, intentions, sign_decision, nonce)

    broadcast_decision = await ctx.approval_gate.request(
        ApprovalScope.BROADCAST,
        f"Broadcast anchor {linked.anchoring_txid} with {len(intentions)} EVM intention(s) "
        f"on {ctx.network.id.value}",
        linked.anchoring_txid,
    )
    result = await ctx.submitter().submit(linked, broadcast_decision)

    deployments = [
        DeploymentMetadata(
            sender=evm_address,
            nonce=signed.nonce,
            predicted_address=predict_contract_address(evm_address, signed.nonce),
        )
        for signed in linked.signed_intentions
        if signed.intention.is_deployment
    ]
    return AnchorResult(
        anchoring_txid=result.anchoring_txid,
        evm_tx_hashes=list(result.evm_tx_hashes),
        status=result.status.value,
        explorer_url=ctx.network.tx_url(result.anchoring_txid),
        deployments=deployments,
    )


async def deploy_contract(
    ctx: Context,
    bytecode: str,
    abi: Sequence[dict[str, Any]] | None = None,
    args: Sequence[Any] | None = None,
    fee_rate: float | None = None,
) -> AnchorResult:
    intention = encode_deploy(bytecode, ctx.chain_id, abi=abi, args=args)
    return await anchor_intentions(ctx, [intention], fee_rate=fee_rate)


async def call_contract(
    ctx: Context,
    contract: str,
    abi: Sequence[dict[str, Any]],
    function: str,
    args: Sequence[Any] | None = None,
    value: int = 0,
    fee_rate: float | None = None,
) -> AnchorResult:
    intention = encode_call(
        contract, abi, function, list(args or []), value * WEI_PER_SATOSHI, ctx.chain_id
    )
    return await anchor_intentions(ctx, [intention], fee_rate=fee_rate)


async def get_balance(ctx: Context, address: str | None = None) -> Balance:
    address = address or ctx.account.address
    balance = await ctx.backend.get_address_balance(address)
    return Balance(address=address, balance=balance, balance_btc=balance / SATS_PER_BTC)


async def get_utxos(ctx: Context, address: str | None = None) -> UtxoSet:
    address = address or ctx.account.address
    utxos: list[UTXO] = await ctx.backend.get_utxos(address)
    return UtxoSet(
        address=address,
        utxos=[
            UtxoView(txid=u.txid, vout=u.vout, value=u.value, confirmations=u.confirmations)
            for u in utxos
        ],
        total=sum(u.value for u in utxos),
    )


async def get_block_height(ctx: Context) -> BlockHeight:
    return BlockHeight(height=await ctx.backend.get_block_height())


async def get_fee_rates(ctx: Context) -> FeeRatesView:
    rates = await ctx.backend.get_fee_rates()
    return FeeRatesView(
        fastest=rates.fastest,
        half_hour=rates.half_hour,
        hour=rates.hour,
        economy=rates.economy,
        minimum=rates.minimum,
    )


async def get_network(ctx: Context) -> NetworkInfo:
    return NetworkInfo(
        id=ctx.network.id.value,
        bitcoin_network=ctx.network.bitcoin_network,
        explorer_url=ctx.network.explorer_url,
        evm_chain_id=ctx.chain_id,
    )


async def get_account(ctx: Context) -> AccountInfo:
    account = ctx.account
    evm_address = evm_address_from_public_key(account.public_key) if account.public_key else None
    return AccountInfo(
        address=account.address,
        public_key=account.public_key,
        purpose=account.purpose.value,
        address_type=account.address_type.value,
        evm_address=evm_address,
        can_sign=ctx.can_sign,
    )


async def predict_address(
    ctx: Context, sender: str | None = None, nonce: int | None = None
) -> AddressPrediction:
    """Predict the next contract address of sender (the account by default)."""
    sender = sender or _evm_address(ctx.account)
    if nonce is None:
        nonce = await ctx.evm_rpc.get_transaction_count(sender)
    return AddressPrediction(
        sender=sender, nonce=nonce, predicted_address=predict_contract_address(sender, nonce)
    )


async def run(operation: Awaitable[BaseModel]) -> dict[str, Any]:
    """Await an operation and convert the outcome to a JSON-ready payload."""
    try:
        result = await operation
    except AnchorError as e:
        logger.error(f"{type(e).__name__}: {e.error_message}")
        return e.to_failure()
    return result.model_dump(mode="json")
