"""
midl-anchor CLI - prepare, sign and anchor EVM intentions on Bitcoin.

Account and endpoints come from MIDL_* environment variables (or .env).
Signing and broadcasting ask for confirmation on the terminal.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import typer
from loguru import logger
from pydantic import BaseModel, ValidationError

from midlanchor import pipeline
from midlanchor.approval import ConsoleChannel
from midlanchor.config import Settings
from midlanchor.context import Context, build_context
from midlanchor.errors import AnchorError
from midlanchor.models import Target

app = typer.Typer(
    name="midl-anchor",
    help="Anchor EVM contract deployments and calls to Bitcoin transactions",
    add_completion=False,
)

Operation = Callable[[Context], Awaitable[BaseModel]]

NetworkOption = typer.Option(None, "--network", "-n", help="Override MIDL_NETWORK")
LogLevelOption = typer.Option(None, "--log-level", "-l", help="Override MIDL_LOG_LEVEL")
FeeRateOption = typer.Option(None, "--fee-rate", help="Fee rate in sat/vB (default: hour fee)")


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def parse_targets(values: list[str]) -> list[Target]:
    """Parse ADDRESS:AMOUNT pairs (amount in satoshis)."""
    targets = []
    for value in values:
        address, sep, amount = value.rpartition(":")
        if not sep or not address:
            raise typer.BadParameter(f"Expected ADDRESS:AMOUNT, got {value!r}")
        try:
            targets.append(Target(address=address, value=int(amount)))
        except (ValueError, ValidationError) as e:
            raise typer.BadParameter(f"Invalid amount in {value!r}") from e
    return targets


def load_abi(path: Path | None) -> list[dict[str, Any]] | None:
    if path is None:
        return None
    data = json.loads(path.read_text())
    # accept bare ABI arrays and compiler artifacts
    if isinstance(data, dict) and "abi" in data:
        data = data["abi"]
    if not isinstance(data, list):
        raise typer.BadParameter(f"{path} does not contain an ABI array")
    return data


def parse_args(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"--args must be a JSON array: {e}") from e
    if not isinstance(args, list):
        raise typer.BadParameter("--args must be a JSON array")
    return args


async def _execute(settings: Settings, operation: Operation) -> dict[str, Any]:
    try:
        ctx = await build_context(settings, ConsoleChannel())
    except AnchorError as e:
        logger.error(e.error_message)
        return e.to_failure()

    try:
        return await pipeline.run(operation(ctx))
    finally:
        await ctx.close()


def _run(operation: Operation, network: str | None, log_level: str | None) -> None:
    setup_logging(log_level or "INFO")

    overrides = {"network": network} if network else {}
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    if log_level is None:
        setup_logging(settings.log_level)

    result = asyncio.run(_execute(settings, operation))
    typer.echo(json.dumps(result, indent=2))
    if "error_message" in result:
        raise typer.Exit(1)


@app.command("estimate-fee")
def estimate_fee(
    to: list[str] = typer.Option(..., "--to", help="Recipient as ADDRESS:AMOUNT (repeatable)"),
    fee_rate: float | None = FeeRateOption,
    source: str | None = typer.Option(None, "--from", help="Spend from this account address"),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Estimate the fee of a Bitcoin transfer."""
    targets = parse_targets(to)
    _run(
        lambda ctx: pipeline.estimate_transfer_fee(ctx, targets, fee_rate, source),
        network,
        log_level,
    )


@app.command("prepare-transfer")
def prepare_transfer(
    to: list[str] = typer.Option(..., "--to", help="Recipient as ADDRESS:AMOUNT (repeatable)"),
    fee_rate: float | None = FeeRateOption,
    source: str | None = typer.Option(None, "--from", help="Spend from this account address"),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Draft an unsigned transfer PSBT."""
    targets = parse_targets(to)
    _run(
        lambda ctx: pipeline.prepare_transfer(ctx, targets, fee_rate, source),
        network,
        log_level,
    )


@app.command("decode-psbt")
def decode_psbt(
    psbt: str = typer.Argument(..., help="Base64 PSBT"),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the inputs, outputs and fee of a PSBT."""
    _run(lambda ctx: pipeline.decode_psbt(ctx, psbt), network, log_level)


@app.command("validate-address")
def validate_address(
    address: str = typer.Argument(...),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Check that an address is valid for the configured network."""
    _run(lambda ctx: pipeline.validate_address(ctx, address), network, log_level)


@app.command("sign-psbt")
def sign_psbt(
    psbt: str = typer.Argument(..., help="Base64 PSBT"),
    address: str | None = typer.Option(None, "--address", help="Account whose inputs to sign"),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Sign a PSBT with the configured account (asks for approval)."""
    _run(lambda ctx: pipeline.sign_psbt(ctx, psbt, address), network, log_level)


@app.command("broadcast")
def broadcast(
    tx_hex: str = typer.Argument(..., help="Signed raw transaction hex"),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Broadcast a signed transaction (asks for approval)."""
    _run(lambda ctx: pipeline.broadcast_transaction(ctx, tx_hex), network, log_level)


@app.command("prepare-deploy")
def prepare_deploy(
    bytecode: str = typer.Argument(..., help="Creation bytecode (hex)"),
    abi_file: Path | None = typer.Option(None, "--abi-file", help="ABI JSON or artifact"),
    args: str | None = typer.Option(None, "--args", help="Constructor args as a JSON array"),
    fee_rate: float | None = FeeRateOption,
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Draft a contract deployment and predict its address."""
    abi = load_abi(abi_file)
    ctor_args = parse_args(args)
    _run(
        lambda ctx: pipeline.prepare_contract_deploy(ctx, bytecode, abi, ctor_args, fee_rate),
        network,
        log_level,
    )


@app.command("prepare-call")
def prepare_call(
    contract: str = typer.Argument(..., help="Contract address"),
    function: str = typer.Argument(..., help="Function name"),
    abi_file: Path = typer.Option(..., "--abi-file", help="ABI JSON or artifact"),
    args: str | None = typer.Option(None, "--args", help="Arguments as a JSON array"),
    value: int = typer.Option(0, "--value", help="Value to attach, in satoshis"),
    fee_rate: float | None = FeeRateOption,
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Draft a contract call."""
    abi = load_abi(abi_file)
    call_args = parse_args(args)
    _run(
        lambda ctx: pipeline.prepare_contract_call(
            ctx, contract, abi, function, call_args, value, fee_rate
        ),
        network,
        log_level,
    )


@app.command("deploy")
def deploy(
    bytecode: str = typer.Argument(..., help="Creation bytecode (hex)"),
    abi_file: Path | None = typer.Option(None, "--abi-file", help="ABI JSON or artifact"),
    args: str | None = typer.Option(None, "--args", help="Constructor args as a JSON array"),
    fee_rate: float | None = FeeRateOption,
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Deploy a contract anchored to a Bitcoin transaction (asks for approval twice)."""
    abi = load_abi(abi_file)
    ctor_args = parse_args(args)
    _run(
        lambda ctx: pipeline.deploy_contract(ctx, bytecode, abi, ctor_args, fee_rate),
        network,
        log_level,
    )


@app.command("call")
def call(
    contract: str = typer.Argument(..., help="Contract address"),
    function: str = typer.Argument(..., help="Function name"),
    abi_file: Path = typer.Option(..., "--abi-file", help="ABI JSON or artifact"),
    args: str | None = typer.Option(None, "--args", help="Arguments as a JSON array"),
    value: int = typer.Option(0, "--value", help="Value to attach, in satoshis"),
    fee_rate: float | None = FeeRateOption,
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Call a contract, anchored to a Bitcoin transaction (asks for approval twice)."""
    abi = load_abi(abi_file)
    call_args = parse_args(args)
    _run(
        lambda ctx: pipeline.call_contract(
            ctx, contract, abi, function, call_args, value, fee_rate
        ),
        network,
        log_level,
    )


@app.command("balance")
def balance(
    address: str | None = typer.Argument(None),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the balance of an address (the account by default)."""
    _run(lambda ctx: pipeline.get_balance(ctx, address), network, log_level)


@app.command("utxos")
def utxos(
    address: str | None = typer.Argument(None),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """List the UTXOs of an address (the account by default)."""
    _run(lambda ctx: pipeline.get_utxos(ctx, address), network, log_level)


@app.command("fee-rates")
def fee_rates(
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show recommended fee rates."""
    _run(pipeline.get_fee_rates, network, log_level)


@app.command("block-height")
def block_height(
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the current block height."""
    _run(pipeline.get_block_height, network, log_level)


@app.command("network")
def network_info(
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the configured networks."""
    _run(pipeline.get_network, network, log_level)


@app.command("account")
def account(
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the active account and its EVM address."""
    _run(pipeline.get_account, network, log_level)


@app.command("predict-address")
def predict_address(
    sender: str | None = typer.Option(None, "--sender", help="EVM sender (default: account)"),
    nonce: int | None = typer.Option(None, "--nonce", help="Sender nonce (default: current)"),
    network: str | None = NetworkOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Predict the address of the next contract deployed by sender."""
    _run(lambda ctx: pipeline.predict_address(ctx, sender, nonce), network, log_level)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
