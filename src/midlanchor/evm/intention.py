"""
Intention encoding: turns a contract deployment or call into an Intention.

Calldata is the 4-byte selector of the canonical function signature
followed by the ABI-encoded arguments. Deployment data is the creation
bytecode followed by the ABI-encoded constructor arguments.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from eth_abi import encode
from eth_abi.exceptions import EncodingError
from eth_utils import collapse_if_tuple, function_signature_to_4byte_selector
from loguru import logger

from midlanchor.errors import InvalidInput
from midlanchor.models import Intention

_ARRAY_SUFFIX = re.compile(r"\[\d*\]$")


def _input_types(entry: dict[str, Any]) -> list[str]:
    return [collapse_if_tuple(i) for i in entry.get("inputs", [])]


def function_signature(entry: dict[str, Any]) -> str:
    return f"{entry['name']}({','.join(_input_types(entry))})"


def find_function(abi: Sequence[dict[str, Any]], name: str, arg_count: int) -> dict[str, Any]:
    """Find the ABI entry for name that takes arg_count arguments."""
    candidates = [e for e in abi if e.get("type") == "function" and e.get("name") == name]
    if not candidates:
        raise InvalidInput(f"Function '{name}' not found in ABI")

    matching = [e for e in candidates if len(e.get("inputs", [])) == arg_count]
    if not matching:
        expected = sorted({len(e.get("inputs", [])) for e in candidates})
        raise InvalidInput(
            f"Function '{name}' takes {', '.join(map(str, expected))} argument(s), got {arg_count}"
        )
    if len(matching) > 1:
        signatures = ", ".join(function_signature(e) for e in matching)
        raise InvalidInput(f"Ambiguous overload for '{name}': {signatures}")
    return matching[0]


def find_constructor(abi: Sequence[dict[str, Any]]) -> dict[str, Any] | None:
    for entry in abi:
        if entry.get("type") == "constructor":
            return entry
    return None


def _normalize(abi_type: str, value: Any) -> Any:
    """Coerce JSON-friendly values (hex strings, numeric strings) to ABI types."""
    if _ARRAY_SUFFIX.search(abi_type):
        if not isinstance(value, (list, tuple)):
            raise InvalidInput(f"Expected a list for {abi_type}, got {value!r}")
        item_type = _ARRAY_SUFFIX.sub("", abi_type)
        return [_normalize(item_type, v) for v in value]

    if abi_type.startswith("bytes") and isinstance(value, str):
        hex_value = value[2:] if value.startswith("0x") else value
        try:
            return bytes.fromhex(hex_value)
        except ValueError as e:
            raise InvalidInput(f"Expected hex for {abi_type}, got {value!r}") from e

    if abi_type.startswith(("uint", "int")) and isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as e:
            raise InvalidInput(f"Expected an integer for {abi_type}, got {value!r}") from e

    return value


def encode_arguments(types: Sequence[str], args: Sequence[Any]) -> bytes:
    if len(types) != len(args):
        raise InvalidInput(f"Expected {len(types)} argument(s), got {len(args)}")

    values = [_normalize(t, a) for t, a in zip(types, args)]
    try:
        return encode(list(types), values)
    except (EncodingError, TypeError, ValueError) as e:
        raise InvalidInput(f"Cannot ABI-encode arguments {list(types)}: {e}") from e


def _make_intention(**fields: Any) -> Intention:
    try:
        return Intention(**fields)
    except ValueError as e:
        raise InvalidInput(f"Invalid intention: {e}") from e


def encode_call(
    to: str,
    abi: Sequence[dict[str, Any]],
    function_name: str,
    args: Sequence[Any] = (),
    value: int = 0,
    chain_id: int = 1,
) -> Intention:
    """
    Encode a contract call.

    Args:
        to: Contract address (20-byte hex)
        abi: Contract ABI (list of JSON entries)
        function_name: Function to call
        args: Positional arguments
        value: Native value attached to the call, in wei
        chain_id: EVM chain id

    Raises:
        InvalidInput: Unknown function, argument mismatch or bad address
    """
    entry = find_function(abi, function_name, len(args))
    signature = function_signature(entry)
    selector = function_signature_to_4byte_selector(signature)
    calldata = selector + encode_arguments(_input_types(entry), args)

    logger.debug(f"Encoded call {signature} to {to} ({len(calldata)} bytes)")
    return _make_intention(to=to, data="0x" + calldata.hex(), value=value, chain_id=chain_id)


def encode_deploy(
    bytecode: str,
    chain_id: int,
    abi: Sequence[dict[str, Any]] | None = None,
    args: Sequence[Any] | None = None,
    value: int = 0,
) -> Intention:
    """
    Encode a contract deployment.

    Constructor arguments require an ABI that declares a constructor.
    """
    body = bytecode[2:] if bytecode.startswith("0x") else bytecode
    if not body:
        raise InvalidInput("Bytecode is empty")
    try:
        code = bytes.fromhex(body)
    except ValueError as e:
        raise InvalidInput("Bytecode is not valid hex") from e

    args = list(args or [])
    if args:
        if abi is None:
            raise InvalidInput("Constructor arguments require an ABI")
        constructor = find_constructor(abi)
        if constructor is None:
            raise InvalidInput("ABI has no constructor but arguments were given")
        code += encode_arguments(_input_types(constructor), args)
    elif abi is not None:
        constructor = find_constructor(abi)
        if constructor is not None and constructor.get("inputs"):
            raise InvalidInput(
                f"Constructor expects {len(constructor['inputs'])} argument(s), got 0"
            )

    logger.debug(f"Encoded deployment ({len(code)} bytes)")
    return _make_intention(to=None, data="0x" + code.hex(), value=value, chain_id=chain_id)
