"""
JSON-RPC client for the MIDL EVM node.

Besides the standard eth_* methods the node exposes eth_sendBTCTransactions,
which accepts serialized signed intentions together with the raw Bitcoin
transaction that anchors them.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
from loguru import logger

from midlanchor.constants import DEFAULT_RPC_TIMEOUT, SEND_BTC_TRANSACTIONS_METHOD
from midlanchor.errors import BackendError


class EvmRpcError(BackendError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: int | str, message: str):
        super().__init__(f"RPC error {code} in {method}: {message}")
        self.method = method
        self.code = code
        self.message = message


class EvmRpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            EvmRpcError: On RPC errors
            BackendError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"EVM RPC call timed out: {method} - {e}")
            raise BackendError(f"EVM RPC call {method} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"EVM RPC call failed: {method} - {e}")
            raise BackendError(f"EVM RPC call {method} failed: {e}") from e
        except ValueError as e:
            raise BackendError(f"EVM RPC call {method} returned invalid JSON") from e

        if "error" in data and data["error"]:
            error_info = data["error"]
            raise EvmRpcError(
                method,
                error_info.get("code", "unknown"),
                error_info.get("message", str(error_info)),
            )

        return data.get("result")

    async def chain_id(self) -> int:
        return int(await self._rpc_call("eth_chainId"), 16)

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return int(await self._rpc_call("eth_getTransactionCount", [address, block]), 16)

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self._rpc_call("eth_getTransactionReceipt", [tx_hash])

    async def send_btc_transactions(
        self, serialized_intentions: Sequence[str], btc_tx_hex: str
    ) -> Any:
        """
        Submit signed intentions and their anchoring Bitcoin transaction in
        one call. Both halves are accepted or rejected together by the node.
        """
        logger.debug(
            f"Calling {SEND_BTC_TRANSACTIONS_METHOD} with {len(serialized_intentions)} intention(s)"
        )
        return await self._rpc_call(
            SEND_BTC_TRANSACTIONS_METHOD, [list(serialized_intentions), btc_tx_hex]
        )

    async def close(self) -> None:
        await self.client.aclose()
