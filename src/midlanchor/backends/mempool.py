"""
Mempool.space REST API backend.

Works against mempool.space for public networks and any self-hosted
instance with the same API (such as the MIDL regtest explorer).
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from midlanchor.backends.base import BitcoinBackend, FeeRates, TransactionStatus
from midlanchor.bitcoin.address import address_to_scriptpubkey
from midlanchor.bitcoin.transaction import Transaction, TransactionError
from midlanchor.constants import DEFAULT_RPC_TIMEOUT
from midlanchor.errors import BackendError, BitcoinRejected
from midlanchor.models import UTXO, Network


class MempoolSpaceBackend(BitcoinBackend):
    def __init__(
        self,
        base_url: str,
        network: Network,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.network = network
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Mempool API request timed out: {method} {path} - {e}")
            raise BackendError(f"Mempool API request {path} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Mempool API request failed: {method} {path} - {e}")
            raise BackendError(f"Mempool API request {path} failed: {e}") from e
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        if response.status_code >= 400:
            raise BackendError(
                f"Mempool API {path} returned {response.status_code}: {response.text.strip()}"
            )
        return _decode_json(response, path)

    async def get_utxos(self, address: str) -> list[UTXO]:
        data = await self._get_json(f"/address/{address}/utxo")
        tip = await self.get_block_height() if any(u["status"]["confirmed"] for u in data) else 0

        # /utxo does not include the script; every output pays the queried address
        script = address_to_scriptpubkey(address, self.network).hex()

        utxos = []
        for u in data:
            status = u.get("status", {})
            confirmations = 0
            if status.get("confirmed") and status.get("block_height") is not None:
                confirmations = tip - status["block_height"] + 1
            utxos.append(
                UTXO(
                    txid=u["txid"],
                    vout=u["vout"],
                    value=u["value"],
                    address=address,
                    scriptpubkey=script,
                    confirmations=confirmations,
                )
            )

        logger.debug(f"Found {len(utxos)} UTXO(s) for {address}")
        return utxos

    async def get_address_balance(self, address: str) -> int:
        data = await self._get_json(f"/address/{address}")
        chain = data.get("chain_stats", {})
        mempool = data.get("mempool_stats", {})
        return (
            chain.get("funded_txo_sum", 0)
            - chain.get("spent_txo_sum", 0)
            + mempool.get("funded_txo_sum", 0)
            - mempool.get("spent_txo_sum", 0)
        )

    async def broadcast_transaction(self, tx_hex: str) -> str:
        response = await self._request("POST", "/tx", content=tx_hex)
        if response.status_code >= 500:
            raise BackendError(f"Broadcast failed with status {response.status_code}")
        if response.status_code >= 400:
            reason = response.text.strip()
            logger.error(f"Broadcast rejected: {reason}")
            raise BitcoinRejected(_txid_of(tx_hex), reason)

        txid = response.text.strip()
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def test_mempool_accept(self, tx_hex: str) -> str | None:
        response = await self._request("POST", "/txs/test", json=[tx_hex])
        if response.status_code == 404:
            logger.debug("Mempool API has no /txs/test endpoint, skipping preflight")
            return None
        if response.status_code >= 400:
            return response.text.strip() or f"status {response.status_code}"

        results = _decode_json(response, "/txs/test")
        if not results:
            return None
        if not isinstance(results, list) or not isinstance(results[0], dict):
            raise BackendError("Mempool API /txs/test returned an unexpected payload")
        result = results[0]
        if result.get("allowed", False):
            return None
        return result.get("reject-reason", "rejected by mempool")

    async def get_transaction_status(self, txid: str) -> TransactionStatus | None:
        response = await self._request("GET", f"/tx/{txid}/status")
        if response.status_code in (400, 404):
            return None
        if response.status_code >= 400:
            raise BackendError(f"Transaction status lookup returned {response.status_code}")

        data = _decode_json(response, f"/tx/{txid}/status")
        return TransactionStatus(
            txid=txid,
            confirmed=bool(data.get("confirmed")),
            block_height=data.get("block_height"),
            block_time=data.get("block_time"),
        )

    async def get_fee_rates(self) -> FeeRates:
        data = await self._get_json("/v1/fees/recommended")
        return FeeRates(
            fastest=data["fastestFee"],
            half_hour=data["halfHourFee"],
            hour=data["hourFee"],
            economy=data.get("economyFee", data["hourFee"]),
            minimum=data.get("minimumFee", 1),
        )

    async def get_block_height(self) -> int:
        response = await self._request("GET", "/blocks/tip/height")
        if response.status_code >= 400:
            raise BackendError(f"Block height lookup returned {response.status_code}")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise BackendError(f"Block height lookup returned {response.text!r}") from e

    async def find_public_key(self, address: str) -> str | None:
        try:
            txs = await self._get_json(f"/address/{address}/txs")
        except BackendError as e:
            logger.warning(f"Public key recovery failed: {e}")
            return None

        for tx in txs:
            for vin in tx.get("vin", []):
                prevout = vin.get("prevout") or {}
                witness = vin.get("witness") or []
                if prevout.get("scriptpubkey_address") == address and len(witness) >= 2:
                    logger.info(f"Recovered public key for {address}")
                    return witness[-1]
        return None

    async def close(self) -> None:
        await self.client.aclose()


def _txid_of(tx_hex: str) -> str:
    try:
        return Transaction.from_hex(tx_hex).txid
    except TransactionError:
        return "unknown"


def _decode_json(response: httpx.Response, path: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise BackendError(f"Mempool API {path} returned invalid JSON") from e
