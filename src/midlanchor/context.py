"""
Immutable runtime context shared by pipeline operations.

Built once from Settings; holds the network, the active account and the
clients every operation needs. There is no other shared state.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from midlanchor.approval import ApprovalChannel, ApprovalGate
from midlanchor.backends.base import BitcoinBackend
from midlanchor.backends.mempool import MempoolSpaceBackend
from midlanchor.bitcoin.address import address_type
from midlanchor.coin_selection import CoinSelector
from midlanchor.config import Settings
from midlanchor.connector import Connector, KeyPairConnector, WatchOnlyConnector
from midlanchor.errors import InvalidInput
from midlanchor.evm.rpc import EvmRpcClient
from midlanchor.linker import CrossChainLinker
from midlanchor.models import Account, AddressPurpose, AddressType, Network
from midlanchor.submitter import DualChainSubmitter


@dataclass(frozen=True)
class Context:
    settings: Settings
    network: Network
    account: Account
    connector: Connector
    backend: BitcoinBackend
    evm_rpc: EvmRpcClient
    approval_gate: ApprovalGate

    @property
    def chain_id(self) -> int:
        return self.settings.evm_chain_id

    @property
    def can_sign(self) -> bool:
        return not isinstance(self.connector, WatchOnlyConnector)

    def coin_selector(self, account: Account | None = None) -> CoinSelector:
        account = account or self.account
        return CoinSelector(
            self.network, account.address_type, dust_threshold=self.settings.dust_threshold
        )

    def linker(self) -> CrossChainLinker:
        return CrossChainLinker(
            self.connector, self.account, self.network, gas_limit=self.settings.gas_limit
        )

    def submitter(self) -> DualChainSubmitter:
        return DualChainSubmitter(
            self.backend,
            self.evm_rpc,
            receipt_timeout=self.settings.receipt_timeout,
            poll_interval=self.settings.receipt_poll_interval,
        )

    async def close(self) -> None:
        await self.backend.close()
        await self.evm_rpc.close()


async def build_context(
    settings: Settings,
    channel: ApprovalChannel | None = None,
    *,
    backend: BitcoinBackend | None = None,
    evm_rpc: EvmRpcClient | None = None,
) -> Context:
    """
    Create the Context for settings.

    Raises:
        InvalidInput: No account is configured, or it is unusable
        InvalidAddress: The configured address is not valid for the network
    """
    network = Network.from_id(settings.network)
    backend = backend or MempoolSpaceBackend(
        settings.mempool_url or network.mempool_api_url, network, timeout=settings.rpc_timeout
    )
    evm_rpc = evm_rpc or EvmRpcClient(settings.evm_rpc_url, timeout=settings.rpc_timeout)

    connector: Connector
    if settings.has_mnemonic:
        logger.info("Using mnemonic mode: full signing capability enabled")
        connector = KeyPairConnector.from_mnemonic(
            settings.mnemonic.get_secret_value(), network
        )
        wanted = AddressType(settings.address_type or AddressType.P2WPKH)
        account = next(a for a in connector.accounts() if a.address_type == wanted)

    elif settings.account_address:
        logger.info("Using address mode: PSBTs are returned unsigned for external signing")
        address = settings.account_address
        detected = address_type(address, network)
        if detected not in (AddressType.P2TR, AddressType.P2WPKH):
            raise InvalidInput(f"Unsupported account address type {detected.value}")
        if settings.address_type and AddressType(settings.address_type) != detected:
            raise InvalidInput(
                f"Account address is {detected.value}, configured as {settings.address_type}"
            )

        public_key = settings.account_pubkey or ""
        if settings.pubkey_is_placeholder:
            logger.info(f"Attempting to recover public key for {address}...")
            public_key = await backend.find_public_key(address) or ""
            if not public_key:
                logger.warning(f"No public key for {address}; binding and taproot hints disabled")

        purpose = AddressPurpose.ORDINALS if detected == AddressType.P2TR else AddressPurpose.PAYMENT
        connector = WatchOnlyConnector(address, public_key, detected, purpose)
        account = connector.accounts()[0]

    else:
        raise InvalidInput("Neither MIDL_MNEMONIC nor MIDL_ACCOUNT_ADDRESS is set")

    logger.info(f"Network {network.id.value}, account {account.address}")
    return Context(
        settings=settings,
        network=network,
        account=account,
        connector=connector,
        backend=backend,
        evm_rpc=evm_rpc,
        approval_gate=ApprovalGate(channel, timeout=settings.approval_timeout),
    )
