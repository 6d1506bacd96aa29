"""
Configuration management for the anchoring pipeline.

Two account modes:
1. Mnemonic mode: MIDL_MNEMONIC set, full signing capability
2. Address mode: MIDL_ACCOUNT_ADDRESS (+ MIDL_ACCOUNT_PUBKEY), PSBTs are
   returned unsigned for external signing
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from midlanchor.constants import (
    DEFAULT_ANCHOR_OUTPUT_VALUE,
    DEFAULT_APPROVAL_TIMEOUT,
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_GAS_LIMIT,
    DEFAULT_RECEIPT_POLL_INTERVAL,
    DEFAULT_RECEIPT_TIMEOUT,
    DEFAULT_RPC_TIMEOUT,
    STANDARD_DUST_LIMIT,
)
from midlanchor.models import NetworkType


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MIDL_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: NetworkType = NetworkType.REGTEST
    # mainnet is refused unless explicitly allowed
    allow_mainnet: bool = False

    mnemonic: SecretStr | None = None
    account_address: str | None = None
    account_pubkey: str | None = None
    # None: p2wpkh (payment) in mnemonic mode, p2tr in address mode
    address_type: Literal["p2tr", "p2wpkh"] | None = None

    mempool_url: str | None = None
    evm_rpc_url: str = "https://rpc.regtest.midl.xyz"
    evm_chain_id: int = Field(default=777, gt=0)

    approval_timeout: float = Field(default=DEFAULT_APPROVAL_TIMEOUT, gt=0)
    receipt_timeout: float = Field(default=DEFAULT_RECEIPT_TIMEOUT, ge=0)
    receipt_poll_interval: float = Field(default=DEFAULT_RECEIPT_POLL_INTERVAL, gt=0)
    rpc_timeout: float = Field(default=DEFAULT_RPC_TIMEOUT, gt=0)

    dust_threshold: int = Field(default=DEFAULT_DUST_THRESHOLD, ge=STANDARD_DUST_LIMIT)
    gas_limit: int = Field(default=DEFAULT_GAS_LIMIT, gt=0)
    anchor_output_value: int = Field(default=DEFAULT_ANCHOR_OUTPUT_VALUE, ge=STANDARD_DUST_LIMIT)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_network(self) -> Settings:
        if self.network == NetworkType.MAINNET and not self.allow_mainnet:
            raise ValueError(
                "Mainnet is disabled; set MIDL_ALLOW_MAINNET=true to anchor on mainnet"
            )
        return self

    @property
    def has_mnemonic(self) -> bool:
        return self.mnemonic is not None and bool(self.mnemonic.get_secret_value().strip())

    @property
    def pubkey_is_placeholder(self) -> bool:
        pubkey = self.account_pubkey or ""
        return not pubkey or pubkey == "NOT_SET" or "..." in pubkey

