"""
Bitcoin and MIDL anchoring constants.

Virtual sizes follow the usual segwit estimates used by wallet coin selectors:
- P2WPKH input: ~68 vbytes, P2TR key-path input: ~57.5 vbytes (rounded up)
- Outputs are 8 bytes of value + script length + script
- Overhead: ~10.5 vbytes for a segwit transaction (rounded up)
"""

from __future__ import annotations

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

SATS_PER_BTC = 100_000_000

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Change below this is folded into the fee
DEFAULT_DUST_THRESHOLD = STANDARD_DUST_LIMIT

# Transaction template
TX_VERSION = 2
DEFAULT_LOCKTIME = 0
DEFAULT_SEQUENCE = 0xFFFFFFFD  # opts in to RBF

TX_OVERHEAD_VBYTES = 11

INPUT_VBYTES: dict[str, int] = {
    "p2wpkh": 68,
    "p2tr": 58,
    "p2sh-p2wpkh": 91,
    "p2pkh": 148,
}

OUTPUT_VBYTES: dict[str, int] = {
    "p2wpkh": 31,
    "p2tr": 43,
    "p2wsh": 43,
    "p2sh": 32,
    "p2sh-p2wpkh": 32,
    "p2pkh": 34,
}

# Native BTC on the MIDL EVM chain has 18 decimals
WEI_PER_SATOSHI = 10**10

# Value of the self-payment that anchors a contract operation when no
# explicit recipients are given
DEFAULT_ANCHOR_OUTPUT_VALUE = 1_000  # satoshis

DEFAULT_GAS_LIMIT = 3_000_000

# Timeouts (seconds)
DEFAULT_RPC_TIMEOUT = 30.0
DEFAULT_APPROVAL_TIMEOUT = 120.0
DEFAULT_RECEIPT_TIMEOUT = 30.0
DEFAULT_RECEIPT_POLL_INTERVAL = 2.0

# Paired submission method exposed by the MIDL EVM node
SEND_BTC_TRANSACTIONS_METHOD = "eth_sendBTCTransactions"

BINDING_MESSAGE_PREFIX = "midl-anchor:v1"
