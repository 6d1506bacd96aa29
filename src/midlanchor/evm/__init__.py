"""EVM side of the anchoring pipeline: intention encoding, addresses and JSON-RPC."""
