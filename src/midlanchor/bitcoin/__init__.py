"""Bitcoin primitives: addresses, transactions, HD keys and BIP322 messages."""
