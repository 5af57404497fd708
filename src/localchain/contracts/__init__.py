"""Contract runtime and the bundled contracts (token, bonding curve, wish list, chat)."""
