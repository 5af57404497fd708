# src/localchain/storage/__init__.py
"""
Keyed record store layered on the local chain.

Every write registers a content digest on the chain in the same SQLite
transaction as the record row; reads can be cross-checked against the
block hash a write returned.
"""
