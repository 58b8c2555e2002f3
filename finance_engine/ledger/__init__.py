"""
Wallet ledger domain.

This package is intentionally split into:
- models: immutable ledger entities (transactions, wallets, payouts)
- classifier / splits: pure functions (no Firestore dependency) for deterministic testing
- codec: Firestore dict <-> typed entity mapping
"""
