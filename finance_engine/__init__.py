"""
Creator finance ledger aggregation + reconciliation engine (Firestore-first).

Layout:
- ledger: typed ledger entities, classification and split arithmetic (pure)
- aggregation: monthly creator snapshots + platform rollups
- reconciliation: balance/split/refund consistency checks
- persistence: store interface + Firestore / in-memory implementations
- jobs: scheduler adapters
"""
