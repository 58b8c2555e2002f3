"""
Finance persistence.

Business logic depends only on the `FinanceStore` interface (interfaces.py);
the Firestore and in-memory implementations are injected by callers.
"""
