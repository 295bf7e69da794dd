"""
Order ledger + pool accounting (Firestore-first).

This package is intentionally split into:
- models: typed transaction record + numeric coercion for untyped pass-through fields
- pools: pure functions (no Firestore dependency) for deterministic testing
- firestore: collection helpers, append-only writer, ledger write lease
"""
