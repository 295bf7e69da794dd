"""
Currency exchange order ledger: pool accounting + reconciliation service.
"""
