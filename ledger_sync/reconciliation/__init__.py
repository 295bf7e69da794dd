"""
Batch reconciliation: replay pools over the full history, enrich, persist.
"""
