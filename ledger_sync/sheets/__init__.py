"""
Google Sheets collaborator: read ledger rows, append new orders.
"""
