"""
Local persistence: usage ledger, key-value store and recipe book.
"""
