"""
Core modules for food_scan.

This package contains subscription tiers, quota tracking, retry with
backoff, and the application error taxonomy.
"""
