"""
Food photo recognition and recipe suggestions with tiered usage quotas.
"""

__version__ = "0.1.0"
