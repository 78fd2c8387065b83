"""
Utilities Package.

Provides URL normalization used to key rate limits and history.
"""

from .url import normalize_url, is_normalized

__all__ = [
    "normalize_url",
    "is_normalized",
]
