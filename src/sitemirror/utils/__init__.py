"""
Utilities Package.

URL normalization and filtering helpers.
"""

from .urls import (
    can_fetch_url,
    is_http_url,
    is_page_candidate,
    is_same_origin,
    normalize_url,
    origin_of,
    resolve,
)

__all__ = [
    "can_fetch_url",
    "is_http_url",
    "is_page_candidate",
    "is_same_origin",
    "normalize_url",
    "origin_of",
    "resolve",
]
