"""Shared utility functions for the auth client.

Re-exports so consumers can import directly from ``authclient.utils``.
"""

from authclient.utils.general import is_plausible_email, mask_email, normalize_email

__all__ = [
    "is_plausible_email",
    "mask_email",
    "normalize_email",
]
