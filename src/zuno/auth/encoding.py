"""Base64url helpers for WebAuthn payloads.

WebAuthn carries binary values as unpadded URL-safe base64. Servers are not
consistent about padding, so decoding accepts both forms.
"""

from __future__ import annotations

import base64


def b64url_encode(data: bytes) -> str:
    """Encode bytes as URL-safe base64 without ``=`` padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """
    Decode a base64url string, with or without padding.

    Raises binascii.Error (a ValueError) on malformed input.
    """
    standard = value.replace("-", "+").replace("_", "/")
    standard += "=" * (-len(standard) % 4)
    return base64.b64decode(standard, validate=True)
