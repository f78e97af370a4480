"""Zuno tag (handle) normalization and validation."""

from __future__ import annotations

import re

from zuno.auth.errors import InvalidHandle

HANDLE_MIN_LENGTH = 3
HANDLE_MAX_LENGTH = 50
HANDLE_PATTERN = re.compile(r"^[a-z0-9_]+$")


def normalize_handle(handle: str) -> str:
    """Strip a single leading ``@``."""
    return handle[1:] if handle.startswith("@") else handle


def is_valid_handle(handle: str) -> bool:
    """Check the handle format: 3-50 chars of lowercase letters, digits or underscore."""
    tag = normalize_handle(handle)
    if not HANDLE_MIN_LENGTH <= len(tag) <= HANDLE_MAX_LENGTH:
        return False
    return HANDLE_PATTERN.fullmatch(tag) is not None


def validate_handle(handle: str) -> str:
    """
    Return the normalized handle.

    Raises InvalidHandle if the handle does not satisfy the format rules.
    """
    if not is_valid_handle(handle):
        msg = (
            f"Invalid Zuno tag {handle!r}: use {HANDLE_MIN_LENGTH}-{HANDLE_MAX_LENGTH} "
            "lowercase letters, numbers or underscores"
        )
        raise InvalidHandle(msg)
    return normalize_handle(handle)
