"""Hashing helpers for content addressing and key sanitizing."""

from __future__ import annotations

import hashlib
import re

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """Return the ``sha256:<hex>`` address of raw bytes."""
    return f"sha256:{sha256_hex(data)}"


def safe_name(key: str) -> str:
    """Map an artifact key or alias to a filesystem/tag safe name.

    Release tags such as ``feature/x`` contain characters that are invalid
    both in file names and in docker tags.
    """
    cleaned = _UNSAFE_KEY_CHARS.sub("-", key)
    if not cleaned or cleaned.strip(".-") == "":
        raise ValueError(f"unusable artifact key or alias: {key!r}")
    return cleaned
