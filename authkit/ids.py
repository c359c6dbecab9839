"""Prefix-tagged random identifiers.

Ids look like ``usr-0f1e2d3c...`` (prefix, dash, 32 hex chars). User ids are
the only user identifier that leaves the service; the integer primary key
stays inside storage. Token ids fill the ``jti`` claim.
"""

from __future__ import annotations

import uuid

PREFIX_USER = "usr"
PREFIX_TOKEN = "tok"

_HEX_LEN = 32
_HEX_DIGITS = frozenset("0123456789abcdef")


def generate(prefix: str = "") -> str:
    """Return ``<prefix>-<32 hex>``, or bare hex when prefix is empty."""
    raw = uuid.uuid4().hex
    if not prefix:
        return raw
    return f"{prefix.lower()}-{raw}"


def validate(value: object, prefix: str) -> bool:
    if not isinstance(value, str):
        return False
    expected = f"{prefix.lower()}-"
    if not value.startswith(expected):
        return False
    body = value[len(expected):]
    return len(body) == _HEX_LEN and set(body) <= _HEX_DIGITS


def new_user_id() -> str:
    return generate(PREFIX_USER)
