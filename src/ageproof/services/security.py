"""Security utilities for verification sessions and postbacks.

Provides unguessable identifiers and a comparison for shared secrets that
does not leak the position of the first mismatch or the secret's length.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
import uuid


def generate_request_token() -> str:
    """Generate the handle a guardian uses to reach a consent link.

    Returns:
        64 hex characters (32 random bytes)
    """
    return secrets.token_hex(32)


def generate_session_id() -> str:
    """Generate a verification session id: avs_<epoch ms>_<32 hex>.

    The id is a bearer handle for the session status, so it carries 128
    random bits.
    """
    return f"avs_{int(time.time() * 1000)}_{secrets.token_hex(16)}"


def generate_link_id() -> str:
    return f"gcl_{uuid.uuid4().hex}"


def generate_record_id() -> str:
    return f"cpb_{uuid.uuid4().hex}"


def secrets_match(expected: str, presented: str | None) -> bool:
    """Compare a configured secret with a presented one in constant time.

    Both values are reduced to fixed-length SHA-256 digests first, so the
    comparison takes the same time whatever the presented length or where
    it first differs.

    Args:
        expected: Secret from configuration
        presented: Value supplied by the caller, possibly missing

    Returns:
        True if the values are equal
    """
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    presented_digest = hashlib.sha256((presented or "").encode("utf-8")).digest()
    matched = hmac.compare_digest(expected_digest, presented_digest)
    return matched and presented is not None and bool(expected)
