"""API token generation in the platform's ``<id>-<secret>`` format."""

from __future__ import annotations

import hashlib
import secrets
from typing import Callable

TOKEN_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
TOKEN_ID_LENGTH = 10
TOKEN_SECRET_LENGTH = 22

# Bytes at or above this value would bias the modulo reduction.
REJECTION_THRESHOLD = 256 - (256 % len(TOKEN_ALPHABET))


def random_string(length: int, random_bytes: Callable[[int], bytes] = secrets.token_bytes) -> str:
    """Uniform random string over TOKEN_ALPHABET using rejection sampling.

    Args:
        length: Number of characters to produce
        random_bytes: Source of random bytes, ``secrets.token_bytes`` by default

    Returns:
        Random alphanumeric string
    """
    if length <= 0:
        raise ValueError("length must be positive")

    out: list[str] = []
    while len(out) < length:
        for byte in random_bytes(length - len(out)):
            if byte >= REJECTION_THRESHOLD:
                continue
            out.append(TOKEN_ALPHABET[byte % len(TOKEN_ALPHABET)])
            if len(out) == length:
                break
    return "".join(out)


def hash_token_secret(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def generate_operator_token() -> tuple[str, str, bytes]:
    """Generate a new API token.

    Returns:
        Tuple of (token, token id, sha256 of the secret part)
    """
    token_id = random_string(TOKEN_ID_LENGTH)
    secret = random_string(TOKEN_SECRET_LENGTH)
    return f"{token_id}-{secret}", token_id, hash_token_secret(secret)


def split_operator_token(token: str) -> tuple[str, str] | None:
    """Split a token into its id and secret, or None if malformed."""
    token_id, sep, secret = token.partition("-")
    if not sep or not token_id or not secret:
        return None
    return token_id, secret
