"""
Security utilities: signing token generation, hashing, format checks.
"""
import hashlib
import logging
import re
import secrets
from typing import Optional, Tuple

from app.config import get_settings

logger = logging.getLogger(__name__)

# 32 random bytes -> 256 bits of entropy, 43 URL-safe characters
SIGNING_TOKEN_BYTES = 32
MIN_TOKEN_LENGTH = 16

_TOKEN_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")
_REPEATED_RUN = re.compile(r"(.)\1{10,}")


def hash_signing_token(token: str, salt: Optional[str] = None) -> str:
    """
    Hash a signing token using SHA-256 with salt.
    Used to store tokens securely in database.

    Note: Never log raw token or salt - use fingerprints only.
    """
    if salt is None:
        salt = get_settings().signing_token_salt

    salted = f"{salt}{token}"
    result = hashlib.sha256(salted.encode()).hexdigest()

    token_fp = hashlib.sha256(token.encode()).hexdigest()[:8]
    logger.debug(f"hash_signing_token: token_fp={token_fp}, hash_fp={result[:8]}")
    return result


def generate_signing_token(salt: Optional[str] = None) -> Tuple[str, str]:
    """
    Generate a new signing token and its hash.

    Returns:
        Tuple of (plain_token, hashed_token)
    """
    token = secrets.token_urlsafe(SIGNING_TOKEN_BYTES)
    token_hash = hash_signing_token(token, salt)
    return token, token_hash


def verify_signing_token(plain_token: str, stored_hash: str, salt: Optional[str] = None) -> bool:
    """
    Verify a signing token against its stored hash.
    """
    computed_hash = hash_signing_token(plain_token, salt)
    return secrets.compare_digest(computed_hash, stored_hash)


def is_plausible_token(token: Optional[str]) -> bool:
    """
    Cheap structural check run before any database lookup.

    Rejects short strings, anything outside the URL-safe base64 alphabet,
    and long runs of a single character.
    """
    if not token or not isinstance(token, str):
        return False
    if len(token) < MIN_TOKEN_LENGTH:
        return False
    if not _TOKEN_ALPHABET.match(token):
        return False
    if len(set(token)) == 1 or _REPEATED_RUN.search(token):
        return False
    return True


def compute_bytes_hash(data: bytes) -> str:
    """Compute SHA-256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()
