"""Random identifiers and PKCE (RFC 7636) helpers.

State values and code verifiers are drawn from an alphanumeric alphabet
using the `secrets` module. Only the S256 challenge method is supported.
"""

import base64
import hashlib
import secrets
import string

ALPHABET = string.ascii_letters + string.digits

STATE_LENGTH = 24
# 64 alphanumeric chars carry ~381 bits, above the RFC 7636 minimum of 256
VERIFIER_LENGTH = 64


def random_token(length: int = STATE_LENGTH) -> str:
    """Return a cryptographically random alphanumeric string."""
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    base64url(SHA-256(verifier)) with the trailing padding removed.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair(length: int = VERIFIER_LENGTH) -> tuple[str, str]:
    """Generate a (verifier, challenge) pair."""
    if not 43 <= length <= 128:
        raise ValueError("PKCE verifier length must be between 43 and 128")
    verifier = random_token(length)
    return verifier, code_challenge(verifier)
