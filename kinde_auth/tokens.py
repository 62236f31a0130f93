"""Token set persisted after a successful code exchange.

The stored record keeps the provider's field names (`access_token`,
`refresh_token`, `id_token`, `expires_in`) plus `timestamp`, the issue time
in epoch milliseconds.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

import jwt

logger = logging.getLogger(__name__)

TOKENS_KEY = "tokens"
DEFAULT_EXPIRES_IN = 3600


def token_key(session_id: Optional[str] = None) -> str:
    """Store key for the token set, scoped by session when one is given."""
    return f"{TOKENS_KEY}:{session_id}" if session_id else TOKENS_KEY


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: int = DEFAULT_EXPIRES_IN
    timestamp: int = 0

    @classmethod
    def from_token_response(cls, payload: dict, now_ms: Optional[int] = None) -> "TokenSet":
        """Build a token set from the provider's token endpoint JSON."""
        expires_in = payload.get("expires_in") or DEFAULT_EXPIRES_IN
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            id_token=payload.get("id_token") or None,
            expires_in=expires_in,
            timestamp=now_ms if now_ms is not None else int(time.time() * 1000),
        )

    @classmethod
    def from_stored(cls, data) -> Optional["TokenSet"]:
        """Rebuild from a stored record; None for anything unusable."""
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_in=data.get("expires_in") or DEFAULT_EXPIRES_IN,
            timestamp=data.get("timestamp") or 0,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserProfile:
    id: str
    email: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None


def decode_id_token_claims(id_token: str) -> Optional[dict]:
    """Read ID token claims without verifying the signature.

    Only suitable for display purposes; the token came straight from the
    provider's token endpoint over TLS and is never used for authorization.
    """
    try:
        return jwt.decode(id_token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        logger.debug(f"[SESSION] Could not decode id_token: {e}")
        return None


def user_from_tokens(tokens: TokenSet) -> Optional[UserProfile]:
    if not tokens.id_token:
        return None
    claims = decode_id_token_claims(tokens.id_token)
    if not claims or not claims.get("sub"):
        return None
    return UserProfile(
        id=claims["sub"],
        email=claims.get("email"),
        given_name=claims.get("given_name"),
        family_name=claims.get("family_name"),
        picture=claims.get("picture"),
    )
