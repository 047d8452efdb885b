from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from credstore.config import Settings
from credstore.storage.models import SessionToken, Token, TokenKind, utcnow

TOKEN_DATA_BYTES = 32


@dataclass(frozen=True)
class DerivedToken:
    """Token data handed to the client once, and the identifiers derived from it."""

    data: str
    token_id: str
    auth_key: str


def derive_token(token_data: bytes, kind: TokenKind, namespace: str) -> DerivedToken:
    """Derive ``token_id`` and ``auth_key`` from raw token data with HKDF-SHA256.

    The info string binds the derivation to the token kind so the same data
    can never name tokens of two kinds.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=None,
        info=f"{namespace}/{kind.value}".encode(),
    )
    okm = hkdf.derive(token_data)
    return DerivedToken(
        data=token_data.hex(),
        token_id=okm[:32].hex(),
        auth_key=okm[32:].hex(),
    )


def new_token(
    kind: TokenKind,
    namespace: str,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> DerivedToken:
    return derive_token(random_bytes(TOKEN_DATA_BYTES), kind, namespace)


def token_lifetime(token: Token, settings: Settings) -> Optional[timedelta]:
    """Return how long ``token`` lives after creation; ``None`` means forever."""
    if isinstance(token, SessionToken):
        # Registering a device makes the session permanent, pending or not
        if token.device_id:
            return None
        return settings.session_token_without_device_lifetime
    return {
        TokenKind.KEY_FETCH: settings.key_fetch_token_lifetime,
        TokenKind.PASSWORD_FORGOT: settings.password_forgot_token_lifetime,
        TokenKind.ACCOUNT_RESET: settings.account_reset_token_lifetime,
    }[token.kind]


def is_expired(token: Token, lifetime: Optional[timedelta], now: Optional[datetime] = None) -> bool:
    expires_at = token.expires_at(lifetime)
    if expires_at is None:
        return False
    return (now or utcnow()) >= expires_at
