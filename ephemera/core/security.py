from __future__ import annotations

import hmac

from passlib.context import CryptContext

from ephemera.config import BCRYPT_ROUNDS


def build_password_context(rounds: int = BCRYPT_ROUNDS) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


pwd_context = build_password_context()


def secrets_match(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison of two shared secrets; missing values never match."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
