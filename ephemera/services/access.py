from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ephemera.core.exceptions import (
    Expired,
    InvalidPassword,
    LimitReached,
    NotFound,
    PasswordRequired,
    ShareError,
)
from ephemera.models import FileRecord


class Decision(str, Enum):
    ALLOW = "allow"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    PASSWORD_REQUIRED = "password_required"
    INVALID_PASSWORD = "invalid_password"


_REFUSALS: dict[Decision, type[ShareError]] = {
    Decision.NOT_FOUND: NotFound,
    Decision.EXPIRED: Expired,
    Decision.LIMIT_REACHED: LimitReached,
    Decision.PASSWORD_REQUIRED: PasswordRequired,
    Decision.INVALID_PASSWORD: InvalidPassword,
}


def evaluate(
    record: Optional[FileRecord],
    now: datetime,
    provided_password: Optional[str],
    verify: Callable[[str, str], bool],
) -> Decision:
    """Decide whether a download of ``record`` may proceed.

    Checks run in a fixed order: existence, expiry, exhaustion, then the
    credential. An empty password counts as no password. ``verify`` is the
    hash check, ``verify(plain, hashed) -> bool``.
    """
    if record is None:
        return Decision.NOT_FOUND
    if record.is_expired(now):
        return Decision.EXPIRED
    if record.is_exhausted:
        return Decision.LIMIT_REACHED
    if record.password_hash is not None:
        if not provided_password:
            return Decision.PASSWORD_REQUIRED
        if not verify(provided_password, record.password_hash):
            return Decision.INVALID_PASSWORD
    return Decision.ALLOW


def raise_for_decision(decision: Decision) -> None:
    if decision is Decision.ALLOW:
        return
    raise _REFUSALS[decision]()
