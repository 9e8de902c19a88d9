from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessiongate.logging import get_logger

logger = get_logger(__name__)

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(stored_hash: Optional[str], password: str, *, user_id: str = "") -> bool:
    """Check ``password`` against an argon2id hash; a missing hash never matches."""
    if not stored_hash:
        logger.warning("password_record_missing", user_id=user_id)
        return False
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_verification_failed", user_id=user_id)
        return False
