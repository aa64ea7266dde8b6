from __future__ import annotations

import hashlib
import hmac
from functools import lru_cache

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from argon2.low_level import Type as Argon2Type

from anon_identity.settings import get_settings


@lru_cache
def get_password_hasher() -> PasswordHasher:
    settings = get_settings()
    return PasswordHasher(
        time_cost=max(1, int(settings.argon2_time_cost)),
        memory_cost=max(8, int(settings.argon2_memory_cost)),
        parallelism=max(1, int(settings.argon2_parallelism)),
        hash_len=max(16, int(settings.argon2_hash_len)),
        salt_len=16,
        type=Argon2Type.ID,
    )


def hash_secret(secret: str) -> str:
    return get_password_hasher().hash(secret)


def verify_secret(secret: str, secret_hash: str) -> bool:
    if not secret or not secret_hash:
        return False
    try:
        return get_password_hasher().verify(secret_hash, secret)
    except (VerifyMismatchError, VerificationError, InvalidHashError, ValueError, TypeError):
        # Malformed or legacy hash values must read as a mismatch, not crash the restore flow.
        return False


def fingerprint_secret(secret: str) -> str:
    pepper = (get_settings().recovery_fingerprint_pepper or "").strip()
    data = secret.encode("utf-8")
    if pepper:
        return hmac.new(pepper.encode("utf-8"), data, hashlib.sha256).hexdigest()
    return hashlib.sha256(data).hexdigest()


def secrets_match(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
