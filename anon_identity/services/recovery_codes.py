from __future__ import annotations

import asyncio
import secrets

from anon_identity.errors import RecoveryCodeInputError
from anon_identity.security import fingerprint_secret, hash_secret, verify_secret

# Uppercase letters and digits minus the confusable 0/O and 1/I.
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_GROUP_SIZE = 5
RECOVERY_CODE_GROUP_COUNT = 4
RECOVERY_CODE_LENGTH = RECOVERY_CODE_GROUP_SIZE * RECOVERY_CODE_GROUP_COUNT
RECOVERY_CODE_SEPARATOR = "-"

_ALPHABET_SET = frozenset(RECOVERY_CODE_ALPHABET)


def format_recovery_code(normalized: str) -> str:
    groups = [
        normalized[index : index + RECOVERY_CODE_GROUP_SIZE]
        for index in range(0, len(normalized), RECOVERY_CODE_GROUP_SIZE)
    ]
    return RECOVERY_CODE_SEPARATOR.join(groups)


def generate_recovery_code() -> str:
    raw = "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
    return format_recovery_code(raw)


def normalize_recovery_code(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return "".join(ch for ch in value.strip().upper() if ch in _ALPHABET_SET)


def parse_recovery_code_input(value: object) -> str:
    """Normalize user input, rejecting anything that cannot be a recovery code."""
    if not isinstance(value, str) or not value.strip():
        raise RecoveryCodeInputError()
    normalized = normalize_recovery_code(value)
    if len(normalized) != RECOVERY_CODE_LENGTH:
        raise RecoveryCodeInputError("Recovery code is malformed.")
    return normalized


def fingerprint_recovery_code(normalized: str) -> str | None:
    if not normalized:
        return None
    return fingerprint_secret(normalized)


async def hash_recovery_code(normalized: str) -> str:
    return await asyncio.to_thread(hash_secret, normalized)


async def verify_recovery_code(normalized: str, stored_hash: str | None) -> bool:
    if not normalized or not stored_hash:
        return False
    return await asyncio.to_thread(verify_secret, normalized, stored_hash)
