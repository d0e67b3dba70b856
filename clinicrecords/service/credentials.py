from __future__ import annotations

import base64
import hmac
import os
from dataclasses import dataclass

from argon2 import Type
from argon2.low_level import hash_secret_raw

from clinicrecords.service.errors import ValidationError

# Argon2id parameters for both login factors
ARGON2_TIME_COST = 1
ARGON2_MEMORY_COST_KIB = 64 * 1024
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32

SALT_BYTES = 16
KEY_BYTES = 8  # 64-bit login key
PIN_LENGTH = 4


@dataclass(frozen=True)
class Credential:
    """Salted Argon2id digest of a login factor. Never holds the secret itself."""

    hash: bytes
    salt: bytes

    def __repr__(self) -> str:
        return "Credential(hash=<redacted>, salt=<redacted>)"

    def matches(self, candidate: str) -> bool:
        return verify_secret(self, candidate)


def _derive(secret: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=secret.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST_KIB,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def hash_secret(secret: str) -> Credential:
    """Hash ``secret`` under a fresh random salt."""
    salt = os.urandom(SALT_BYTES)
    return Credential(hash=_derive(secret, salt), salt=salt)


def verify_secret(credential: Credential, candidate: str) -> bool:
    """Recompute the digest with the stored salt and compare in constant time."""
    if not isinstance(candidate, str):
        return False
    digest = _derive(candidate, credential.salt)
    return hmac.compare_digest(digest, credential.hash)


def generate_key() -> tuple[str, Credential]:
    """Create a random URL-safe login key and its credential.

    The plaintext is returned exactly once; callers hand it to the user and
    drop it.
    """
    key = base64.urlsafe_b64encode(os.urandom(KEY_BYTES)).decode("ascii")
    return key, hash_secret(key)


def validate_pin(pin: str) -> str:
    if not isinstance(pin, str) or len(pin) != PIN_LENGTH or not (pin.isascii() and pin.isdigit()):
        raise ValidationError(
            f"PIN must be exactly {PIN_LENGTH} digits", detail={"field": "pin"}
        )
    return pin


def pin_credential(pin: str) -> Credential:
    return hash_secret(validate_pin(pin))


__all__ = [
    "Credential",
    "hash_secret",
    "verify_secret",
    "generate_key",
    "validate_pin",
    "pin_credential",
]
