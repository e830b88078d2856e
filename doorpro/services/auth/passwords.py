from __future__ import annotations

import hashlib
import hmac
import logging

import bcrypt


logger = logging.getLogger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
# Legacy "salt:hex" hashes from the previous user store.
_LEGACY_PBKDF2_ITERATIONS = 10000
_LEGACY_PBKDF2_KEY_LEN = 64

# Verified when the username is unknown so both failure paths cost the same.
DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"doorpro-dummy-password", bcrypt.gensalt()).decode("utf-8")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _verify_legacy_pbkdf2(stored_hash: str, candidate: str) -> bool:
    salt, sep, expected_hex = stored_hash.partition(":")
    if not sep or not salt or not expected_hex:
        return False
    derived = hashlib.pbkdf2_hmac(
        "sha512",
        candidate.encode("utf-8"),
        salt.encode("utf-8"),
        _LEGACY_PBKDF2_ITERATIONS,
        dklen=_LEGACY_PBKDF2_KEY_LEN,
    )
    return hmac.compare_digest(derived.hex(), expected_hex.lower())


def verify_password(stored_hash: str | None, candidate: str) -> bool:
    # Constant-time comparison for both formats; malformed hashes never match.
    if not stored_hash:
        return False
    if stored_hash.startswith(_BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(candidate.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            logger.warning("password_hash_malformed format=bcrypt")
            return False
    return _verify_legacy_pbkdf2(stored_hash, candidate)
