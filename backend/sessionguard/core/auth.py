"""Password hashing and password policy for the credential store."""

import re

import bcrypt

from sessionguard.config import settings

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
COMMON_PASSWORDS = ("password", "12345678", "qwerty", "admin", "letmein", "welcome")


def hash_password(password: str, rounds: int | None = None) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit); no passlib re-encoding."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt(rounds=rounds or settings.bcrypt_rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))
    except ValueError:
        # stored hash is not a bcrypt hash
        return False


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def password_policy_violation(password: str, min_length: int | None = None) -> str | None:
    """Return a user-facing reason the password is rejected, or None if it is acceptable."""
    min_length = min_length or settings.password_min_length
    if len(password) < min_length:
        return f"Password must be at least {min_length} characters long"
    if not (
        re.search(r"[A-Z]", password)
        and re.search(r"[a-z]", password)
        and re.search(r"\d", password)
        and _SPECIAL_RE.search(password)
    ):
        return "Password must contain uppercase, lowercase, numbers, and special characters"
    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        return "Password is too common. Please choose a stronger password"
    return None
