from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenward.logging import get_logger
from tokenward.service.errors import WeakPasswordError

logger = get_logger(__name__)

MIN_LENGTH = 8
MAX_LENGTH = 128

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_REPEATED_CHARS = re.compile(r"(.)\1{2,}")

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password123",
        "12345678",
        "qwerty",
        "abc123",
        "password1",
        "123456789",
        "12345",
        "1234567890",
        "letmein",
        "welcome",
        "monkey",
        "dragon",
        "master",
        "sunshine",
        "princess",
        "admin",
        "admin123",
        "root",
        "toor",
        "pass",
        "test",
        "guest",
    }
)


@dataclass(frozen=True)
class PasswordStrength:
    score: int
    label: str

    def as_dict(self) -> dict:
        return {"score": self.score, "label": self.label}


def validate_password(
    password: str,
    confirm: Optional[str] = None,
    *,
    email: Optional[str] = None,
    firstname: Optional[str] = None,
    lastname: Optional[str] = None,
) -> List[str]:
    """Return every violated password rule, in a stable order."""

    errors: List[str] = []
    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters long")
    if len(password) > MAX_LENGTH:
        errors.append(f"Password must not exceed {MAX_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        errors.append(
            "Password must contain at least one special character (!@#$%^&*()_+-=[]{}; etc.)"
        )
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common and easily guessable")
    if _REPEATED_CHARS.search(password):
        errors.append("Password should not contain repeated characters (e.g., aaa, 111)")
    if confirm is not None and password != confirm:
        errors.append("Passwords do not match")

    personal = _personal_info_violation(password, email, firstname, lastname)
    if personal:
        errors.append(personal)
    return errors


def _personal_info_violation(
    password: str,
    email: Optional[str],
    firstname: Optional[str],
    lastname: Optional[str],
) -> Optional[str]:
    lowered = password.lower()
    local_part = email.split("@", 1)[0].lower() if email else ""
    if local_part and local_part in lowered:
        return "Password should not contain your email address"
    if firstname and len(firstname) >= 3 and firstname.lower() in lowered:
        return "Password should not contain your first name"
    if lastname and len(lastname) >= 3 and lastname.lower() in lowered:
        return "Password should not contain your last name"
    return None


def score_password(password: str) -> PasswordStrength:
    score = min(len(password) * 2, 30)
    classes = [
        bool(re.search(r"[a-z]", password)),
        bool(re.search(r"[A-Z]", password)),
        bool(re.search(r"\d", password)),
        bool(re.search(r"[^a-zA-Z0-9]", password)),
    ]
    score += 10 * sum(classes)
    if len(password) >= 12:
        score += 10
    if len(password) >= 16:
        score += 10
    if all(classes):
        score += 10
    score = min(score, 100)

    if score < 30:
        label = "Very Weak"
    elif score < 50:
        label = "Weak"
    elif score < 70:
        label = "Moderate"
    elif score < 90:
        label = "Strong"
    else:
        label = "Very Strong"
    return PasswordStrength(score=score, label=label)


def ensure_strong_password(
    password: str,
    confirm: Optional[str] = None,
    *,
    email: Optional[str] = None,
    firstname: Optional[str] = None,
    lastname: Optional[str] = None,
) -> PasswordStrength:
    """Raise WeakPasswordError listing all violations; return the strength otherwise."""

    violations = validate_password(
        password, confirm, email=email, firstname=firstname, lastname=lastname
    )
    strength = score_password(password)
    if violations:
        raise WeakPasswordError(violations, strength=strength.as_dict())
    return strength


class PasswordHasher:
    """argon2id hash-and-compare; the hash format is opaque to callers."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", reason="invalid_hash")
            return False


__all__ = [
    "COMMON_PASSWORDS",
    "PasswordHasher",
    "PasswordStrength",
    "ensure_strong_password",
    "score_password",
    "validate_password",
]
