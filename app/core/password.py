"""
Password Service for the ERP API.

Peppered bcrypt hashing, policy validation, strength estimation,
secure password generation and reset tokens.

The pepper is a process-wide secret from settings; it is appended to the
plaintext before hashing and before verification and is never stored
with the hash.

Usage:
    from app.core.password import PasswordService

    passwords = PasswordService(pepper=settings.password_pepper, cost=12)
    record = passwords.hash("Str0ng!Pass2024")
    assert passwords.verify("Str0ng!Pass2024", record)
"""

import asyncio
import base64
import hashlib
import logging
import re
import secrets
import string
from dataclasses import dataclass, field

import bcrypt

logger = logging.getLogger(__name__)

BCRYPT_MIN_COST = 4
BCRYPT_MAX_COST = 31
BCRYPT_DEFAULT_COST = 12

# Hard ceiling for plaintexts regardless of policy
MAX_PASSWORD_LENGTH = 128

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SYMBOL = re.compile(r"""[!@#$%^&*()_+\-=\[\]{};':"\\|,.<>/?]""")

_GENERATOR_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
_GENERATOR_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits + _GENERATOR_SYMBOLS

COMMON_PASSWORDS = frozenset({
    "password", "123456", "password123", "admin", "qwerty",
    "letmein", "welcome", "monkey", "1234567890", "password1",
    "abc123", "111111", "123123", "123456789", "iloveyou",
    "adobe123", "123123123", "sunshine", "princess", "azerty",
    "trustno1", "000000", "access", "master", "michael1",
    "ninja", "ashley", "bailey", "passw0rd", "121212",
    "shadow", "chelsea", "ghost", "991112", "jordan",
    "tigger", "ranger", "justin", "michelle", "112233",
    "soccer", "harley", "jennifer", "computer", "killer",
    "zxcvbnm", "robert", "thomas", "hunter", "boston",
    "football", "batman", "andrew", "tiffany", "jessica",
    "michael", "matthew", "daniel", "welcome123", "patricia",
})

# Near-common rules: substrings, suffixes and prefixes seen in breach lists
COMMON_SUBSTRINGS = ("password", "123456", "qwerty", "admin")
COMMON_SUFFIXES = ("123", "1")
COMMON_PREFIXES = ("123", "password")

STRENGTH_LABELS = {
    0: "Very Weak",
    1: "Weak",
    2: "Fair",
    3: "Good",
    4: "Strong",
}


class PasswordPolicyError(ValueError):
    """Plaintext rejected by the password policy."""

    def __init__(self, violations: list[str]):
        self.violations = violations
        super().__init__("password validation failed: " + ", ".join(violations))


@dataclass
class PasswordPolicy:
    min_length: int = 8
    max_length: int = MAX_PASSWORD_LENGTH
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_symbol: bool = True
    common_passwords: frozenset[str] = field(default_factory=lambda: COMMON_PASSWORDS)

    def __post_init__(self):
        if self.min_length < 1:
            raise ValueError("min_length must be at least 1")
        if self.max_length > MAX_PASSWORD_LENGTH:
            raise ValueError(f"max_length cannot exceed {MAX_PASSWORD_LENGTH}")
        if self.max_length < self.min_length:
            raise ValueError("max_length must not be below min_length")


def is_common_password(password: str, common: frozenset[str] = COMMON_PASSWORDS) -> bool:
    """Exact match against the deny list, or a near-common variant."""
    lowered = password.lower()
    if lowered in common:
        return True
    if any(s in lowered for s in COMMON_SUBSTRINGS):
        return True
    return lowered.endswith(COMMON_SUFFIXES) or lowered.startswith(COMMON_PREFIXES)


def character_classes(password: str) -> int:
    return sum(
        1 for pattern in (_UPPER, _LOWER, _DIGIT, _SYMBOL) if pattern.search(password)
    )


def clamp_cost(cost: int) -> int:
    return max(BCRYPT_MIN_COST, min(BCRYPT_MAX_COST, int(cost)))


class PasswordService:
    """Hashing, verification and policy checks for user passwords."""

    def __init__(
        self,
        pepper: str,
        policy: PasswordPolicy | None = None,
        cost: int = BCRYPT_DEFAULT_COST,
    ):
        self._pepper = pepper
        self.policy = policy or PasswordPolicy()
        self.cost = clamp_cost(cost)
        if self.cost != cost:
            logger.warning("bcrypt cost %s out of range, clamped to %s", cost, self.cost)

    # -------------------------------------------------------------------------
    # Hashing
    # -------------------------------------------------------------------------

    def _peppered(self, password: str) -> bytes:
        # bcrypt reads at most 72 bytes; digest first so the pepper always counts
        digest = hashlib.sha256((password + self._pepper).encode("utf-8")).digest()
        return base64.b64encode(digest)

    def hash(self, password: str) -> str:
        """Validate against policy, then hash. Raises PasswordPolicyError."""
        violations = self.validate(password)
        if violations:
            raise PasswordPolicyError(violations)
        salt = bcrypt.gensalt(rounds=self.cost)
        return bcrypt.hashpw(self._peppered(password), salt).decode("ascii")

    def verify(self, password: str, record: str) -> bool:
        """Constant-time check of password against a stored record."""
        if not record:
            return False
        try:
            return bcrypt.checkpw(self._peppered(password), record.encode("ascii"))
        except (ValueError, UnicodeEncodeError):
            logger.warning("Malformed password record rejected")
            return False

    def needs_rehash(self, record: str) -> bool:
        """True when the record was produced with a different cost."""
        try:
            return int(record.split("$")[2]) != self.cost
        except (IndexError, ValueError):
            return True

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password: str, record: str) -> bool:
        return await asyncio.to_thread(self.verify, password, record)

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def validate(self, password: str) -> list[str]:
        """Return every policy violation (empty list = acceptable)."""
        policy = self.policy
        violations: list[str] = []

        if len(password) < policy.min_length:
            violations.append(f"password must be at least {policy.min_length} characters long")
        if len(password) > policy.max_length:
            violations.append(f"password must be no more than {policy.max_length} characters long")
        if policy.require_upper and not _UPPER.search(password):
            violations.append("password must contain at least one uppercase letter")
        if policy.require_lower and not _LOWER.search(password):
            violations.append("password must contain at least one lowercase letter")
        if policy.require_digit and not _DIGIT.search(password):
            violations.append("password must contain at least one number")
        if policy.require_symbol and not _SYMBOL.search(password):
            violations.append("password must contain at least one special character")
        if is_common_password(password, policy.common_passwords):
            violations.append("password is too common, please choose a stronger one")

        return violations

    def is_valid(self, password: str) -> bool:
        return not self.validate(password)

    def strength(self, password: str) -> int:
        """
        Score 0..4: one point per length tier (8, 12, 16) and one for
        three or more character classes. Common passwords always score 0.
        """
        if is_common_password(password, self.policy.common_passwords):
            return 0

        score = sum(1 for tier in (8, 12, 16) if len(password) >= tier)
        if character_classes(password) >= 3:
            score += 1
        return min(score, 4)

    @staticmethod
    def strength_label(score: int) -> str:
        return STRENGTH_LABELS.get(score, "Unknown")

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(self, length: int = 16) -> str:
        """Random password of the given length (clamped to policy) that passes policy."""
        policy = self.policy
        required = sum((policy.require_upper, policy.require_lower, policy.require_digit, policy.require_symbol))
        length = max(policy.min_length, required, min(policy.max_length, length))
        while True:
            candidate = "".join(secrets.choice(_GENERATOR_ALPHABET) for _ in range(length))
            if self.is_valid(candidate):
                return candidate

    @staticmethod
    def generate_reset_token() -> str:
        """32 random bytes, base64url encoded."""
        return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")
