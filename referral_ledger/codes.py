"""Referral code generation and format checks.

Codes are six characters: three digits followed by three uppercase letters,
e.g. ``"042QXZ"``. Generation is stateless; uniqueness is the caller's job.
"""
import re
import secrets
import string

CODE_PATTERN = re.compile(r"^[0-9]{3}[A-Z]{3}$")
CODE_LENGTH = 6


def generate_referral_code() -> str:
    digits = "".join(secrets.choice(string.digits) for _ in range(3))
    letters = "".join(secrets.choice(string.ascii_uppercase) for _ in range(3))
    return digits + letters


def is_valid_code(code: str) -> bool:
    # fullmatch so a trailing newline does not slip past "$"
    return isinstance(code, str) and CODE_PATTERN.fullmatch(code) is not None


def normalize_code(code: str) -> str:
    """Caller-side normalization applied before validation or lookup."""
    return code.strip().upper()
