"""
Primitives shared by the code issuer and verifier: secure code generation,
constant-time comparison and identity-key normalization.
"""
import hmac
import re
import secrets
import uuid

from foodiemap.core.errors import ValidationError
from foodiemap.models.verification_code import CodePurpose

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MAX_IDENTITY_KEY_LENGTH = 255


def generate_numeric_code(length: int = 6) -> str:
    """Zero-padded numeric code drawn from the OS CSPRNG."""
    if length < 4 or length > 12:
        raise ValueError("code length must be between 4 and 12 digits")
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def codes_match(expected: str, submitted: str) -> bool:
    return hmac.compare_digest(
        (expected or "").encode("utf-8"),
        (submitted or "").encode("utf-8"),
    )


def coerce_purpose(purpose) -> CodePurpose:
    try:
        return CodePurpose(purpose)
    except ValueError:
        raise ValidationError(f"Unknown code purpose: {purpose!r}", field="purpose")


def normalize_identity_key(identity_key) -> str:
    """
    An identity key is either an e-mail address or an account id (UUID).
    E-mails are case-folded so that 'A@x.com' and 'a@x.com' share one code.
    """
    if isinstance(identity_key, uuid.UUID):
        return str(identity_key)
    if not isinstance(identity_key, str):
        raise ValidationError("Identity key must be a string", field="identity_key")

    key = identity_key.strip()
    if not key or len(key) > MAX_IDENTITY_KEY_LENGTH:
        raise ValidationError("Identity key is empty or too long", field="identity_key")

    if "@" in key:
        if not EMAIL_PATTERN.match(key):
            raise ValidationError("Invalid e-mail address", field="identity_key")
        return key.lower()

    try:
        return str(uuid.UUID(key))
    except ValueError:
        raise ValidationError("Identity key must be an e-mail or account id", field="identity_key")
