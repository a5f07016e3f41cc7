"""Invite code format: XXX-XXX-XXX over an alphabet without 0/O/1/I."""

import secrets
from typing import Optional

from biensperience.core.errors import ValidationError

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SEGMENTS = 3
SEGMENT_LENGTH = 3


def generate_code() -> str:
    return "-".join(
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(SEGMENT_LENGTH))
        for _ in range(SEGMENTS)
    )


def normalize_code(code: Optional[str]) -> str:
    """Trim and upper-case a user-supplied code. Empty input is rejected."""
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Invite code is required", field="code")
    return normalized
