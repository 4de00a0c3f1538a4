"""Booking and user identifiers are ULIDs: 26 Crockford base32 characters."""

import ulid

# Canonical (uppercase) form as produced by generate_ulid
ULID_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def generate_ulid() -> str:
    return str(ulid.ULID())


def is_valid_ulid(value: str) -> bool:
    """True for any string the ulid library can parse, lowercase included."""
    try:
        ulid.ULID.from_str(value)
    except (ValueError, TypeError):
        return False
    return True
