"""Identifier parsing and human-readable reference numbers."""

import secrets
import string
from uuid import UUID

from .exceptions import NotFoundError

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def parse_uuid(value: str, resource_type: str) -> UUID:
    """
    Parse an identifier taken from a request body.

    A malformed id cannot name an existing row, so it is reported as not found.
    """
    try:
        return UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise NotFoundError(resource_type=resource_type, resource_id=str(value))


def generate_reference(prefix: str, length: int = 10) -> str:
    """Generate a random reference such as BK7Q2M9XK4TA."""
    return prefix + ''.join(secrets.choice(REFERENCE_ALPHABET) for _ in range(length))
