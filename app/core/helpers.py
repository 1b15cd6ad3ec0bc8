"""
Helper functions for common infrastructure operations.

This module provides domain-agnostic utility functions for:
- Token generation (cryptographic)
- UUID validation
- Masking of sensitive identifiers for logs

Usage:
    from core.helpers import generate_token, mask_identifier

    suffix = generate_token(8)
    logger.info("Transfer sent", extra={"account": mask_identifier(account)})
"""

from __future__ import annotations

import secrets
import string
import uuid

_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token(length: int = 8) -> str:
    """
    Generate a cryptographically secure random alphanumeric token.

    Args:
        length: Number of characters

    Returns:
        Random string drawn from [A-Za-z0-9]

    Example:
        generate_token(8)  # "aZ3kP0qL"
    """
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def validate_uuid(value: str) -> bool:
    """
    Check if string is a valid UUID.

    Example:
        is_valid = validate_uuid("550e8400-e29b-41d4-a716-446655440000")  # True
    """
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, TypeError):
        return False


def mask_identifier(value: str | None, visible: int = 4) -> str:
    """
    Mask all but the last `visible` characters of an identifier.

    Used for bank account numbers and credential references in logs.

    Example:
        mask_identifier("1234567890")  # "******7890"
    """
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
