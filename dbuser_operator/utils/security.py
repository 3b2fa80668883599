"""
Security utilities for credential generation.
"""
import secrets

from dbuser_operator.config.settings import settings

MIN_PASSWORD_LENGTH = 32


def generate_password(length: int = None) -> str:
    """
    Generate a cryptographically random password.

    The alphabet is URL-safe base64, so the password never needs quoting in
    connection URLs or shell environments.

    Args:
        length: Number of characters (default: settings.password_length, never below 32)

    Returns:
        Random password
    """
    length = max(length or settings.password_length, MIN_PASSWORD_LENGTH)
    # token_urlsafe(n) yields about 1.3 characters per byte
    return secrets.token_urlsafe(length)[:length]
