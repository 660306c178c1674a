"""
Secret Generator — random credential secrets and a coarse strength score.
"""
import re
import secrets
import string
from typing import Optional

from pydantic import BaseModel, Field

from ..exceptions import ConfigurationError

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


class SecretOptions(BaseModel):
    """Character classes and length for :func:`generate_secret`."""

    length: int = Field(default=16, ge=4, le=128)
    use_upper: bool = True
    use_lower: bool = True
    use_digits: bool = True
    use_symbols: bool = True

    def charset(self) -> str:
        """Union of the selected character classes."""
        chars = ""
        if self.use_lower:
            chars += LOWERCASE
        if self.use_upper:
            chars += UPPERCASE
        if self.use_digits:
            chars += DIGITS
        if self.use_symbols:
            chars += SYMBOLS
        return chars


def generate_secret(options: Optional[SecretOptions] = None) -> str:
    """Draw ``options.length`` characters uniformly from the selected classes.

    Returns an empty string when no class is selected; callers must treat
    that as a configuration error, never as a usable secret.
    """
    options = options or SecretOptions()
    charset = options.charset()
    if not charset:
        return ""
    return "".join(secrets.choice(charset) for _ in range(options.length))


def require_secret(options: Optional[SecretOptions] = None) -> str:
    """Like :func:`generate_secret` but raise when no class is selected."""
    secret = generate_secret(options)
    if not secret:
        raise ConfigurationError(
            "At least one character class must be selected"
        )
    return secret


_STRENGTH_LABELS = (
    (5, "Very Strong"),
    (4, "Strong"),
    (3, "Medium"),
    (2, "Weak"),
)


def secret_strength(secret: str) -> tuple[int, str]:
    """Score a secret from 0 to 6 and label it.

    Length earns up to two points (>= 12 chars) and each character class
    present earns one.
    """
    if not secret:
        return 0, "None"
    score = 0
    if len(secret) >= 12:
        score += 2
    elif len(secret) >= 8:
        score += 1
    for pattern in (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^A-Za-z0-9]"):
        if re.search(pattern, secret):
            score += 1
    for threshold, label in _STRENGTH_LABELS:
        if score >= threshold:
            return score, label
    return score, "Very Weak"
