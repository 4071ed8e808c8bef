"""Share code generation and validation."""
from __future__ import annotations

import secrets

from sharecode.signaling.exceptions import InvalidShareCodeError

DEFAULT_CODE_LENGTH = 6


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Generate a random numeric share code.

    Leading zeros are allowed so every code of `length` digits is equally
    likely.

    Args:
        length: Number of digits.

    Returns:
        Share code string.

    Raises:
        ValueError: If `length` is not positive.
    """
    if length <= 0:
        raise ValueError(f'Code length must be positive, got {length}.')
    return ''.join(secrets.choice('0123456789') for _ in range(length))


def normalize_code(code: str, length: int = DEFAULT_CODE_LENGTH) -> str:
    """Validate a share code entered by a user.

    Surrounding whitespace is removed.

    Args:
        code: Share code as typed.
        length: Expected number of digits.

    Returns:
        The stripped share code.

    Raises:
        InvalidShareCodeError: If the code is not exactly `length` ASCII
            digits.
    """
    stripped = code.strip()
    if (
        len(stripped) != length
        or not stripped.isascii()
        or not stripped.isdigit()
    ):
        raise InvalidShareCodeError(
            f'Share code must be {length} digits, got {code!r}.',
        )
    return stripped
