"""Random short code candidates.

``nanoid`` draws from ``os.urandom`` and rejects out-of-range bytes with a bit
mask, so every character is uniform over the alphabet. Collisions are rare
but possible, so candidates must still be checked against the store before use.
"""

from nanoid import generate

__all__ = ["ALPHABET", "DEFAULT_CODE_LENGTH", "generate_code"]

ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
DEFAULT_CODE_LENGTH = 6


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    if length < 1:
        raise ValueError(f"length must be positive, got {length!r}")
    return generate(ALPHABET, length)
