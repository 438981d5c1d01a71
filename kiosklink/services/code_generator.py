"""Pairing code generation."""
import secrets

# No 0/O or 1/I, so codes can be read off a screen and typed without ambiguity
SAFE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 4


def generate_code(length: int = CODE_LENGTH) -> str:
    """Return a random pairing code, one uniform choice per character."""
    return "".join(secrets.choice(SAFE_CHARS) for _ in range(length))


def is_valid_code(code: str, length: int = CODE_LENGTH) -> bool:
    """Check that a code has the expected length and only safe characters."""
    return len(code) == length and all(c in SAFE_CHARS for c in code)
