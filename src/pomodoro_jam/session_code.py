"""Session code generation."""

import secrets

# Uppercase letters and digits without look-alikes (0/O, 1/I/L)
SESSION_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
SESSION_CODE_LENGTH = 6


def generate_session_code(length: int = SESSION_CODE_LENGTH) -> str:
    """Generate a short code that participants type to join a session."""
    if length < 1:
        raise ValueError("Session code length must be positive")
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def normalize_session_code(code: str) -> str:
    """Normalize a typed session code (case and surrounding whitespace)."""
    return code.strip().upper()
