"""Session identifier generation.

Keys are drawn from the operating system CSPRNG and encoded with the
URL-safe base64 alphabet so they can be written into a cookie as-is.
"""

import base64
import secrets

KEY_ENTROPY_BYTES = 33


class RandomnessError(RuntimeError):
    """Raised when the entropy source cannot supply random bytes."""


def new_key() -> str:
    """Return a fresh, unguessable session key (44 URL-safe characters)."""
    try:
        raw = secrets.token_bytes(KEY_ENTROPY_BYTES)
    except (OSError, NotImplementedError) as e:
        raise RandomnessError("unable to read from the system entropy source") from e
    return base64.urlsafe_b64encode(raw).decode("ascii")
