import secrets
import string


ID_ALPHABET = string.ascii_letters + string.digits


def generate_id(length: int = 8) -> str:
    """Return a short URL-safe identifier drawn from a CSPRNG."""

    return "".join(secrets.choice(ID_ALPHABET) for _ in range(max(int(length), 1)))


def generate_secret(length: int = 32) -> str:
    """Return a high-entropy secret for delete keys, API keys and tokens."""

    return generate_id(length)
