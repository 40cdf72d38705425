from __future__ import annotations

import secrets
import string


PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!#$%&*+-=?@^_"
PASSWORD_LENGTH = 32
API_KEY_PREFIX = "sk_"
API_KEY_HEX_BYTES = 24
TOKEN_BYTES = 32
DEFAULT_HEX_BYTES = 32


def _generate_password() -> str:
    # Guarantee one character from each class so generated values pass common complexity rules.
    required = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice("!#$%&*+-=?@^_"),
    ]
    rest = [secrets.choice(PASSWORD_ALPHABET) for _ in range(PASSWORD_LENGTH - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_secret_value(secret_type: str | None) -> str:
    """Return a fresh random value shaped for the secret's category tag."""
    normalized = (secret_type or "").strip().lower()
    if "password" in normalized or "passphrase" in normalized:
        return _generate_password()
    if "api" in normalized and "key" in normalized:
        return API_KEY_PREFIX + secrets.token_hex(API_KEY_HEX_BYTES)
    if "token" in normalized:
        return secrets.token_urlsafe(TOKEN_BYTES)
    return secrets.token_hex(DEFAULT_HEX_BYTES)
