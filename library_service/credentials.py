"""Password hashing and session token generation.

Passwords are hashed with bcrypt at a fixed cost factor; verification is
delegated to ``bcrypt.checkpw``. Session tokens are random UUID4 strings and
carry no decodable structure.
"""

import uuid

import bcrypt

from library_service.errors import BadRequest, ServiceError

DEFAULT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes of a secret.
MAX_PASSWORD_BYTES = 72


def hash_password(password: str, rounds: int = DEFAULT_ROUNDS) -> str:
    secret = password.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        raise BadRequest("Password is too long")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(secret, salt).decode("utf-8")


def verify_password(password: str, digest: str) -> bool:
    """Return True if ``password`` matches the stored bcrypt ``digest``."""
    secret = password.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(secret, digest.encode("utf-8"))
    except ValueError as e:
        raise ServiceError("Authentication error") from e


def new_token() -> str:
    return str(uuid.uuid4())
