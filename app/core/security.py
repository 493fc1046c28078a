import hashlib
from typing import Any

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="dropstrike-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_token(payload: dict[str, Any]) -> str:
    """Signed, timestamped token; used as the cookie value and as a Bearer token."""
    return get_session_serializer().dumps(payload)


def load_session_token(value: str, max_age_seconds: int | None = None) -> dict[str, Any] | None:
    max_age = max_age_seconds or get_settings().session_max_age_seconds
    try:
        payload = get_session_serializer().loads(value, max_age=max_age)
    except (BadSignature, SignatureExpired):
        return None
    return payload if isinstance(payload, dict) else None


class CredentialVerifier:
    """bcrypt password hashing. Blocking; call from a worker thread."""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        # bcrypt only looks at the first 72 bytes
        secret = password.encode("utf-8")[:72]
        return bcrypt.hashpw(secret, bcrypt.gensalt(rounds=self.rounds)).decode("ascii")

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("ascii"))
        except ValueError:
            return False
