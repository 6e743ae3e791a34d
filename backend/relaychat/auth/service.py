"""Credential issuance and verification.

Bearer tokens are HS256 JWTs carrying ``userId`` and ``username``.
Passwords are stored as salted PBKDF2-SHA256 hashes in the form
``pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>``.
"""
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from relaychat.chat.models import Identity
from relaychat.config import get_config

PBKDF2_ITERATIONS = 240_000
_HASH_SCHEME = "pbkdf2_sha256"


class AuthenticationError(Exception):
    """Missing, invalid or expired credential presented at handshake."""


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{_HASH_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$")
    except ValueError:
        return False
    if scheme != _HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations)
    )
    return hmac.compare_digest(digest.hex(), digest_hex)


class CredentialService:
    """Issues and verifies bearer tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expire_days: int = 7,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_days = expire_days

    def issue_token(self, user_id: int, username: str) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "userId": user_id,
            "username": username,
            "iat": now,
            "exp": now + timedelta(days=self.expire_days),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: Optional[str]) -> Identity:
        """Resolve a bearer token to the identity it was issued for.

        Raises:
            AuthenticationError: If the token is missing, malformed or expired.
        """
        if not token:
            raise AuthenticationError("Authentication error: No token provided")
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Authentication error: Token expired") from e
        except jwt.PyJWTError as e:
            raise AuthenticationError("Authentication error: Invalid token") from e

        user_id = claims.get("userId")
        username = claims.get("username")
        if not isinstance(user_id, int) or not username:
            raise AuthenticationError("Authentication error: Invalid token")
        return Identity(userId=user_id, displayName=username)


def get_credential_service() -> CredentialService:
    """Build a CredentialService from the current configuration."""
    config = get_config()
    return CredentialService(
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
        expire_days=config.auth.token_expire_days,
    )
