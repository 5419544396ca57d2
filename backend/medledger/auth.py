"""Credential collaborators: bearer token verification and the external identity provider."""
from __future__ import annotations

import asyncio
import hmac
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from hashlib import pbkdf2_hmac, sha256
from typing import Optional
from uuid import uuid4

import jwt

from .clock import Clock, system_clock
from .errors import AuthInvalidError, AuthRequiredError, ConflictError, InternalError, NotFoundError


TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class VerifiedIdentity:
    uid: str
    email: str


def parse_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthRequiredError("Authorization header is required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthInvalidError("Invalid authorization header")
    return token.strip()


def sign_request(
    secret: str, method: str, url: str, request_id: str, uid: Optional[str], body: str = ""
) -> str:
    """HMAC-SHA256 over ``METHOD:url:request_id:uid:body``; anonymous callers sign as ``anonymous``."""

    message = ":".join([method.upper(), url, request_id, uid or "anonymous", body])
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), sha256).hexdigest()


class TokenVerifier:
    """Verifies HS256 identity tokens whose ``sub`` is the uid."""

    def __init__(self, secret: Optional[str], clock: Clock = system_clock) -> None:
        self.secret = secret
        self.clock = clock

    def _require_secret(self) -> str:
        if not self.secret:
            raise InternalError(
                "Token verification secret is missing. Set MEDLEDGER_TOKEN_SECRET."
            )
        return self.secret

    def issue(self, uid: str, email: str, ttl: timedelta = timedelta(hours=1)) -> str:
        now = self.clock()
        payload = {"sub": uid, "email": email, "iat": now, "exp": now + ttl}
        return jwt.encode(payload, self._require_secret(), algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> VerifiedIdentity:
        secret = self._require_secret()
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["sub", "exp"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as error:
            raise AuthInvalidError("Invalid or expired authentication token") from error
        # Expiry is checked against the injected clock, not the host clock.
        if int(claims["exp"]) <= int(self.clock().timestamp()):
            raise AuthInvalidError("Invalid or expired authentication token")
        email = claims.get("email")
        if not email:
            raise AuthInvalidError("Authenticated user has no email")
        return VerifiedIdentity(uid=str(claims["sub"]), email=str(email).lower())


class IdentityProvider(ABC):
    """External account system that issues credentials for new patients."""

    @abstractmethod
    async def create_user(self, email: str, password: str, display_name: str) -> str:
        ...

    @abstractmethod
    async def delete_user(self, uid: str) -> None:
        ...


@dataclass
class _Account:
    uid: str
    email: str
    display_name: str
    password_hash: str
    salt: str


class InMemoryIdentityProvider(IdentityProvider):
    """Keeps salted PBKDF2 password hashes in process memory."""

    def __init__(self) -> None:
        self._accounts: dict[str, _Account] = {}
        self._lock = threading.Lock()

    def _hash_password(self, password: str) -> tuple[str, str]:
        salt_bytes = secrets.token_bytes(16)
        digest = pbkdf2_hmac("sha256", password.encode("utf-8"), salt_bytes, 480_000)
        return digest.hex(), salt_bytes.hex()

    def _hash_with_salt(self, password: str, salt_hex: str) -> str:
        salt_bytes = bytes.fromhex(salt_hex)
        return pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt_bytes, 480_000
        ).hex()

    async def create_user(self, email: str, password: str, display_name: str) -> str:
        normalized = email.strip().lower()
        password_hash, salt = await asyncio.to_thread(self._hash_password, password)
        with self._lock:
            if any(account.email == normalized for account in self._accounts.values()):
                raise ConflictError("Email is already registered.")
            uid = uuid4().hex
            self._accounts[uid] = _Account(
                uid=uid,
                email=normalized,
                display_name=display_name,
                password_hash=password_hash,
                salt=salt,
            )
        return uid

    async def delete_user(self, uid: str) -> None:
        with self._lock:
            if self._accounts.pop(uid, None) is None:
                raise NotFoundError("Identity not found")

    def authenticate(self, email: str, password: str) -> Optional[str]:
        normalized = email.strip().lower()
        account = next(
            (item for item in self._accounts.values() if item.email == normalized), None
        )
        if account is None:
            return None
        digest = self._hash_with_salt(password, account.salt)
        if secrets.compare_digest(digest, account.password_hash):
            return account.uid
        return None

    def __contains__(self, uid: str) -> bool:
        return uid in self._accounts
