from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from devconnect.config import Settings
from devconnect.logging import get_logger
from devconnect.service.errors import (
    InvalidCredential,
    NoCredential,
    NotFoundError,
    StaleCredential,
    ValidationError,
)
from devconnect.service.sessions import SessionRegistry
from devconnect.service.tokens import (
    Identity,
    IssuedToken,
    TokenIssuer,
    TokenVerificationError,
)
from devconnect.storage.errors import DuplicateEntry
from devconnect.storage.models import User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self, username: str, email: str, *, avatar_url: Optional[str] = None
    ) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class RequestAuthenticator:
    """Resolves the caller of an HTTP request from its bearer token.

    A token is accepted only when it verifies *and* is the exact token the
    session registry currently holds for its user.
    """

    def __init__(self, tokens: TokenIssuer, sessions: SessionRegistry) -> None:
        self.tokens = tokens
        self.sessions = sessions

    async def authenticate(self, authorization: Optional[str]) -> Identity:
        token = extract_bearer(authorization)
        if not token:
            raise NoCredential()
        try:
            claims = self.tokens.verify(token)
        except TokenVerificationError as exc:
            logger.info("auth_token_rejected", reason=str(exc))
            raise InvalidCredential(error=str(exc))
        identity = self.tokens.identity_from_claims(claims)
        stored = await self.sessions.get(identity.id)
        if stored is None or stored != token:
            logger.info(
                "auth_session_stale",
                user_id=identity.id,
                registered=stored is not None,
            )
            raise StaleCredential()
        return identity


@dataclass
class AuthResult:
    user: User
    issued: IssuedToken


class AuthService:
    """Signup, login and logout against the credential store and session registry."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenIssuer,
        sessions: SessionRegistry,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    async def signup(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
    ) -> AuthResult:
        if not username or not email or not password:
            raise ValidationError("All fields are required")
        if self.store.find_user(username=username, email=email):
            raise ValidationError("User already exists")
        try:
            user = self.store.create_user(
                username, email, avatar_url=self.settings.default_avatar_url
            )
        except DuplicateEntry as exc:
            # lost a race with a concurrent signup
            raise ValidationError("User already exists", error=exc.message)
        self.save_password(user.id, password)
        issued = await self.tokens.issue(Identity(id=user.id, username=user.username))
        self.logger.info("user_signed_up", user_id=user.id)
        return AuthResult(user=user, issued=issued)

    async def login(self, email: Optional[str], password: Optional[str]) -> AuthResult:
        if not email or not password:
            raise ValidationError("All fields are required")
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found")
        if not self.verify_password(user.id, password):
            raise ValidationError("Invalid credentials")
        issued = await self.tokens.issue(Identity(id=user.id, username=user.username))
        self.logger.info("user_logged_in", user_id=user.id)
        return AuthResult(user=user, issued=issued)

    async def logout(self, identity: Identity) -> None:
        await self.sessions.delete(identity.id)
        self.logger.info("user_logged_out", user_id=identity.id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
