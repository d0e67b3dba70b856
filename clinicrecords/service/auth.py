from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol

from clinicrecords.logging import get_logger
from clinicrecords.service.credentials import generate_key, pin_credential, validate_pin
from clinicrecords.service.errors import (
    AccountLockedError,
    AuthenticationError,
    EmailTakenError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
)
from clinicrecords.service.tokens import (
    Claims,
    TokenConfig,
    TokenType,
    generate_tokens,
    issue_token,
    validate_token,
)
from clinicrecords.storage.errors import ConstraintViolation
from clinicrecords.storage.models import Role, Session, User, utcnow

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=24)
DEFAULT_PIN = "0000"


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def update_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def update_session(self, session: Session) -> Session: ...

    def delete_session(self, session_id: str) -> bool: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, token: str) -> Optional[Session]: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


class AuthStore(UserStore, SessionStore, Protocol):
    pass


@dataclass
class LoginResult:
    user: User
    access_token: str
    session_id: str


class AuthService:
    """Registration, key+PIN login and bearer-token checks.

    Argon2 work runs in a worker thread via ``asyncio.to_thread``; the store is
    only touched before and after, never while a digest is being computed.
    """

    def __init__(
        self,
        store: AuthStore,
        token_config: TokenConfig,
        *,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        default_pin: str = DEFAULT_PIN,
    ) -> None:
        self.store = store
        self.token_config = token_config
        self.session_ttl = session_ttl
        self.default_pin = validate_pin(default_pin)
        self.logger = logger

    async def create_user(self, email: str, name: str, role: Role | str) -> tuple[User, str]:
        """Register a user and return it with the plaintext key (shown once)."""
        user = User.new(email=email, name=name, role=Role(role))
        key, key_cred = await asyncio.to_thread(generate_key)
        # TODO: replace the shared default PIN once a PIN-change endpoint exists
        pin_cred = await asyncio.to_thread(pin_credential, self.default_pin)
        user.set_key_credential(key_cred)
        user.set_pin_credential(pin_cred)
        try:
            stored = self.store.create_user(user)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                self.logger.info("registration_email_taken")
                raise EmailTakenError(email) from exc
            raise ServerError("failed to create user", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=stored.id, role=stored.role.value)
        return stored, key

    async def login(
        self,
        email: str,
        key: str,
        pin: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("login_failed", reason="unknown_email", ip_address=ip_address)
            raise InvalidCredentialsError()

        # A locked account never reaches the hash comparison
        if user.is_locked():
            self.logger.info("login_rejected_locked", user_id=user.id, ip_address=ip_address)
            raise AccountLockedError()

        valid = await asyncio.to_thread(user.validate_credentials, key, pin)
        if not valid:
            user.record_failed_attempt()
            self._persist_user(user)
            if user.is_locked():
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_attempts=user.failed_attempts,
                    locked_until=user.locked_until.isoformat() if user.locked_until else None,
                )
                raise AccountLockedError()
            self.logger.info(
                "login_failed",
                reason="bad_credentials",
                user_id=user.id,
                failed_attempts=user.failed_attempts,
            )
            raise InvalidCredentialsError()

        session = Session.new(
            user_id=user.id,
            user_agent=user_agent,
            ip_address=ip_address,
            expires_at=utcnow() + self.session_ttl,
        )
        try:
            # The refresh token is stored on the session but not returned to the caller
            access_token, _ = generate_tokens(session, user, self.token_config)
        except ValueError as exc:
            self.logger.error("token_signing_failed", user_id=user.id, error=str(exc))
            raise ServerError("failed to generate tokens") from exc
        try:
            self.store.create_session(session)
        except ConstraintViolation as exc:
            raise ServerError("failed to create session", detail=exc.detail) from exc

        user.record_login()
        user = self._persist_user(user)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, access_token=access_token, session_id=session.id)

    def _persist_user(self, user: User) -> User:
        try:
            return self.store.update_user(user)
        except ConstraintViolation as exc:
            raise ServerError("failed to update user", detail=exc.detail) from exc

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def unlock_user(self, user_id: str) -> User:
        """Explicitly clear the failure counter and any lock."""
        user = self.get_user(user_id)
        user.reset_failed_attempts()
        self.logger.info("user_unlocked", user_id=user_id)
        return self._persist_user(user)

    async def refresh_access_token(
        self, refresh_token: str, *, ttl: Optional[timedelta] = None
    ) -> str:
        """Extend the session bound to ``refresh_token`` and mint a new access token."""
        claims = validate_token(
            refresh_token,
            TokenType.REFRESH,
            self.token_config.refresh_secret,
            issuer=self.token_config.issuer,
        )
        session = self.store.get_session_by_refresh_token(refresh_token)
        if session is None or session.user_id != claims.user_id:
            raise InvalidTokenError("no session for refresh token")
        if session.is_expired():
            self.store.delete_session(session.id)
            raise InvalidTokenError("session expired")
        user = self.store.get_user(session.user_id)
        if user is None:
            raise InvalidTokenError("session user no longer exists")

        session.refresh(ttl or self.session_ttl)
        try:
            self.store.update_session(session)
        except ConstraintViolation as exc:
            raise ServerError("failed to refresh session", detail=exc.detail) from exc
        self.logger.info("session_refreshed", user_id=user.id, session_id=session.id)
        return issue_token(
            TokenType.ACCESS,
            user,
            self.token_config.access_secret,
            self.token_config.access_ttl,
            self.token_config.issuer,
        )

    def revoke_session(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)

    def purge_expired_sessions(self) -> int:
        return self.store.delete_expired_sessions()

    @staticmethod
    def extract_bearer(header: Optional[str]) -> str:
        if not header:
            raise AuthenticationError("missing authorization header")
        parts = header.split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            raise AuthenticationError("invalid authorization header")
        return parts[1]

    def authenticate(self, authorization: Optional[str]) -> Claims:
        """Resolve an ``Authorization`` header into access-token claims."""
        token = self.extract_bearer(authorization)
        return validate_token(
            token,
            TokenType.ACCESS,
            self.token_config.access_secret,
            issuer=self.token_config.issuer,
        )

    @staticmethod
    def require_role(claims: Claims, allowed: Iterable[Role | str]) -> Claims:
        allowed_values = {getattr(role, "value", role) for role in allowed}
        if claims.role not in allowed_values:
            raise ForbiddenError(
                "insufficient permissions", detail={"required": sorted(allowed_values)}
            )
        return claims


__all__ = [
    "UserStore",
    "SessionStore",
    "AuthStore",
    "LoginResult",
    "AuthService",
    "DEFAULT_SESSION_TTL",
    "DEFAULT_PIN",
]
