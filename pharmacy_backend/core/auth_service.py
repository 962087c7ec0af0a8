"""
User registration, login and refresh-token rotation.

Access tokens are short-lived HS256 JWTs carrying the user id, email and
admin flag. Refresh tokens are opaque random strings stored in the
database; each refresh revokes the presented token and issues a new pair.
"""
import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt
import structlog
from sqlalchemy.exc import IntegrityError

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import RefreshToken, User, as_utc, utcnow
from pharmacy_backend.database.repositories import RefreshTokenRepository, UserRepository
from pharmacy_backend.domain.errors import AuthenticationError, ConflictError, ValidationError
from pharmacy_backend.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    """Identity decoded from an access token."""

    id: int
    email: str
    is_admin: bool = False


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user: Dict[str, Any]
    token_type: str = "bearer"


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def _public_user(user: User) -> Dict[str, Any]:
    return {"id": user.id, "name": user.name, "email": user.email, "is_admin": user.is_admin}


class AuthService:
    """Token issuance flow backed by the users and refresh_tokens tables."""

    def __init__(self, database: Database, settings: Optional[Settings] = None):
        self.database = database
        self.settings = settings or get_settings()

    def create_access_token(self, user: User) -> str:
        now = utcnow()
        claims = {
            "userId": user.id,
            "email": user.email,
            "isAdmin": user.is_admin,
            "iat": now,
            "exp": now + timedelta(minutes=self.settings.access_token_ttl_minutes),
            "type": "access",
        }
        return jwt.encode(claims, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def decode_access_token(self, token: str) -> CurrentUser:
        """
        Verify an access token.

        Raises:
            AuthenticationError: If the token is expired, malformed or not an access token
        """
        try:
            claims = jwt.decode(
                token, self.settings.jwt_secret, algorithms=[self.settings.jwt_algorithm]
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired", code="TOKEN_EXPIRED")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token", code="INVALID_TOKEN")

        if claims.get("type") != "access" or "userId" not in claims:
            raise AuthenticationError("Invalid token", code="INVALID_TOKEN")
        return CurrentUser(
            id=int(claims["userId"]),
            email=claims.get("email", ""),
            is_admin=bool(claims.get("isAdmin", False)),
        )

    async def _issue_tokens(self, refresh_tokens: RefreshTokenRepository, user: User) -> TokenPair:
        token = RefreshToken(
            token=secrets.token_hex(64),
            user_id=user.id,
            expires_at=utcnow() + timedelta(days=self.settings.refresh_token_ttl_days),
        )
        await refresh_tokens.add(token)
        return TokenPair(
            access_token=self.create_access_token(user),
            refresh_token=token.token,
            user=_public_user(user),
        )

    async def register(
        self, name: str, email: str, password: str, is_admin: bool = False
    ) -> Dict[str, Any]:
        """
        Create a user account.

        Raises:
            ValidationError: Missing name, email or password
            ConflictError: USER_EXISTS if the email is taken
        """
        email = (email or "").strip().lower()
        if not name or not email or not password:
            raise ValidationError("Name, email and password are required")

        password_hash = await asyncio.to_thread(
            hash_password, password, self.settings.bcrypt_rounds
        )
        try:
            async with self.database.transaction() as session:
                users = UserRepository(session)
                if await users.get_by_email(email) is not None:
                    raise ConflictError("User already exists", code="USER_EXISTS")
                user = await users.add(
                    User(name=name, email=email, password_hash=password_hash, is_admin=is_admin)
                )
        except IntegrityError as e:
            # Concurrent registration won the unique email index
            logger.warning("user_registration_conflict", error=str(e.orig))
            raise ConflictError("User already exists", code="USER_EXISTS") from e

        logger.info("user_registered", user_id=user.id, is_admin=is_admin)
        return _public_user(user)

    async def login(self, email: str, password: str) -> TokenPair:
        """
        Check credentials and issue a token pair.

        Raises:
            AuthenticationError: Unknown email or wrong password
        """
        email = (email or "").strip().lower()
        async with self.database.transaction() as session:
            user = await UserRepository(session).get_by_email(email)
            if user is None or not await asyncio.to_thread(
                check_password, password or "", user.password_hash
            ):
                logger.warning("login_failed")
                raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")
            pair = await self._issue_tokens(RefreshTokenRepository(session), user)

        logger.info("user_logged_in", user_id=user.id)
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Rotate a refresh token.

        Expired tokens are deleted on use.

        Raises:
            AuthenticationError: Unknown, revoked or expired token
        """
        expired = False
        async with self.database.transaction() as session:
            tokens = RefreshTokenRepository(session)
            stored = await tokens.get_by_token(refresh_token or "", for_update=True)
            if stored is None:
                raise AuthenticationError("Invalid refresh token", code="INVALID_TOKEN")
            if stored.is_revoked:
                raise AuthenticationError(
                    "Refresh token has been revoked", code="TOKEN_REVOKED"
                )
            if utcnow() > as_utc(stored.expires_at):
                await tokens.delete(stored)
                expired = True
            else:
                stored.is_revoked = True
                pair = await self._issue_tokens(tokens, stored.user)

        if expired:
            raise AuthenticationError("Refresh token expired", code="TOKEN_EXPIRED")
        logger.info("refresh_token_rotated", user_id=stored.user_id)
        return pair

    async def logout(self, refresh_token: str) -> None:
        async with self.database.transaction() as session:
            revoked = await RefreshTokenRepository(session).revoke(refresh_token)
        logger.info("refresh_token_revoked", revoked=revoked)

    async def cleanup_expired_tokens(self, now: Optional[datetime] = None) -> int:
        """Delete expired or revoked refresh tokens."""
        async with self.database.transaction() as session:
            deleted = await RefreshTokenRepository(session).purge(now or utcnow())
        metrics.record_refresh_tokens_purged(deleted)
        logger.info("refresh_tokens_cleaned_up", deleted=deleted)
        return deleted
