from __future__ import annotations

import asyncio
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from klearkarma.config import Settings
from klearkarma.logging import get_logger
from klearkarma.service.authz import Subject, default_permissions
from klearkarma.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from klearkarma.service.passwords import CredentialHasher
from klearkarma.service.tokens import (
    MalformedTokenError,
    TokenError,
    TokenKind,
    TokenService,
)
from klearkarma.storage.errors import ConstraintViolation
from klearkarma.storage.models import (
    SELF_SERVICE_ROLES,
    USERS,
    Role,
    User,
    email_key,
    refresh_key,
)
from klearkarma.storage.records import RecordStore

logger = get_logger(__name__)

AUTH_REQUIRED = "authentication required"
INVALID_TOKEN = "invalid or expired token"


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


def _used_token_key(jti: str) -> str:
    return f"used_token:{jti}"


class AuthService:
    """Registration, login, token rotation and request authentication."""

    def __init__(
        self,
        records: RecordStore,
        tokens: TokenService,
        hasher: CredentialHasher,
        settings: Settings,
    ) -> None:
        self.records = records
        self.tokens = tokens
        self.hasher = hasher
        self.settings = settings
        self.logger = logger

    # -- helpers --

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def _hash_password(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, user: User, password: str) -> bool:
        return await asyncio.to_thread(
            self.hasher.verify, password, user.password_hash, user.password_algo
        )

    async def _issue_session(self, user: User) -> Dict[str, Any]:
        pair = self.tokens.issue_pair(user)
        # Overwriting the single refresh record invalidates any earlier refresh token
        await self.records.put_raw(
            refresh_key(user.id),
            pair["refresh_token"],
            ttl_seconds=self.tokens.config.ttl_seconds[TokenKind.REFRESH],
        )
        return pair

    async def _verify_or_401(
        self, token: str, kind: TokenKind, *, message: str = INVALID_TOKEN
    ) -> Dict[str, Any]:
        try:
            return self.tokens.verify(token, expected_kind=kind)
        except TokenError as exc:
            self.logger.warning(
                "token_rejected",
                expected_kind=kind.value,
                reason=exc.reason,
                malformed=isinstance(exc, MalformedTokenError),
            )
            raise AuthenticationError(message) from exc

    async def get_user(self, user_id: str) -> User:
        user = await self.records.get(USERS, user_id)
        if not user:
            raise NotFoundError.resource("user", user_id)
        return user

    async def get_user_by_email(self, email: str) -> Optional[User]:
        user_id = await self.records.get_raw(email_key(email))
        if not user_id:
            return None
        user = await self.records.get(USERS, user_id)
        if user is None:
            # pointer left behind by a partial write; treat as absent
            self.logger.warning("email_pointer_dangling", email_hash=_email_hash(email))
        return user

    # -- flows --

    async def register(
        self,
        *,
        email: str,
        password: str,
        full_name: str,
        role: Role = Role.USER,
        phone: Optional[str] = None,
    ) -> Tuple[User, Dict[str, Any], str]:
        """Create a user and return it with a token pair and an email verification token."""
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        role = Role(role)
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError(
                "role not available for registration", detail={"role": role.value}
            )
        email = email.strip().lower()
        if await self.records.get_raw(email_key(email)) is not None:
            raise ConflictError("user already exists", detail={"field": "email"})
        pwd_hash, algo = await self._hash_password(password)
        user = User(
            email=email,
            full_name=full_name,
            role=role,
            permissions=default_permissions(role),
            password_hash=pwd_hash,
            password_algo=algo,
            phone=phone,
        )
        try:
            await self.records.claim_raw(email_key(email), user.id)
        except ConstraintViolation as exc:
            raise ConflictError("user already exists", detail={"field": "email"}) from exc
        await self.records.insert(USERS, user)
        tokens = await self._issue_session(user)
        verification = self.tokens.issue_email_verification(user.id, user.email)
        self.logger.info("user_registered", user_id=user.id, role=role.value)
        return user, tokens, verification

    async def login(self, email: str, password: str) -> Tuple[User, Dict[str, Any]]:
        user = await self.get_user_by_email(email)
        if not user or not await self._verify_password(user, password):
            self.logger.info("login_failed", email_hash=_email_hash(email.strip().lower()))
            raise AuthenticationError("invalid credentials")
        if not user.active:
            self.logger.info("login_inactive_user", user_id=user.id)
            raise AuthenticationError("account is deactivated")

        changes: Dict[str, Any] = {"last_login": self._now()}
        if self.hasher.needs_rehash(user.password_hash, user.password_algo):
            changes["password_hash"], changes["password_algo"] = await self._hash_password(
                password
            )
            self.logger.info("password_rehashed", user_id=user.id, algo=changes["password_algo"])
        updated = user.touched(**changes)
        await self.records.put(USERS, updated, previous=user)
        tokens = await self._issue_session(updated)
        self.logger.info("login_succeeded", user_id=user.id)
        return updated, tokens

    async def refresh(self, refresh_token: str) -> Tuple[User, Dict[str, Any]]:
        """Rotate: the presented token must byte-match the stored one."""
        payload = await self._verify_or_401(refresh_token, TokenKind.REFRESH)
        user_id = payload["sub"]
        stored = await self.records.get_raw(refresh_key(user_id))
        if stored is None or not hmac.compare_digest(stored.encode(), refresh_token.encode()):
            self.logger.warning("refresh_token_stale", user_id=user_id)
            raise AuthenticationError(INVALID_TOKEN)
        user = await self.records.get(USERS, user_id)
        if not user or not user.active:
            self.logger.warning("refresh_subject_unavailable", user_id=user_id)
            raise AuthenticationError(INVALID_TOKEN)
        tokens = await self._issue_session(user)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return user, tokens

    async def logout(self, subject: Subject) -> None:
        await self.records.delete_raw(refresh_key(subject.user_id))
        self.logger.info("logout", user_id=subject.user_id)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Reset token for an active account, or None. Callers must not reveal which."""
        user = await self.get_user_by_email(email)
        if not user or not user.active:
            self.logger.info(
                "password_reset_unknown_email", email_hash=_email_hash(email.strip().lower())
            )
            return None
        token = self.tokens.issue_password_reset(user.id)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> User:
        payload = await self._verify_or_401(token, TokenKind.PASSWORD_RESET)
        jti = payload.get("jti")
        if not jti or await self.records.get_raw(_used_token_key(jti)) is not None:
            self.logger.warning("password_reset_token_reused", user_id=payload["sub"])
            raise AuthenticationError(INVALID_TOKEN)
        user = await self.records.get(USERS, payload["sub"])
        if not user or not user.active:
            raise AuthenticationError(INVALID_TOKEN)
        pwd_hash, algo = await self._hash_password(new_password)
        updated = user.touched(password_hash=pwd_hash, password_algo=algo)
        await self.records.put(USERS, updated, previous=user)
        remaining = max(int(payload["exp"] - self.tokens.now()), 1)
        await self.records.put_raw(_used_token_key(jti), user.id, ttl_seconds=remaining)
        await self.records.delete_raw(refresh_key(user.id))
        self.logger.info("password_reset_completed", user_id=user.id)
        return updated

    async def request_email_verification(self, subject: Subject) -> str:
        user = await self.get_user(subject.user_id)
        if user.verified:
            raise ConflictError("email already verified")
        token = self.tokens.issue_email_verification(user.id, user.email)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> User:
        payload = await self._verify_or_401(token, TokenKind.EMAIL_VERIFICATION)
        user = await self.records.get(USERS, payload["sub"])
        if not user:
            # account deleted after the token was issued
            raise AuthenticationError(INVALID_TOKEN)
        if payload.get("email") != user.email:
            # address changed after the token was issued
            raise AuthenticationError(INVALID_TOKEN)
        if user.verified:
            raise ConflictError("email already verified")
        updated = user.touched(verified=True)
        await self.records.put(USERS, updated, previous=user)
        self.logger.info("email_verified", user_id=user.id)
        return updated

    async def change_password(
        self, subject: Subject, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        user = await self.get_user(subject.user_id)
        if not await self._verify_password(user, current_password):
            raise ValidationError("current password is incorrect")
        pwd_hash, algo = await self._hash_password(new_password)
        updated = user.touched(password_hash=pwd_hash, password_algo=algo)
        await self.records.put(USERS, updated, previous=user)
        self.logger.info("password_changed", user_id=user.id)
        return await self._issue_session(updated)

    # -- request authentication --

    async def authenticate(
        self, authorization: Optional[str], cookie_token: Optional[str]
    ) -> Subject:
        """Resolve the caller or raise a generic 401.

        Header wins over cookie. The subject is rebuilt from the live record,
        so deactivation or a role change applies before the token expires.
        """
        token = self._extract_bearer(authorization) or (cookie_token or None)
        if not token:
            raise AuthenticationError(AUTH_REQUIRED)
        payload = await self._verify_or_401(token, TokenKind.ACCESS)
        user = await self.records.get(USERS, payload["sub"])
        if user is None:
            self.logger.warning("auth_subject_missing", user_id=payload["sub"])
            raise AuthenticationError(INVALID_TOKEN)
        if not user.active:
            self.logger.warning("auth_subject_inactive", user_id=user.id)
            raise AuthenticationError(INVALID_TOKEN)
        return Subject.from_user(user)

    async def authenticate_optional(
        self, authorization: Optional[str], cookie_token: Optional[str]
    ) -> Optional[Subject]:
        try:
            return await self.authenticate(authorization, cookie_token)
        except AuthenticationError:
            return None

    # -- profile and admin --

    async def update_profile(self, subject: Subject, changes: Dict[str, Any]) -> User:
        user = await self.get_user(subject.user_id)
        allowed = {k: v for k, v in changes.items() if k in {"full_name", "phone", "bio"}}
        if not allowed:
            return user
        try:
            updated = user.touched(**allowed)
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(exc) from exc
        await self.records.put(USERS, updated, previous=user)
        return updated

    async def list_users(self, *, role: Optional[Role] = None, limit: int = 100) -> List[User]:
        prefix = USERS.prefix("by_role", role=Role(role)) if role else "user:"
        return await self.records.collect(USERS, prefix, limit=limit)

    async def set_active(self, user_id: str, active: bool) -> User:
        user = await self.get_user(user_id)
        if user.active == active:
            return user
        updated = user.touched(active=active)
        await self.records.put(USERS, updated, previous=user)
        if not active:
            await self.records.delete_raw(refresh_key(user.id))
        self.logger.info("user_active_changed", user_id=user.id, active=active)
        return updated

    async def set_role(self, user_id: str, role: Role) -> User:
        user = await self.get_user(user_id)
        role = Role(role)
        updated = user.touched(role=role, permissions=default_permissions(role))
        await self.records.put(USERS, updated, previous=user)
        self.logger.info(
            "user_role_changed", user_id=user.id, old_role=user.role.value, new_role=role.value
        )
        return updated

    async def create_staff_user(
        self, *, email: str, password: str, full_name: str, role: Role
    ) -> User:
        """Create an account with any role, bypassing signup restrictions."""
        email = email.strip().lower()
        role = Role(role)
        pwd_hash, algo = await self._hash_password(password)
        user = User(
            email=email,
            full_name=full_name,
            role=role,
            permissions=default_permissions(role),
            password_hash=pwd_hash,
            password_algo=algo,
            verified=True,
        )
        try:
            await self.records.claim_raw(email_key(email), user.id)
        except ConstraintViolation as exc:
            raise ConflictError("user already exists", detail={"field": "email"}) from exc
        await self.records.insert(USERS, user)
        self.logger.info("staff_user_created", user_id=user.id, role=role.value)
        return user
