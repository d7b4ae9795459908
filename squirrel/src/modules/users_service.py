from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.errors import (
    BusinessRuleException,
    EntityNotFoundException,
    ValidationError,
    ValidationException,
)
from squirrel.src.modules.password_hasher import PasswordHasher, password_policy_errors
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import User, UserRole, utc_now

logger = logging.getLogger(__name__)

PROVIDER_LOCAL = "Local"
PASSWORD_RESET_LIFETIME = timedelta(hours=24)


class Role(IntEnum):
    VIEWER = 0
    EDITOR = 1
    ADMIN = 2


@dataclass
class UserDto:
    id: str
    username: str
    email: str
    display_name: str
    first_name: str | None
    last_name: str | None
    is_admin: bool
    is_editor: bool
    is_active: bool
    is_locked: bool
    locked_until: datetime | None
    provider: str
    external_id: str | None
    last_login: datetime | None
    created_on: datetime

    @property
    def roles(self) -> list[str]:
        out = []
        if self.is_admin:
            out.append("Admin")
        if self.is_editor:
            out.append("Editor")
        return out


def user_dto(user: User) -> UserDto:
    return UserDto(
        id=user.id,
        username=user.username,
        email=user.email,
        display_name=user.display_name,
        first_name=user.first_name,
        last_name=user.last_name,
        is_admin=user.is_admin,
        is_editor=user.is_editor,
        is_active=user.is_active,
        is_locked=user.is_locked,
        locked_until=user.locked_until,
        provider=user.provider,
        external_id=user.external_id,
        last_login=user.last_login,
        created_on=user.created_on,
    )


class UserService:
    def __init__(
        self,
        session: AsyncSession,
        hasher: PasswordHasher | None = None,
        config: ConfigurationService | None = None,
    ):
        self.session = session
        self.hasher = hasher or PasswordHasher()
        self.config = config or ConfigurationService(session)

    async def _get(self, user_id: str) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise EntityNotFoundException("User", user_id)
        return user

    async def _find(self, *conditions) -> User | None:
        return (await self.session.execute(select(User).where(*conditions))).scalars().first()

    @staticmethod
    def _check_policy(password: str | None) -> None:
        errors = password_policy_errors(password)
        if errors:
            raise ValidationException([ValidationError(field="password", message=m) for m in errors])

    async def _sync_roles(self, user: User, assigned_by: str) -> None:
        wanted = {Role.VIEWER}
        if user.is_editor:
            wanted.add(Role.EDITOR)
        if user.is_admin:
            wanted.add(Role.ADMIN)
        rows = await self.session.execute(select(UserRole).where(UserRole.user_id == user.id))
        existing = {row.role: row for row in rows.scalars().all()}
        for role, row in existing.items():
            if role not in wanted:
                await self.session.delete(row)
        for role in wanted:
            if role not in existing:
                self.session.add(UserRole(user_id=user.id, role=int(role), assigned_by=assigned_by))

    async def get_by_id(self, user_id: str) -> UserDto:
        return user_dto(await self._get(user_id))

    async def get_by_username(self, username: str) -> UserDto | None:
        user = await self._find(func.lower(User.username) == (username or "").strip().lower())
        return user_dto(user) if user else None

    async def get_by_email(self, email: str) -> UserDto | None:
        user = await self._find(func.lower(User.email) == (email or "").strip().lower())
        return user_dto(user) if user else None

    async def get_by_external_id(self, external_id: str, provider: str | None = None) -> UserDto | None:
        conditions = [User.external_id == external_id]
        if provider:
            conditions.append(User.provider == provider)
        user = await self._find(*conditions)
        return user_dto(user) if user else None

    async def get_all(self) -> list[UserDto]:
        rows = await self.session.execute(select(User).order_by(User.username))
        return [user_dto(u) for u in rows.scalars().all()]

    async def get_admins(self) -> list[UserDto]:
        rows = await self.session.execute(select(User).where(User.is_admin.is_(True)).order_by(User.created_on))
        return [user_dto(u) for u in rows.scalars().all()]

    async def is_username_available(self, username: str, exclude_id: str | None = None) -> bool:
        conditions = [func.lower(User.username) == (username or "").strip().lower()]
        if exclude_id:
            conditions.append(User.id != exclude_id)
        return await self._find(*conditions) is None

    async def is_email_available(self, email: str, exclude_id: str | None = None) -> bool:
        conditions = [func.lower(User.email) == (email or "").strip().lower()]
        if exclude_id:
            conditions.append(User.id != exclude_id)
        return await self._find(*conditions) is None

    async def _ensure_identity_free(self, username: str, email: str, exclude_id: str | None = None) -> None:
        if not username or not username.strip():
            raise ValidationException("Username is required", field="username")
        if not email or "@" not in email:
            raise ValidationException("A valid email address is required", field="email")
        if not await self.is_username_available(username, exclude_id):
            raise BusinessRuleException.username_already_exists(username)
        if not await self.is_email_available(email, exclude_id):
            raise BusinessRuleException.email_already_exists(email)

    async def create_local_user(
        self,
        username: str,
        email: str,
        password: str,
        display_name: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        is_admin: bool = False,
        is_editor: bool = False,
        created_by: str = "system",
    ) -> UserDto:
        self._check_policy(password)
        await self._ensure_identity_free(username, email)
        now = utc_now()
        user = User(
            username=username.strip(),
            email=email.strip(),
            display_name=display_name or username.strip(),
            first_name=first_name,
            last_name=last_name,
            is_admin=is_admin,
            is_editor=is_editor or is_admin,
            provider=PROVIDER_LOCAL,
            password_hash=self.hasher.hash(password),
            last_password_change_on=now,
            created_on=now,
        )
        self.session.add(user)
        await self.session.flush()
        await self._sync_roles(user, created_by)
        await self.session.commit()
        logger.info("Created local user %s", user.username)
        return user_dto(user)

    async def create_external_user(
        self,
        provider: str,
        external_id: str,
        username: str,
        email: str,
        display_name: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> UserDto:
        if not external_id:
            raise ValidationException("External id is required", field="external_id")
        await self._ensure_identity_free(username, email)
        user = User(
            username=username.strip(),
            email=email.strip(),
            display_name=display_name or username.strip(),
            first_name=first_name,
            last_name=last_name,
            provider=provider,
            external_id=external_id,
            password_hash=None,
        )
        self.session.add(user)
        await self.session.flush()
        await self._sync_roles(user, provider)
        await self.session.commit()
        logger.info("Created %s user %s", provider, user.username)
        return user_dto(user)

    async def get_or_create_external(
        self,
        provider: str,
        external_id: str,
        username: str,
        email: str,
        display_name: str | None = None,
    ) -> UserDto:
        existing = await self._find(User.external_id == external_id, User.provider == provider)
        if existing is not None:
            existing.last_login = utc_now()
            if display_name:
                existing.display_name = display_name
            await self.session.commit()
            return user_dto(existing)
        candidate = username
        suffix = 1
        while not await self.is_username_available(candidate):
            candidate = f"{username}{suffix}"
            suffix += 1
        return await self.create_external_user(provider, external_id, candidate, email, display_name)

    async def update(
        self,
        user_id: str,
        email: str | None = None,
        display_name: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        is_active: bool | None = None,
    ) -> UserDto:
        user = await self._get(user_id)
        if email is not None and email.strip().lower() != user.email.lower():
            if "@" not in email:
                raise ValidationException("A valid email address is required", field="email")
            if not await self.is_email_available(email, exclude_id=user_id):
                raise BusinessRuleException.email_already_exists(email)
            user.email = email.strip()
        if display_name is not None:
            user.display_name = display_name
        if first_name is not None:
            user.first_name = first_name
        if last_name is not None:
            user.last_name = last_name
        if is_active is not None:
            user.is_active = is_active
        await self.session.commit()
        return user_dto(user)

    async def delete(self, user_id: str) -> None:
        user = await self._get(user_id)
        await self.session.execute(delete(UserRole).where(UserRole.user_id == user_id))
        await self.session.delete(user)
        await self.session.commit()
        logger.info("Deleted user %s", user.username)

    async def _set_flags(self, user_id: str, assigned_by: str, **flags: bool) -> UserDto:
        user = await self._get(user_id)
        for name, value in flags.items():
            setattr(user, name, value)
        await self._sync_roles(user, assigned_by)
        await self.session.commit()
        logger.info("Updated roles for %s: %s", user.username, flags)
        return user_dto(user)

    async def promote_to_admin(self, user_id: str, assigned_by: str = "system") -> UserDto:
        return await self._set_flags(user_id, assigned_by, is_admin=True, is_editor=True)

    async def demote_from_admin(self, user_id: str, assigned_by: str = "system") -> UserDto:
        return await self._set_flags(user_id, assigned_by, is_admin=False)

    async def promote_to_editor(self, user_id: str, assigned_by: str = "system") -> UserDto:
        return await self._set_flags(user_id, assigned_by, is_editor=True)

    async def demote_from_editor(self, user_id: str, assigned_by: str = "system") -> UserDto:
        return await self._set_flags(user_id, assigned_by, is_editor=False)

    async def get_roles(self, user_id: str) -> list[str]:
        await self._get(user_id)
        rows = await self.session.execute(select(UserRole.role).where(UserRole.user_id == user_id))
        return sorted(Role(r).name.title() for r in rows.scalars().all())

    async def authenticate(self, username_or_email: str, password: str) -> UserDto | None:
        lowered = (username_or_email or "").strip().lower()
        user = await self._find(or_(func.lower(User.email) == lowered, func.lower(User.username) == lowered))
        if user is None:
            logger.warning("Authentication failed: user not found for %s", username_or_email)
            return None
        if user.provider != PROVIDER_LOCAL:
            logger.warning("Authentication failed: %s is not a local user", user.username)
            return None
        if not user.password_hash:
            logger.warning("Authentication failed: no password set for %s", user.username)
            return None
        if not user.is_active:
            logger.warning("Authentication failed: %s is inactive", user.username)
            return None

        now = utc_now()
        if user.is_locked:
            if user.locked_until is None or user.locked_until > now:
                raise BusinessRuleException(
                    "Account is locked. Please try again later.", "ACCOUNT_LOCKED"
                ).with_context("Username", user.username).with_context("LockedUntil", user.locked_until)
            user.is_locked = False
            user.locked_until = None
            user.failed_login_attempts = 0

        if not self.hasher.verify(password, user.password_hash):
            max_attempts = await self.config.get_value("SQUIRREL_MAX_LOGIN_ATTEMPTS")
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                minutes = await self.config.get_value("SQUIRREL_ACCOUNT_LOCK_DURATION_MINUTES")
                user.is_locked = True
                user.locked_until = now + timedelta(minutes=minutes)
                await self.session.commit()
                logger.warning(
                    "Account locked for %s after %d failed attempts (until %s)",
                    user.username,
                    user.failed_login_attempts,
                    user.locked_until,
                )
                raise BusinessRuleException(
                    "Account has been locked due to multiple failed login attempts. "
                    f"Please try again after {user.locked_until:%Y-%m-%d %H:%M}.",
                    "ACCOUNT_LOCKED",
                ).with_context("Username", user.username).with_context("LockedUntil", user.locked_until)
            await self.session.commit()
            logger.warning(
                "Authentication failed: invalid password for %s (attempt %d/%d)",
                user.username,
                user.failed_login_attempts,
                max_attempts,
            )
            return None

        user.failed_login_attempts = 0
        user.last_login = now
        await self.session.commit()
        logger.info("User %s authenticated", user.username)
        return user_dto(user)

    async def set_password(self, user_id: str, new_password: str) -> None:
        user = await self._get(user_id)
        if user.provider != PROVIDER_LOCAL:
            raise BusinessRuleException("Only local users can have a password.", "NOT_LOCAL_USER")
        self._check_policy(new_password)
        user.password_hash = self.hasher.hash(new_password)
        user.last_password_change_on = utc_now()
        user.password_reset_token = None
        user.password_reset_expiry = None
        await self.session.commit()

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> bool:
        user = await self._get(user_id)
        if not self.hasher.verify(current_password, user.password_hash):
            return False
        await self.set_password(user_id, new_password)
        return True

    async def initiate_password_reset(self, email: str) -> str:
        user = await self._find(func.lower(User.email) == (email or "").strip().lower())
        if user is None or user.provider != PROVIDER_LOCAL:
            return ""
        token = secrets.token_urlsafe(32)
        user.password_reset_token = token
        user.password_reset_expiry = utc_now() + PASSWORD_RESET_LIFETIME
        await self.session.commit()
        logger.info("Password reset initiated for %s", user.username)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        if not token:
            return False
        user = await self._find(User.password_reset_token == token)
        if user is None or user.password_reset_expiry is None or user.password_reset_expiry < utc_now():
            return False
        self._check_policy(new_password)
        user.password_hash = self.hasher.hash(new_password)
        user.last_password_change_on = utc_now()
        user.password_reset_token = None
        user.password_reset_expiry = None
        user.failed_login_attempts = 0
        user.is_locked = False
        user.locked_until = None
        await self.session.commit()
        return True

    async def lock_account(self, user_id: str, minutes: int | None = None) -> UserDto:
        user = await self._get(user_id)
        user.is_locked = True
        user.locked_until = utc_now() + timedelta(minutes=minutes) if minutes else None
        await self.session.commit()
        logger.info("Locked account %s until %s", user.username, user.locked_until or "unlocked manually")
        return user_dto(user)

    async def unlock_account(self, user_id: str) -> UserDto:
        user = await self._get(user_id)
        user.is_locked = False
        user.locked_until = None
        user.failed_login_attempts = 0
        await self.session.commit()
        logger.info("Unlocked account %s", user.username)
        return user_dto(user)
