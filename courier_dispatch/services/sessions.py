"""
Session Service

Authentication half of the presence guard. A login for (user, role)
deactivates every active session of that pair and inserts the new one in
the same transaction; the partial unique index on active sessions makes
the database reject a concurrent second insert, which is retried once.

Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.errors import (
    AuthenticationError,
    AuthorizationError,
    SessionInvalidError,
)
from courier_dispatch.core.security import (
    create_session_token,
    decode_session_token,
    verify_password,
)
from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.models import ActiveSession, Admin, Courier, Restaurant, UserRole

logger = logging.getLogger(__name__)

Account = Union[Courier, Restaurant, Admin]

ACCOUNT_MODELS = {
    UserRole.COURIER: Courier,
    UserRole.RESTAURANT: Restaurant,
    UserRole.ADMIN: Admin,
}


@dataclass
class LoginResult:
    session: ActiveSession
    token: str
    expires_at: datetime
    user_id: int
    role: UserRole
    name: str
    superseded_socket_ids: list[str] = field(default_factory=list)


class SessionService:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # =========================================================================
    # LOGIN
    # =========================================================================

    async def authenticate(self, db: AsyncSession, email: str, password: str, role: UserRole) -> Account:
        model = ACCOUNT_MODELS[role]
        result = await db.execute(select(model).where(model.email == email.strip().lower()))
        account = result.scalar_one_or_none()

        if account is None or not verify_password(account.password_hash, password):
            logger.info(f"Failed {role.value} login for {email}")
            raise AuthenticationError("Invalid email or password")

        if isinstance(account, Courier) and account.is_blocked:
            raise AuthorizationError("This courier account is blocked")

        return account

    async def login(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        role: UserRole,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        account = await self.authenticate(db, email, password, role)
        return await self.open_session(
            db, account.id, role, name=account.name,
            device_info=device_info, ip_address=ip_address,
        )

    async def open_session(
        self,
        db: AsyncSession,
        user_id: int,
        role: UserRole,
        name: str = "",
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Invalidate all active sessions of (user, role) and insert a new one atomically."""
        last_error: Optional[IntegrityError] = None

        for attempt in range(2):
            token, expires_at = create_session_token(user_id, role.value, self.settings)

            result = await db.execute(
                select(ActiveSession.socket_id).where(
                    ActiveSession.user_id == user_id,
                    ActiveSession.user_role == role.value,
                    ActiveSession.is_active.is_(True),
                )
            )
            superseded = [sid for sid in result.scalars().all() if sid]

            await db.execute(
                update(ActiveSession)
                .where(
                    ActiveSession.user_id == user_id,
                    ActiveSession.user_role == role.value,
                    ActiveSession.is_active.is_(True),
                )
                .values(is_active=False)
            )
            session = ActiveSession(
                user_id=user_id,
                user_role=role.value,
                session_token=token,
                device_info=device_info,
                ip_address=ip_address,
                is_active=True,
                expires_at=expires_at,
                last_activity=utcnow(),
            )
            db.add(session)

            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                last_error = e
                logger.warning(f"Concurrent login for {role.value} #{user_id} (attempt {attempt + 1})")
                continue

            logger.info(
                f"🔐 {role.value} #{user_id} logged in"
                + (f", {len(superseded)} live session(s) superseded" if superseded else "")
            )
            return LoginResult(
                session=session,
                token=token,
                expires_at=expires_at,
                user_id=user_id,
                role=role,
                name=name,
                superseded_socket_ids=superseded,
            )

        raise last_error

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def validate(self, db: AsyncSession, token: Optional[str]) -> ActiveSession:
        """
        Check the token and its session row; slide the session expiry.

        Raises:
            SessionInvalidError: missing, expired, superseded or logged out
        """
        if not token:
            raise SessionInvalidError("Missing session token")

        claims = decode_session_token(token, self.settings)

        result = await db.execute(
            select(ActiveSession).where(
                ActiveSession.session_token == token,
                ActiveSession.is_active.is_(True),
            )
        )
        session = result.scalar_one_or_none()
        now = utcnow()

        if session is None:
            raise SessionInvalidError("Session is no longer active (logged in elsewhere?)")
        if session.expires_at <= now:
            session.is_active = False
            await db.commit()
            raise SessionInvalidError("Session expired")
        if session.user_id != claims.user_id or session.user_role != claims.role:
            raise SessionInvalidError("Session does not match token")

        session.expires_at = now + timedelta(days=self.settings.session_ttl_days)
        session.last_activity = now
        await db.commit()
        return session

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    async def logout(self, db: AsyncSession, token: str) -> Optional[str]:
        """Deactivate one session; returns its bound socket id."""
        result = await db.execute(
            select(ActiveSession).where(ActiveSession.session_token == token)
        )
        session = result.scalar_one_or_none()
        if session is None:
            return None
        session.is_active = False
        socket_id = session.socket_id
        await db.commit()
        logger.info(f"{session.user_role} #{session.user_id} logged out")
        return socket_id

    async def invalidate_user_sessions(self, db: AsyncSession, user_id: int, role: UserRole) -> list[str]:
        result = await db.execute(
            select(ActiveSession.socket_id).where(
                ActiveSession.user_id == user_id,
                ActiveSession.user_role == role.value,
                ActiveSession.is_active.is_(True),
            )
        )
        socket_ids = [sid for sid in result.scalars().all() if sid]
        await db.execute(
            update(ActiveSession)
            .where(
                ActiveSession.user_id == user_id,
                ActiveSession.user_role == role.value,
                ActiveSession.is_active.is_(True),
            )
            .values(is_active=False)
        )
        await db.commit()
        return socket_ids

    async def bind_socket(self, db: AsyncSession, token: Optional[str], socket_id: Optional[str]) -> None:
        if not token:
            return
        await db.execute(
            update(ActiveSession)
            .where(ActiveSession.session_token == token, ActiveSession.is_active.is_(True))
            .values(socket_id=socket_id, last_activity=utcnow())
        )
        await db.commit()

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Deactivate lapsed sessions, then purge long-expired inactive rows."""
        now = utcnow()
        await db.execute(
            update(ActiveSession)
            .where(ActiveSession.is_active.is_(True), ActiveSession.expires_at <= now)
            .values(is_active=False)
        )
        cutoff = now - timedelta(days=self.settings.session_cleanup_grace_days)
        result = await db.execute(
            delete(ActiveSession).where(
                ActiveSession.is_active.is_(False),
                ActiveSession.expires_at < cutoff,
            )
        )
        await db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"🧹 Removed {deleted} expired session(s)")
        return deleted
