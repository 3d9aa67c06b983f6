import asyncio
import secrets
import time
import uuid
from dataclasses import replace
from typing import Optional, Union

from safewatch import config
from safewatch.errors import AccessDenied, AccessDeniedReason, DeliveryFailed, SyncConflict
from safewatch.logging_setup import mask_address
from safewatch.models import ShareSession, ShareView
from safewatch.store_client import SHARE_SESSIONS
from safewatch.ticker import Ticker

SHARE_MAX_MINUTES = 24 * 60

INVITE_TEXT = "I'm sharing my live location with you for safety. Track me here: {url}. Code: {code}"


def generate_access_code() -> str:
    return secrets.token_hex(4).upper()


class ShareSessionManager:
    """Time-boxed, view-limited live location shares.

    All checks and the view counter increment happen under one lock, so
    ``max_views`` is never exceeded by concurrent viewers.
    """

    def __init__(self, store, tracker, logger, *, channel=None, clock=time.time, refresh_every: float | None = None) -> None:
        self.store = store
        self.tracker = tracker
        self.logger = logger
        self.channel = channel
        self._clock = clock
        self._sessions: dict[str, ShareSession] = {}
        self._lock = asyncio.Lock()
        self._ticker = Ticker("share-refresh", refresh_every or config.SHARE_REFRESH_EVERY_SEC, self.refresh)

    def start(self) -> None:
        self._ticker.start()

    async def aclose(self) -> None:
        await self._ticker.stop()

    async def _mirror(self, session: ShareSession) -> None:
        try:
            await self.store.put(SHARE_SESSIONS, session.id, session.to_dict())
        except (RuntimeError, SyncConflict) as exc:
            self.logger.warning("SHARE_PERSIST_FAILED session_id=%s error=%s", session.id, exc)

    async def _patch(self, session_id: str, changes: dict) -> None:
        try:
            await self.store.patch(SHARE_SESSIONS, session_id, changes)
        except (RuntimeError, SyncConflict) as exc:
            self.logger.warning("SHARE_PATCH_FAILED session_id=%s error=%s", session_id, exc)

    async def create_session(
        self,
        duration_minutes: int,
        max_views: int | None = None,
        recipient_name: str | None = None,
        recipient_phone: str | None = None,
    ) -> tuple[str, str]:
        if not 0 < int(duration_minutes) <= SHARE_MAX_MINUTES:
            raise ValueError(f"duration_minutes must be within 1..{SHARE_MAX_MINUTES}")
        if max_views is not None and int(max_views) < 1:
            raise ValueError("max_views must be positive")

        now = self._clock()
        session = ShareSession(
            id=uuid.uuid4().hex,
            access_code=generate_access_code(),
            created_at=now,
            expires_at=now + int(duration_minutes) * 60,
            max_views=int(max_views) if max_views is not None else None,
            last_position=self.tracker.get_last_position(),
            recipient_name=recipient_name,
            recipient_phone=recipient_phone,
        )
        async with self._lock:
            self._sessions[session.id] = session
        self.logger.info(
            "SHARE_CREATED session_id=%s minutes=%s max_views=%s",
            session.id,
            duration_minutes,
            session.max_views,
        )
        await self._mirror(session)
        return session.id, session.access_code

    async def extend(self, session_id: str, minutes: int) -> bool:
        if int(minutes) <= 0:
            raise ValueError("minutes must be positive")
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active or session.is_expired(self._clock()):
                return False
            session.expires_at += int(minutes) * 60
            expires_at = session.expires_at
        self.logger.info("SHARE_EXTENDED session_id=%s minutes=%s", session_id, minutes)
        await self._patch(session_id, {"expires_at": expires_at})
        return True

    async def stop(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            session.is_active = False
        self.logger.info("SHARE_STOPPED session_id=%s", session_id)
        await self._patch(session_id, {"is_active": False})
        return True

    async def resolve_view(self, session_id: str, access_code: str) -> Union[ShareView, AccessDenied]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return AccessDenied(session_id, AccessDeniedReason.NOT_FOUND)
            if not secrets.compare_digest(str(access_code or "").upper(), session.access_code):
                return AccessDenied(session_id, AccessDeniedReason.INVALID_CODE)
            if session.max_views is not None and session.view_count >= session.max_views:
                session.is_active = False
                return AccessDenied(session_id, AccessDeniedReason.QUOTA_EXHAUSTED)
            if session.is_expired(self._clock()):
                session.is_active = False
                return AccessDenied(session_id, AccessDeniedReason.EXPIRED)
            if not session.is_active:
                return AccessDenied(session_id, AccessDeniedReason.INACTIVE)

            previous = session.view_count
            session.view_count += 1
            if session.max_views is not None and session.view_count >= session.max_views:
                session.is_active = False
            view = ShareView(
                session_id=session.id,
                position=session.last_position,
                expires_at=session.expires_at,
                views_left=session.quota_left(),
            )
            changes = {"view_count": session.view_count, "is_active": session.is_active}

        try:
            await self.store.conditional_update(SHARE_SESSIONS, session_id, {"view_count": previous}, changes)
        except SyncConflict as exc:
            self.logger.warning("SHARE_VIEW_SYNC_CONFLICT session_id=%s error=%s", session_id, exc)
        except RuntimeError as exc:
            self.logger.warning("SHARE_VIEW_PERSIST_FAILED session_id=%s error=%s", session_id, exc)
        return view

    async def get_active_sessions(self) -> list[ShareSession]:
        now = self._clock()
        async with self._lock:
            return [
                replace(session)
                for session in self._sessions.values()
                if session.is_active and not session.is_expired(now)
            ]

    def time_remaining(self, session_id: str) -> float:
        session = self._sessions.get(session_id)
        if session is None:
            return 0.0
        return max(session.expires_at - self._clock(), 0.0)

    def share_url(self, session: ShareSession) -> str:
        return f"{config.SHARE_BASE_URL.rstrip('/')}/track/{session.id}?code={session.access_code}"

    async def send_invite(self, session_id: str, address: str) -> Optional[str]:
        if self.channel is None:
            return None
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        text = INVITE_TEXT.format(url=self.share_url(session), code=session.access_code)
        try:
            delivery_id = await self.channel.send(address, text)
        except DeliveryFailed as exc:
            self.logger.warning("SHARE_INVITE_FAILED session_id=%s to=%s error=%s", session_id, mask_address(address), exc.reason)
            return None
        self.logger.info("SHARE_INVITE_SENT session_id=%s to=%s", session_id, mask_address(address))
        return delivery_id

    async def refresh(self) -> None:
        """Publish the latest tracked position into active sessions and sweep expired ones.

        Inactive sessions are dropped from memory; the store keeps their record.
        """
        now = self._clock()
        position = self.tracker.get_last_position() if self.tracker.is_active() else None
        updated: list[str] = []
        expired: list[str] = []
        dropped: list[str] = []
        async with self._lock:
            for session in list(self._sessions.values()):
                if session.is_active and session.is_expired(now):
                    session.is_active = False
                    expired.append(session.id)
                if not session.is_active:
                    dropped.append(session.id)
                    del self._sessions[session.id]
                    continue
                if position is not None and position != session.last_position:
                    session.last_position = position
                    updated.append(session.id)

        for session_id in expired:
            self.logger.info("SHARE_EXPIRED session_id=%s", session_id)
            await self._patch(session_id, {"is_active": False})
        if dropped:
            self.logger.info("SHARE_SESSIONS_DROPPED count=%s", len(dropped))
        if position is not None:
            for session_id in updated:
                await self._patch(session_id, {"last_position": position.to_dict()})
