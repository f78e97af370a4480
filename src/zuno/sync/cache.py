"""Expiring key/value cache and the single-row app settings record."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zuno.db.base import utcnow
from zuno.db.models import AppSettings, CachedData

logger = structlog.get_logger()

SETTINGS_ROW_ID = "default"


# ---------------------------------------------------------------------------
# Cached data
# ---------------------------------------------------------------------------


class CacheStore:
    """Opaque values cached under unique keys until they expire."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], default_ttl: int = 300) -> None:
        self._sessions = session_factory
        self._default_ttl = default_ttl

    async def set(self, key: str, value: bytes, ttl: int | None = None, *, now: datetime | None = None) -> None:
        now = now or utcnow()
        expires_at = now + timedelta(seconds=self._default_ttl if ttl is None else ttl)
        async with self._sessions() as db:
            entry = await db.get(CachedData, key)
            if entry is None:
                db.add(CachedData(key=key, value=value, expires_at=expires_at, created_at=now))
            else:
                entry.value = value
                entry.expires_at = expires_at
                entry.created_at = now
            await db.commit()

    async def get(self, key: str, *, now: datetime | None = None) -> bytes | None:
        """Return the cached value, or None if absent or expired. Expired entries are dropped."""
        async with self._sessions() as db:
            entry = await db.get(CachedData, key)
            if entry is None:
                return None
            if entry.is_expired(now):
                await db.delete(entry)
                await db.commit()
                logger.debug("cache_entry_expired", key=key)
                return None
            return entry.value

    async def delete(self, key: str) -> None:
        async with self._sessions() as db:
            await db.execute(delete(CachedData).where(CachedData.key == key))
            await db.commit()

    async def purge_expired(self, *, now: datetime | None = None) -> int:
        """Delete every expired entry. Returns how many were removed."""
        async with self._sessions() as db:
            result = await db.execute(delete(CachedData).where(CachedData.expires_at < (now or utcnow())))
            await db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("cache_purged", removed=removed)
        return removed

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        await self.set(key, json.dumps(value).encode(), ttl)

    async def get_json(self, key: str) -> Any | None:
        raw = await self.get(key)
        return json.loads(raw) if raw is not None else None


# ---------------------------------------------------------------------------
# App settings
# ---------------------------------------------------------------------------

_EDITABLE_SETTINGS = frozenset(
    {
        "is_dark_mode",
        "biometric_enabled",
        "notifications_enabled",
        "analytics_enabled",
        "default_currency",
        "preferred_network",
        "language",
    }
)


class SettingsStore:
    """Device preferences kept in a single ``app_settings`` row."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_currency: str = "USDC",
        default_network: str = "ARC-TESTNET",
    ) -> None:
        self._sessions = session_factory
        self._default_currency = default_currency
        self._default_network = default_network

    async def _get_or_create(self, db: AsyncSession) -> AppSettings:
        settings = await db.get(AppSettings, SETTINGS_ROW_ID)
        if settings is None:
            settings = AppSettings(
                id=SETTINGS_ROW_ID,
                is_dark_mode=True,
                biometric_enabled=True,
                notifications_enabled=True,
                analytics_enabled=False,
                default_currency=self._default_currency,
                preferred_network=self._default_network,
                language="en",
                updated_at=utcnow(),
            )
            db.add(settings)
            await db.flush()
        return settings

    async def load(self) -> AppSettings:
        async with self._sessions() as db:
            settings = await self._get_or_create(db)
            await db.commit()
        return settings

    async def update(self, **changes: Any) -> AppSettings:
        unknown = set(changes) - _EDITABLE_SETTINGS
        if unknown:
            msg = f"Unknown settings: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        async with self._sessions() as db:
            settings = await self._get_or_create(db)
            for name, value in changes.items():
                setattr(settings, name, value)
            settings.updated_at = utcnow()
            await db.commit()
        logger.info("app_settings_updated", fields=sorted(changes))
        return settings
