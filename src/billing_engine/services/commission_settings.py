"""Commission rate settings with a process-wide read cache."""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.exceptions import ConfigError
from billing_engine.models import CommissionSetting, SplitRole, utc_now

logger = logging.getLogger(__name__)

COMPANY_LEAD_RATE = "company_lead_rate"
COACH_LEAD_RATE = "coach_lead_rate"
RESIGN_RATE = "resign_rate"

RATE_KEYS = (COMPANY_LEAD_RATE, COACH_LEAD_RATE, RESIGN_RATE)


def scoped_key(role: SplitRole, key: str) -> str:
    """Setting key overriding ``key`` for one split role."""
    return f"{role.value}.{key}"


def validate_key(setting_key: str) -> None:
    """Reject keys that are neither a rate key nor a role-scoped rate key."""
    role, _, base = setting_key.rpartition(".")
    if base not in RATE_KEYS:
        raise ValueError(f"Unknown commission setting '{setting_key}'")
    if role and role not in {r.value for r in SplitRole}:
        raise ValueError(f"Unknown split role prefix in '{setting_key}'")


class RateCache:
    """Settings snapshot refreshed after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float = 3600):
        self.ttl_seconds = ttl_seconds
        self._values: dict[str, Decimal] | None = None
        self._loaded_at = 0.0

    def get(self) -> dict[str, Decimal] | None:
        if self._values is None:
            return None
        if time.monotonic() - self._loaded_at >= self.ttl_seconds:
            self._values = None
            return None
        return self._values

    def put(self, values: dict[str, Decimal]) -> None:
        self._values = dict(values)
        self._loaded_at = time.monotonic()

    def invalidate(self) -> None:
        self._values = None


_default_cache = RateCache()


def set_cache_ttl(ttl_seconds: float) -> None:
    """Configure the shared cache lifetime (from SETTINGS_CACHE_SECONDS)."""
    _default_cache.ttl_seconds = ttl_seconds
    _default_cache.invalidate()


class CommissionSettingsService:
    """Reads and writes commission settings.

    Reads go through a shared cache; every write invalidates it.
    """

    def __init__(self, session: AsyncSession, cache: RateCache | None = None):
        self.session = session
        self.cache = cache if cache is not None else _default_cache

    async def get_all(self) -> dict[str, Decimal]:
        cached = self.cache.get()
        if cached is not None:
            return cached

        result = await self.session.execute(select(CommissionSetting))
        values = {s.setting_key: s.setting_value for s in result.scalars().all()}
        self.cache.put(values)
        return values

    async def get_rate(self, key: str, role: SplitRole | None = None) -> tuple[Decimal, str]:
        """Rate for ``key``, preferring the role-scoped override.

        Returns:
            (rate, setting key it came from)

        Raises:
            ConfigError: neither the scoped nor the global key is set.
        """
        values = await self.get_all()
        if role is not None:
            scoped = scoped_key(role, key)
            if scoped in values:
                return values[scoped], scoped
        if key in values:
            return values[key], key
        logger.warning("Commission setting %s is not configured", key)
        raise ConfigError(key)

    async def list_settings(self) -> list[CommissionSetting]:
        result = await self.session.execute(
            select(CommissionSetting).order_by(CommissionSetting.setting_key)
        )
        return list(result.scalars().all())

    async def get_setting(self, setting_key: str) -> CommissionSetting | None:
        return await self.session.get(CommissionSetting, setting_key)

    async def update_setting(
        self,
        setting_key: str,
        value: Decimal,
        updated_by: UUID | None = None,
        description: str | None = None,
    ) -> CommissionSetting:
        """Create or overwrite a setting and drop the cached snapshot."""
        validate_key(setting_key)
        if not Decimal("0") <= value <= Decimal("1"):
            raise ValueError("Commission rate must be between 0 and 1")

        setting = await self.session.get(CommissionSetting, setting_key)
        if setting is None:
            setting = CommissionSetting(setting_key=setting_key, setting_value=value)
            self.session.add(setting)
        setting.setting_value = value
        setting.updated_by = updated_by
        setting.updated_at = utc_now()
        if description is not None:
            setting.description = description

        await self.session.commit()
        self.cache.invalidate()
        logger.info("Commission setting %s set to %s by %s", setting_key, value, updated_by)
        return setting
