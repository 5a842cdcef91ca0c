from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import asyncpg
from fastapi import Depends

from atlas_api.core.config import Settings, get_settings
from atlas_api.services.repository import RepositoryError, get_repository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QuotaResult:
    allowed: bool
    remaining: int | None = None
    reset_at: datetime | None = None
    error: str | None = None


class QuotaGuard:
    """Approximate limits for discovery and import, estimated from recently created seeds.

    When the count itself fails the guard allows the call unless ``fail_open`` is off.
    """

    def __init__(
        self,
        repository,
        *,
        discover_per_minute: int = 10,
        import_per_day: int = 50,
        fail_open: bool = True,
    ) -> None:
        self.repository = repository
        self.discover_per_minute = max(1, discover_per_minute)
        self.import_per_day = max(1, import_per_day)
        self.fail_open = fail_open

    async def check_discover(self, *, now: datetime | None = None) -> QuotaResult:
        current = now or datetime.now(timezone.utc)
        return await self._check(
            name="discover",
            since=current - timedelta(minutes=1),
            reset_at=current + timedelta(minutes=1),
            limit=self.discover_per_minute,
            window="minute",
        )

    async def check_import(self, *, requested: int = 1, now: datetime | None = None) -> QuotaResult:
        current = now or datetime.now(timezone.utc)
        start_of_day = current.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self._check(
            name="import",
            since=start_of_day,
            reset_at=start_of_day + timedelta(days=1),
            limit=self.import_per_day,
            window="day",
            requested=requested,
        )

    async def _check(
        self,
        *,
        name: str,
        since: datetime,
        reset_at: datetime,
        limit: int,
        window: str,
        requested: int = 1,
    ) -> QuotaResult:
        try:
            used = await self.repository.count_seeds_created_since(since)
        except (RepositoryError, asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as exc:
            logger.warning("quota check failed quota=%s fail_open=%s error=%s", name, self.fail_open, exc)
            return QuotaResult(allowed=self.fail_open, error=str(exc))

        remaining = max(0, limit - used)
        if requested > remaining:
            return QuotaResult(
                allowed=False,
                remaining=remaining,
                reset_at=reset_at,
                error=f"{name} quota exceeded: maximum {limit} per {window}",
            )
        return QuotaResult(allowed=True, remaining=remaining - requested, reset_at=reset_at)


def get_quota_guard(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> QuotaGuard:
    return QuotaGuard(
        repository,
        discover_per_minute=settings.discover_quota_per_minute,
        import_per_day=settings.import_quota_per_day,
        fail_open=settings.quota_fail_open,
    )
