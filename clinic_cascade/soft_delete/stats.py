"""
Soft delete statistics for dashboard widgets.

Counts are raw: every entity in scope is either deleted or not, with no
provenance logic. Results may be served from a short-lived cache whose
TTL is reported to callers as the staleness bound.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, NamedTuple, Optional, Tuple

import pytz
from dateutil.relativedelta import MO, relativedelta
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..config import MAX_STATS_STALENESS_SECONDS
from ..timeutils import utcnow
from .entities import Entity, get_entity
from .hierarchy import HierarchyIndex
from .models import SoftDeleteStats

logger = logging.getLogger(__name__)


class BucketStarts(NamedTuple):
    """Naive UTC instants at which each reporting bucket begins."""

    today: datetime
    week: datetime
    month: datetime


class StatsAggregator:
    """Computes active/deleted counts per scope with an optional TTL cache."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache_ttl_seconds: int = MAX_STATS_STALENESS_SECONDS,
        timezone: str = "UTC",
        cache_enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the aggregator.

        Args:
            session_factory: Factory for entity store sessions
            cache_ttl_seconds: Cache lifetime, at most 60 seconds
            timezone: Timezone whose calendar defines today, week and month
            cache_enabled: Whether to cache results per scope
            clock: Source of the current naive UTC time
        """
        if not 0 < cache_ttl_seconds <= MAX_STATS_STALENESS_SECONDS:
            raise ValueError(
                "cache_ttl_seconds must be between 1 and "
                f"{MAX_STATS_STALENESS_SECONDS}"
            )

        self.session_factory = session_factory
        self.cache_ttl = cache_ttl_seconds
        self.tz = pytz.timezone(timezone)
        self.enable_cache = cache_enabled
        self.clock = clock

        self._cache: Dict[Optional[str], Dict[str, Any]] = {}
        self._cache_lock = threading.Lock()

    @property
    def max_staleness_seconds(self) -> int:
        """Upper bound on the age of served results."""
        return self.cache_ttl if self.enable_cache else 0

    def _get_from_cache(self, key: Optional[str]) -> Optional[SoftDeleteStats]:
        """Get value from cache if enabled and not expired."""
        if not self.enable_cache:
            return None

        with self._cache_lock:
            if key in self._cache:
                entry = self._cache[key]
                if self.clock() < entry["expires_at"]:
                    return entry["value"]  # type: ignore[no-any-return]
                else:
                    del self._cache[key]
        return None

    def _set_cache(self, key: Optional[str], value: SoftDeleteStats) -> None:
        """Set value in cache with TTL."""
        if not self.enable_cache:
            return

        with self._cache_lock:
            self._cache[key] = {
                "value": value,
                "expires_at": value.generated_at + timedelta(seconds=self.cache_ttl),
            }

    def invalidate(self, scope_id: Optional[str] = None) -> None:
        """Drop cached results for one scope, or for every scope."""
        with self._cache_lock:
            if scope_id is None:
                self._cache.clear()
            else:
                self._cache.pop(scope_id, None)

    def bucket_starts(self, now: datetime) -> BucketStarts:
        """
        Start of today, this week (Monday) and this month in local time.

        Args:
            now: Current time as naive UTC

        Returns:
            Bucket starts converted back to naive UTC
        """
        local_now = pytz.utc.localize(now).astimezone(self.tz)
        midnight = datetime(local_now.year, local_now.month, local_now.day)

        def to_utc(local_midnight: datetime) -> datetime:
            aware = self.tz.localize(local_midnight)
            return aware.astimezone(pytz.utc).replace(tzinfo=None)

        return BucketStarts(
            today=to_utc(midnight),
            week=to_utc(midnight + relativedelta(weekday=MO(-1))),
            month=to_utc(midnight + relativedelta(day=1)),
        )

    async def get_stats(
        self, scope_id: Optional[str] = None, fresh: bool = False
    ) -> SoftDeleteStats:
        """
        Get active/deleted counts for a subtree or the whole system.

        Args:
            scope_id: Entity whose subtree (itself included) is counted.
                None counts every entity.
            fresh: Bypass the cache and recompute

        Returns:
            Statistics for the scope

        Raises:
            NotFoundError: If scope_id does not exist
        """
        if not fresh:
            cached = self._get_from_cache(scope_id)
            if cached is not None:
                return cached

        stats = self._compute(scope_id)
        self._set_cache(scope_id, stats)
        return stats

    def _compute(self, scope_id: Optional[str]) -> SoftDeleteStats:
        now = self.clock()
        buckets = self.bucket_starts(now)

        with self.session_factory() as session:
            if scope_id is None:
                counts = self._count_all(session, buckets)
            else:
                root = get_entity(session, scope_id)
                scope = [root] + HierarchyIndex(session).descendants(root.id)
                counts = self._count_entities(
                    ((e.is_deleted, e.deleted_at) for e in scope), buckets
                )

        total, deleted, today, week, month = counts
        logger.debug(
            "Computed stats for scope %s: %d total, %d deleted",
            scope_id or "<system>",
            total,
            deleted,
        )

        return SoftDeleteStats(
            scope_id=scope_id,
            total=total,
            active=total - deleted,
            deleted=deleted,
            deleted_today=today,
            deleted_this_week=week,
            deleted_this_month=month,
            generated_at=now,
            max_staleness_seconds=self.max_staleness_seconds,
        )

    def _count_all(
        self, session: Session, buckets: BucketStarts
    ) -> Tuple[int, int, int, int, int]:
        """Aggregate across the whole entity table in one query."""
        deleted = Entity.is_deleted.is_(True)

        def deleted_since(start: datetime) -> Any:
            return func.coalesce(
                func.sum(case((deleted & (Entity.deleted_at >= start), 1), else_=0)),
                0,
            )

        row = session.query(
            func.count(Entity.id),
            func.coalesce(func.sum(case((deleted, 1), else_=0)), 0),
            deleted_since(buckets.today),
            deleted_since(buckets.week),
            deleted_since(buckets.month),
        ).one()

        return tuple(int(value) for value in row)  # type: ignore[return-value]

    @staticmethod
    def _count_entities(
        states: Iterable[Tuple[bool, Optional[datetime]]], buckets: BucketStarts
    ) -> Tuple[int, int, int, int, int]:
        total = deleted = today = week = month = 0

        for is_deleted, deleted_at in states:
            total += 1
            if not is_deleted:
                continue
            deleted += 1
            if deleted_at is None:
                continue
            if deleted_at >= buckets.today:
                today += 1
            if deleted_at >= buckets.week:
                week += 1
            if deleted_at >= buckets.month:
                month += 1

        return total, deleted, today, week, month
