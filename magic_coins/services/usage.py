"""
Monthly Usage Tracker - Per-user, per-calendar-month generation counters.

Counters are for quota reporting only and never gate a spend. Each update is
one INSERT ... ON CONFLICT DO UPDATE keyed by (user_id, year_month), so the
first update of a month creates the row and later ones add to it in place.
"""

import re
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from magic_coins.db.models import MonthlyUsage, utc_now
from magic_coins.db.statements import insert_for
from magic_coins.exceptions import PersistenceError
from magic_coins.models.api import MAX_USAGE_INCREMENT, YEAR_MONTH_PATTERN, UsageType
from magic_coins.models.domain import MonthlyUsageData
from magic_coins.observability.metrics import metrics

logger = get_logger(__name__)

_YEAR_MONTH_RE = re.compile(YEAR_MONTH_PATTERN)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def current_year_month() -> str:
    """Calendar month key (YYYY-MM) for the current UTC time."""
    return _utc_now().strftime("%Y-%m")


def validate_year_month(year_month: str) -> str:
    """Return year_month if it is a valid YYYY-MM key."""
    if not _YEAR_MONTH_RE.match(year_month):
        raise ValueError(f"Invalid year_month: {year_month!r} (expected YYYY-MM)")
    return year_month


class UsageTracker:
    """Monthly usage counters for one database session."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize usage tracker with database session."""
        self.session = session

    async def get_user_monthly_usage(
        self, user_id: str, year_month: str | None = None
    ) -> MonthlyUsageData | None:
        """
        Get the counters for one month, defaulting to the current month.

        Raises:
            ValueError: year_month is not YYYY-MM
            PersistenceError: the read failed
        """
        key = validate_year_month(year_month) if year_month else current_year_month()
        stmt = (
            select(MonthlyUsage)
            .where(MonthlyUsage.user_id == user_id, MonthlyUsage.year_month == key)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error(
                "monthly_usage_read_failed", user_id=user_id, year_month=key, exc_info=True
            )
            metrics.record_error(type(exc).__name__, "get_user_monthly_usage")
            raise PersistenceError("get_user_monthly_usage", str(exc)) from exc

        usage = result.scalar_one_or_none()
        if usage is None:
            return None
        return _usage_to_domain(usage)

    async def update_monthly_usage(
        self, user_id: str, usage_type: UsageType | str, increment: int = 1
    ) -> bool:
        """
        Add increment to this month's image or video counter.

        Returns False (and logs) for invalid input or a failed write; usage
        reporting must never break a paid action that already succeeded.
        """
        try:
            kind = UsageType(usage_type)
        except ValueError:
            logger.warning("monthly_usage_invalid_type", user_id=user_id, usage_type=usage_type)
            return False

        if (
            isinstance(increment, bool)
            or not isinstance(increment, int)
            or not 0 < increment <= MAX_USAGE_INCREMENT
        ):
            logger.warning("monthly_usage_invalid_increment", user_id=user_id, increment=increment)
            metrics.record_usage_update(kind.value, False)
            return False

        year_month = current_year_month()
        try:
            await self.add_counts(
                user_id,
                year_month,
                images=increment if kind is UsageType.IMAGE else 0,
                videos=increment if kind is UsageType.VIDEO else 0,
            )
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            logger.error(
                "monthly_usage_update_failed",
                user_id=user_id,
                usage_type=kind.value,
                year_month=year_month,
                exc_info=True,
            )
            metrics.record_usage_update(kind.value, False)
            return False

        metrics.record_usage_update(kind.value, True)
        logger.info(
            "monthly_usage_updated",
            user_id=user_id,
            usage_type=kind.value,
            increment=increment,
            year_month=year_month,
        )
        return True

    async def add_counts(
        self,
        user_id: str,
        year_month: str,
        images: int = 0,
        videos: int = 0,
        coins: int = 0,
    ) -> None:
        """Upsert-and-add the counters for one month. Does not commit."""
        stmt = insert_for(self.session, MonthlyUsage).values(
            user_id=user_id,
            year_month=year_month,
            images_generated=images,
            videos_generated=videos,
            coins_granted=coins,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "year_month"],
            set_={
                "images_generated": MonthlyUsage.images_generated
                + stmt.excluded.images_generated,
                "videos_generated": MonthlyUsage.videos_generated
                + stmt.excluded.videos_generated,
                "coins_granted": MonthlyUsage.coins_granted + stmt.excluded.coins_granted,
                "updated_at": utc_now(),
            },
        )
        await self.session.execute(stmt)


def _usage_to_domain(usage: MonthlyUsage) -> MonthlyUsageData:
    """Convert ORM usage row to domain model."""
    return MonthlyUsageData(
        user_id=usage.user_id,
        year_month=usage.year_month,
        images_generated=usage.images_generated,
        videos_generated=usage.videos_generated,
        coins_granted=usage.coins_granted,
        created_at=usage.created_at,
        updated_at=usage.updated_at,
    )
