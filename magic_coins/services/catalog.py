"""
Catalog Service - Read-only packages, settings and per-API costs.

Missing optional configuration never fails a caller: absent rows resolve to
the process defaults from magic_coins.config.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from magic_coins.config import settings
from magic_coins.db.models import ApiConfig, Package, Setting
from magic_coins.exceptions import PersistenceError
from magic_coins.models.domain import ApiCosts, PackageData
from magic_coins.observability.metrics import metrics

logger = get_logger(__name__)

SIGNUP_BONUS_KEY = "signup_bonus_coins"
COINS_PER_IMAGE_KEY = "coins_per_image"
COINS_PER_VIDEO_KEY = "coins_per_video"


class CatalogService:
    """Service for reading catalog and configuration rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize catalog service with database session."""
        self.session = session

    async def _execute(self, stmt: Any, operation: str) -> Any:
        try:
            return await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("catalog_read_failed", operation=operation, exc_info=True)
            metrics.record_error(type(exc).__name__, operation)
            raise PersistenceError(operation, str(exc)) from exc

    async def get_packages(self) -> list[PackageData]:
        """Active packages in display order."""
        stmt = (
            select(Package)
            .where(Package.is_active == True)  # noqa: E712
            .order_by(Package.sort_order, Package.id)
        )
        result = await self._execute(stmt, "get_packages")
        return [_package_to_domain(package) for package in result.scalars().all()]

    async def get_package(self, package_id: str) -> PackageData | None:
        """Look up one package, active or not."""
        stmt = select(Package).where(Package.id == package_id)
        result = await self._execute(stmt, "get_package")
        package = result.scalar_one_or_none()
        if package is None:
            logger.warning("package_not_found", package_id=package_id)
            return None
        return _package_to_domain(package)

    async def get_setting(self, key: str) -> str | None:
        """Raw value of a runtime setting, or None when unset."""
        stmt = select(Setting.setting_value).where(Setting.setting_key == key)
        result = await self._execute(stmt, "get_setting")
        return result.scalar_one_or_none()

    async def get_int_setting(self, key: str, default: int) -> int:
        """
        Positive-or-zero integer setting with a fallback.

        Unparseable or negative values are logged and replaced by the default.
        """
        raw = await self.get_setting(key)
        if raw is None:
            return default
        try:
            value = int(raw.strip())
        except ValueError:
            logger.warning("setting_not_an_integer", key=key, value=raw, default=default)
            return default
        if value < 0:
            logger.warning("setting_negative", key=key, value=value, default=default)
            return default
        return value

    async def get_signup_bonus(self) -> int:
        """Starting grant for new balances."""
        return await self.get_int_setting(SIGNUP_BONUS_KEY, settings.signup_bonus_coins)

    async def get_api_costs(self, api_id: str) -> ApiCosts:
        """
        Coin cost of one image and one video generation on the given API.

        Resolution order per kind: the api_configs row, then the settings
        table, then the process defaults (1 and 5). Non-positive values are
        treated as unset.
        """
        stmt = select(ApiConfig).where(ApiConfig.id == api_id)
        result = await self._execute(stmt, "get_api_costs")
        config = result.scalar_one_or_none()

        image_coins = config.coins_per_image if config else None
        video_coins = config.coins_per_video if config else None

        if not image_coins or image_coins <= 0:
            image_coins = await self._positive_setting(
                COINS_PER_IMAGE_KEY, settings.default_image_coins
            )
        if not video_coins or video_coins <= 0:
            video_coins = await self._positive_setting(
                COINS_PER_VIDEO_KEY, settings.default_video_coins
            )

        if config is None:
            logger.debug("api_config_not_found", api_id=api_id)

        return ApiCosts(image_coins=image_coins, video_coins=video_coins)

    async def _positive_setting(self, key: str, default: int) -> int:
        value = await self.get_int_setting(key, default)
        return value if value > 0 else default


def _package_to_domain(package: Package) -> PackageData:
    """Convert ORM package to domain model."""
    return PackageData(
        package_id=package.id,
        name=package.name,
        description=package.description,
        coins_amount=package.coins_amount,
        bonus_coins=package.bonus_coins,
        price_usd=package.price_usd,
        is_active=package.is_active,
        sort_order=package.sort_order,
    )
