"""
Platform Configuration Store

Admin-side management of per-platform integration settings:
- Masked reads (secrets never leave the process)
- Partial upserts; the row is created on the first write
- Credential presence check ("test connection")
- Menu overlay (platform price/availability on top of the base menu)
- Menu sync to the platform (stub push, records last_sync_at)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models import ConnectionStatus, MenuItem, MenuOverride, Platform, PlatformConfig
from app.schemas import (
    ConnectionTestResponse,
    MenuOverlayItem,
    MenuOverrideIn,
    MenuOverrideResponse,
    PlatformConfigResponse,
    PlatformConfigUpdate,
)

logger = logging.getLogger(__name__)

MASK = "****"


class PlatformNotEnabled(Exception):
    """Operation needs an enabled integration."""


class UnknownMenuItems(ValueError):
    """Override list references menu items that do not exist."""

    def __init__(self, missing_ids: list[int]):
        self.missing_ids = missing_ids
        super().__init__(f"Unknown menu item ids: {', '.join(str(i) for i in missing_ids)}")


def mask_api_key(api_key: Optional[str]) -> str:
    """'****' + last four characters; short keys are fully masked."""
    if not api_key:
        return ""
    if len(api_key) <= 4:
        return MASK
    return MASK + api_key[-4:]


def default_config(platform: Platform) -> PlatformConfig:
    """Unsaved config returned for platforms nobody has configured yet."""
    return PlatformConfig(
        platform=platform,
        is_enabled=False,
        api_key="",
        api_secret="",
        store_id="",
        webhook_secret="",
        platform_base_url="",
        auto_accept=False,
        default_prep_time=get_settings().default_prep_time_minutes,
        connection_status=ConnectionStatus.DISCONNECTED,
        menu_overrides=[],
    )


def mask_config(config: PlatformConfig) -> PlatformConfigResponse:
    """Admin view of a config: api_key masked, secrets reduced to has_* flags."""
    return PlatformConfigResponse(
        platform=config.platform,
        is_enabled=bool(config.is_enabled),
        api_key=mask_api_key(config.api_key),
        store_id=config.store_id or "",
        has_api_secret=bool(config.api_secret),
        has_webhook_secret=bool(config.webhook_secret),
        auto_accept=bool(config.auto_accept),
        default_prep_time=config.default_prep_time or get_settings().default_prep_time_minutes,
        connection_status=config.connection_status or ConnectionStatus.DISCONNECTED,
        last_sync_at=config.last_sync_at,
        platform_base_url=config.platform_base_url or "",
        menu_overrides=[
            MenuOverrideResponse.model_validate(o) for o in (config.menu_overrides or [])
        ],
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


async def find_config(db: AsyncSession, platform: Platform) -> Optional[PlatformConfig]:
    result = await db.execute(
        select(PlatformConfig).where(PlatformConfig.platform == platform)
    )
    return result.scalar_one_or_none()


async def list_configs(db: AsyncSession) -> list[PlatformConfig]:
    """Saved configs only, in platform order."""
    result = await db.execute(select(PlatformConfig).order_by(PlatformConfig.id))
    return list(result.scalars().all())


async def get_config(db: AsyncSession, platform: Platform) -> PlatformConfig:
    return await find_config(db, platform) or default_config(platform)


async def _get_or_create(db: AsyncSession, platform: Platform) -> PlatformConfig:
    config = await find_config(db, platform)
    if config is None:
        config = default_config(platform)
        db.add(config)
    return config


async def upsert_config(
    db: AsyncSession,
    platform: Platform,
    update: PlatformConfigUpdate,
) -> PlatformConfig:
    """
    Apply a partial update, creating the row on first write.

    Fields absent from the request are left as they are, so an admin can
    change auto_accept without resending credentials.
    """
    config = await _get_or_create(db, platform)

    changes = update.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None and field in ("is_enabled", "auto_accept", "default_prep_time"):
            continue
        setattr(config, field, value if value is not None else "")

    await db.commit()

    logger.info(
        f"{platform.value} config updated: {', '.join(sorted(changes)) or 'no fields'}"
    )
    return config


async def test_connection(db: AsyncSession, platform: Platform) -> ConnectionTestResponse:
    """
    Check that the credentials needed for callbacks are present.

    Does not call the platform. Records connected/error on the saved config.
    """
    config = await find_config(db, platform)
    if config is None or not config.api_key:
        return ConnectionTestResponse(
            connected=False,
            message="Missing API credentials",
            connection_status=config.connection_status if config else ConnectionStatus.DISCONNECTED,
        )

    connected = bool(config.api_key and config.store_id)
    config.connection_status = ConnectionStatus.CONNECTED if connected else ConnectionStatus.ERROR
    await db.commit()

    logger.info(f"{platform.value} connection test: {config.connection_status.value}")
    return ConnectionTestResponse(
        connected=connected,
        message="Credentials configured" if connected else "Missing store ID or API key",
        connection_status=config.connection_status,
    )


async def get_menu_with_overrides(db: AsyncSession, platform: Platform) -> list[MenuOverlayItem]:
    """Every menu item (by category, then name) with the platform overlay applied."""
    result = await db.execute(select(MenuItem).order_by(MenuItem.category, MenuItem.name))
    menu_items = result.scalars().all()

    config = await find_config(db, platform)
    overrides = {o.menu_item_id: o for o in (config.menu_overrides if config else [])}

    overlay = []
    for item in menu_items:
        override = overrides.get(item.id)
        overlay.append(
            MenuOverlayItem(
                id=item.id,
                name=item.name,
                category=item.category,
                base_price=item.price,
                is_veg=item.is_veg,
                available=item.available,
                platform_price=override.platform_price if override else None,
                platform_available=override.is_available if override else True,
            )
        )
    return overlay


async def replace_menu_overrides(
    db: AsyncSession,
    platform: Platform,
    overrides: list[MenuOverrideIn],
) -> int:
    """
    Replace the platform's override list wholesale.

    Raises:
        UnknownMenuItems: an entry points at a menu item that does not exist
    """
    requested_ids = {o.menu_item_id for o in overrides}
    if requested_ids:
        result = await db.execute(select(MenuItem.id).where(MenuItem.id.in_(requested_ids)))
        missing = sorted(requested_ids - set(result.scalars().all()))
        if missing:
            raise UnknownMenuItems(missing)

    config = await _get_or_create(db, platform)
    config.menu_overrides = [
        MenuOverride(
            menu_item_id=o.menu_item_id,
            platform_price=o.platform_price,
            is_available=o.is_available,
            position=position,
        )
        for position, o in enumerate(overrides)
    ]
    await db.commit()

    logger.info(f"{platform.value}: saved {len(overrides)} menu overrides")
    return len(overrides)


async def sync_menu(db: AsyncSession, platform: Platform) -> datetime:
    """
    Push the menu to the platform and record the sync time.

    The push itself is a stub until platform menu APIs are integrated.

    Raises:
        PlatformNotEnabled: integration missing or disabled
    """
    config = await find_config(db, platform)
    if config is None or not config.is_enabled:
        raise PlatformNotEnabled(f"{platform.value} integration is not enabled")

    synced_at = datetime.now(timezone.utc)
    config.last_sync_at = synced_at
    await db.commit()

    logger.info(f"Menu sync initiated for {platform.value}")
    return synced_at
