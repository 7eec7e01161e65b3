"""
Platform Status Callback Dispatcher

Tells a delivery platform that one of its orders changed state (accepted,
food ready, picked up, cancelled). Notification is best-effort and must never
block or fail the staff action or webhook that triggered it:

    1. notify() resolves config, action and endpoint, then enqueues a Celery
       job and returns immediately with a disposition.
    2. The worker (deliver_callback) loads credentials, POSTs with a bounded
       timeout, logs the outcome and records the platform connection status.

Delivery is at-most-once: the job is never retried.

Usage:
    dispatcher = get_callback_dispatcher()
    result = await dispatcher.notify(db, Platform.SWIGGY, "SW-1001", OrderStatus.PREPARING)
    print(result.disposition)  # CallbackDisposition.DISPATCHED

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models import ConnectionStatus, OrderStatus, Platform, PlatformConfig

logger = logging.getLogger(__name__)


class CallbackAction(str, Enum):
    ACCEPT = "accept"
    READY = "ready"
    PICKED_UP = "picked_up"
    CANCEL = "cancel"
    MENU_SYNC = "menu_sync"


STATUS_ACTION_MAP: dict[OrderStatus, CallbackAction] = {
    OrderStatus.PREPARING: CallbackAction.ACCEPT,
    OrderStatus.READY: CallbackAction.READY,
    OrderStatus.COMPLETED: CallbackAction.PICKED_UP,
    OrderStatus.CANCELLED: CallbackAction.CANCEL,
}

# Path templates per platform; {order_id} is the platform's own order id
PLATFORM_ENDPOINTS: dict[Platform, dict[CallbackAction, str]] = {
    Platform.SWIGGY: {
        CallbackAction.ACCEPT: "/api/v1/orders/{order_id}/accept",
        CallbackAction.READY: "/api/v1/orders/{order_id}/ready",
        CallbackAction.PICKED_UP: "/api/v1/orders/{order_id}/picked-up",
        CallbackAction.CANCEL: "/api/v1/orders/{order_id}/cancel",
        CallbackAction.MENU_SYNC: "/api/v1/menu/sync",
    },
    Platform.ZOMATO: {
        CallbackAction.ACCEPT: "/api/v1/orders/{order_id}/accept",
        CallbackAction.READY: "/api/v1/orders/{order_id}/food-ready",
        CallbackAction.PICKED_UP: "/api/v1/orders/{order_id}/picked-up",
        CallbackAction.CANCEL: "/api/v1/orders/{order_id}/cancel",
        CallbackAction.MENU_SYNC: "/api/v1/menu/push",
    },
}

# Responses that say the credentials or the platform itself are at fault
_CONNECTION_ERROR_CODES = {401, 403}


class CallbackDisposition(str, Enum):
    DISPATCHED = "dispatched"
    NOT_CONFIGURED = "not_configured"
    UNMAPPED_STATUS = "unmapped_status"
    NO_ENDPOINT = "no_endpoint"
    ENQUEUE_FAILED = "enqueue_failed"


@dataclass
class CallbackResult:
    """Local outcome of a notify() call. Says nothing about remote delivery."""
    disposition: CallbackDisposition
    action: Optional[CallbackAction] = None
    url: Optional[str] = None
    task_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.disposition == CallbackDisposition.DISPATCHED

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "disposition": self.disposition.value,
            "action": self.action.value if self.action else None,
        }


def resolve_endpoint(
    base_url: str,
    platform: Platform,
    action: CallbackAction,
    platform_order_id: Optional[str] = None,
) -> Optional[str]:
    """Absolute URL for an action, or None if the platform has no such endpoint."""
    template = PLATFORM_ENDPOINTS.get(platform, {}).get(action)
    if template is None:
        return None
    path = template.replace("{order_id}", platform_order_id or "")
    return f"{base_url.rstrip('/')}{path}"


def build_callback_payload(
    platform_order_id: str,
    action: CallbackAction,
    preparation_time: Optional[int] = None,
    extra_data: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """JSON body of a status callback. Prep time is only sent when accepting."""
    payload: dict[str, Any] = {
        "order_id": platform_order_id,
        "status": action.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(extra_data or {}),
    }
    if action == CallbackAction.ACCEPT and preparation_time:
        payload["preparation_time"] = preparation_time
    return payload


def _enqueue_with_celery(platform: Platform, url: str, payload: dict[str, Any]) -> str:
    # Imported here: app.tasks imports this module
    from app.tasks import deliver_status_callback

    async_result = deliver_status_callback.delay(platform.value, url, payload)
    return async_result.id


class StatusCallbackDispatcher:
    """
    Maps internal order status changes to platform callbacks.

    The enqueue function is injectable so the dispatcher can run without a
    broker (tests, one-off scripts).
    """

    def __init__(self, enqueue: Optional[Callable[[Platform, str, dict], str]] = None):
        self._enqueue = enqueue or _enqueue_with_celery

    async def notify(
        self,
        db: AsyncSession,
        platform: Platform,
        platform_order_id: str,
        status: OrderStatus,
        extra_data: Optional[dict[str, Any]] = None,
    ) -> CallbackResult:
        """
        Schedule a status notification and return without waiting for it.

        Never raises for delivery problems; the disposition tells the caller
        whether a notification was scheduled.
        """
        result = await db.execute(
            select(PlatformConfig).where(PlatformConfig.platform == platform)
        )
        config = result.scalar_one_or_none()

        if config is None or not config.is_enabled or not config.platform_base_url:
            logger.info(
                f"[StatusCallback] Skipping {platform.value} order {platform_order_id}: "
                f"integration not configured/enabled"
            )
            return CallbackResult(disposition=CallbackDisposition.NOT_CONFIGURED)

        action = STATUS_ACTION_MAP.get(status)
        if action is None:
            logger.info(f"[StatusCallback] No action mapped for status: {status.value}")
            return CallbackResult(disposition=CallbackDisposition.UNMAPPED_STATUS)

        url = resolve_endpoint(config.platform_base_url, platform, action, platform_order_id)
        if url is None:
            return CallbackResult(disposition=CallbackDisposition.NO_ENDPOINT, action=action)

        payload = build_callback_payload(
            platform_order_id,
            action,
            preparation_time=config.default_prep_time,
            extra_data=extra_data,
        )

        try:
            task_id = self._enqueue(platform, url, payload)
        except Exception as e:
            # Broker down must not fail the staff action that got us here
            logger.error(
                f"[StatusCallback] Could not enqueue {platform.value} {action.value} "
                f"for {platform_order_id}: {e}"
            )
            return CallbackResult(
                disposition=CallbackDisposition.ENQUEUE_FAILED,
                action=action,
                url=url,
            )

        logger.info(
            f"[StatusCallback] Dispatched {platform.value} {action.value} "
            f"for {platform_order_id} (task={task_id})"
        )
        return CallbackResult(
            disposition=CallbackDisposition.DISPATCHED,
            action=action,
            url=url,
            task_id=task_id,
        )


@lru_cache()
def get_callback_dispatcher() -> StatusCallbackDispatcher:
    """Get the process-wide dispatcher (Celery-backed)."""
    return StatusCallbackDispatcher()


# =============================================================================
# WORKER SIDE
# =============================================================================

async def deliver_callback(
    db: AsyncSession,
    platform: Platform,
    url: str,
    payload: dict[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, Any]:
    """
    Perform one outbound status notification.

    Credentials are read here rather than carried in the job message. The
    outcome is logged and written to the config's connection status; it is
    never raised.
    """
    settings = get_settings()

    result = await db.execute(
        select(PlatformConfig).where(PlatformConfig.platform == platform)
    )
    config = result.scalar_one_or_none()
    if config is None or not config.is_enabled:
        logger.info(f"[StatusCallback] {platform.value} disabled before delivery, dropping {url}")
        return {"success": False, "reason": "not_configured", "url": url}

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {config.api_key}",
        "X-Store-Id": config.store_id,
    }

    start_time = time.monotonic()
    status_code: Optional[int] = None
    error: Optional[str] = None

    try:
        async with httpx.AsyncClient(
            timeout=settings.callback_timeout_seconds,
            transport=transport,
        ) as client:
            response = await client.post(url, json=payload, headers=headers)
        status_code = response.status_code
        if not response.is_success:
            error = f"HTTP {status_code}"
    except httpx.HTTPError as e:
        error = f"{type(e).__name__}: {e}"

    elapsed_ms = round((time.monotonic() - start_time) * 1000, 1)
    success = error is None
    action = payload.get("status")

    if success:
        logger.info(
            f"[StatusCallback] {platform.value} {action} for {payload.get('order_id')}: "
            f"{status_code} in {elapsed_ms}ms"
        )
    else:
        logger.error(
            f"[StatusCallback] {platform.value} {action} for {payload.get('order_id')} "
            f"failed after {elapsed_ms}ms: {error}"
        )

    unreachable = status_code is None or status_code >= 500 or status_code in _CONNECTION_ERROR_CODES
    config.connection_status = ConnectionStatus.ERROR if unreachable else ConnectionStatus.CONNECTED
    await db.commit()

    return {
        "success": success,
        "url": url,
        "status_code": status_code,
        "error": error,
        "elapsed_ms": elapsed_ms,
    }
