"""
Delivery Platform Aggregator

Everything that talks to Swiggy/Zomato:
- signature: webhook HMAC verification
- mapper: platform payload → internal order shape
- ingestion: dedup, kitchen tickets, auto-accept
- callbacks: outbound status notifications (Celery-backed, at-most-once)
- config_store / analytics: admin config, menu overlay, platform stats

Usage:
    from app.services.aggregator.ingestion import get_ingestion_service

    result = await get_ingestion_service().ingest(db, Platform.SWIGGY, raw_body, headers)
    print(result.outcome)  # IngestionOutcome.CREATED

The ingestion service is not re-exported here: it depends on the order
service, which itself depends on the callback dispatcher below.
"""

from app.services.aggregator.callbacks import (
    CallbackAction,
    CallbackDisposition,
    CallbackResult,
    StatusCallbackDispatcher,
    get_callback_dispatcher,
)
from app.services.aggregator.mapper import PayloadMappingError, map_platform_order
from app.services.aggregator.signature import verify_webhook_signature

__all__ = [
    "CallbackAction",
    "CallbackDisposition",
    "CallbackResult",
    "StatusCallbackDispatcher",
    "get_callback_dispatcher",
    "PayloadMappingError",
    "map_platform_order",
    "verify_webhook_signature",
]
