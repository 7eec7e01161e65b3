"""
Webhook Signature Verification

Platforms sign the raw request body with HMAC-SHA256 using the webhook
secret configured for the store. Verification fails closed: a missing body,
signature, secret or config row is always invalid.

Whether to verify at all (no secret configured) is decided by the ingestion
service, not here.
"""

import hashlib
import hmac
import logging
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Platform, PlatformConfig

logger = logging.getLogger(__name__)

FALLBACK_SIGNATURE_HEADER = "x-webhook-signature"

SIGNATURE_HEADERS = {
    Platform.SWIGGY: "x-swiggy-signature",
    Platform.ZOMATO: "x-zomato-signature",
}

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_matches(secret: Optional[str], body: Optional[bytes], signature: Optional[str]) -> bool:
    """
    Constant-time check of a supplied signature against the body.

    Accepts the bare hex digest or the "sha256=<hex>" form.
    """
    if not secret or not body or not signature:
        return False

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def get_signature_from_headers(headers: Mapping[str, str], platform: Platform) -> Optional[str]:
    """
    Platform-specific signature header, then the shared fallback header.

    Header lookup is case-insensitive when `headers` is a Starlette Headers
    object; plain dicts must use lower-case keys.
    """
    header_name = SIGNATURE_HEADERS.get(platform)
    signature = headers.get(header_name) if header_name else None
    if not signature:
        signature = headers.get(FALLBACK_SIGNATURE_HEADER)
    return signature or None


async def verify_webhook_signature(
    db: AsyncSession,
    platform: Platform,
    raw_body: Optional[bytes],
    signature: Optional[str],
) -> bool:
    """Verify a webhook body against the platform's stored secret."""
    if not signature or not raw_body:
        return False

    result = await db.execute(
        select(PlatformConfig).where(PlatformConfig.platform == platform)
    )
    config = result.scalar_one_or_none()
    if config is None or not config.webhook_secret:
        logger.warning(f"{platform.value}: no webhook secret configured, signature rejected")
        return False

    return signature_matches(config.webhook_secret, raw_body, signature)
