"""Inbound provider webhooks. No cookies, no CSRF: the HMAC signature is the credential."""

import hashlib
import hmac
import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from sessionguard.api.deps import get_settings
from sessionguard.config import Settings
from sessionguard.core.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


async def verify_webhook_signature(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> bytes:
    """Return the raw body once `X-Webhook-Signature` matches; 401 otherwise."""
    body = await request.body()
    if not settings.webhook_signing_secret:
        logger.warning("Webhook rejected: signing secret not configured path=%s", request.url.path)
        raise AuthenticationError("Webhook signing is not configured", error="Invalid signature")
    presented = (request.headers.get(SIGNATURE_HEADER) or "").strip()
    if presented.startswith("sha256="):
        presented = presented[len("sha256="):]
    expected = compute_signature(settings.webhook_signing_secret, body)
    # Compared as bytes: the header may hold non-ASCII latin-1 text
    if not presented or not hmac.compare_digest(presented.lower().encode("utf-8"), expected.encode("ascii")):
        logger.warning("Webhook signature mismatch path=%s", request.url.path)
        raise AuthenticationError("Webhook signature verification failed", error="Invalid signature")
    return body


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    body: Annotated[bytes, Depends(verify_webhook_signature)],
) -> dict:
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as e:
        raise ValidationError("Webhook body must be JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    logger.info("Webhook received provider=%s type=%s", provider, payload.get("type"))
    return {"ok": True}
