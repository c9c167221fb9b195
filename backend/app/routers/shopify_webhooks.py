from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from app.models_sqlalchemy import get_db
from app.services.shopify_errors import ShopifySignatureError, ShopifyValidationError
from app.services.shopify_webhook_inbox import TOPIC_SLUGS, ShopifyWebhookInbox, shopify_webhook_inbox
from app.utils.logger import logger


router = APIRouter(prefix="/shopify/webhooks", tags=["shopify_webhooks"])


def get_webhook_inbox() -> ShopifyWebhookInbox:
    return shopify_webhook_inbox


@router.post("/{topic}")
async def shopify_webhook(
    topic: str,
    request: Request,
    db: Session = Depends(get_db),
    inbox: ShopifyWebhookInbox = Depends(get_webhook_inbox),
):
    """Shopify webhook destination.

    Responds 401 for a bad signature, 400 for an unparseable body, 500 for
    unexpected faults and 200 for everything else (including duplicates and
    deliveries for unknown or inactive shops) so Shopify stops retrying.
    """

    if topic not in TOPIC_SLUGS:
        return JSONResponse({"ok": False, "error": "unknown_topic"}, status_code=404)

    # Read the body before anything parses it; the HMAC covers these exact bytes.
    raw_body = await request.body()

    try:
        result = inbox.receive(db, topic, raw_body, request.headers)
    except ShopifySignatureError as exc:
        return PlainTextResponse("Invalid signature", status_code=exc.status_code)
    except ShopifyValidationError as exc:
        return JSONResponse({"ok": False, "error": exc.message}, status_code=400)
    except Exception:
        rid = getattr(request.state, "rid", None)
        logger.exception("[shopify-webhook] unexpected failure topic=%s rid=%s", topic, rid)
        return JSONResponse({"ok": False, "error": "internal_error", "rid": rid}, status_code=500)

    return JSONResponse({"ok": True, "status": result.status, "duplicate": result.duplicate})
