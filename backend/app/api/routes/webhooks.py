"""Inbound provider webhook endpoint."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.deps import get_webhook_ingestion
from app.core.exceptions import AuthenticationError, MalformedEventError, ProviderNotConfiguredError
from app.schemas.reports import AckResult
from app.services.webhook_ingestion import WebhookIngestion

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/provider", response_model=AckResult)
async def provider_webhook(
    request: Request,
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    """Receive a provider notification.

    200 once the event is recorded, even when reconciliation is deferred to
    the sync scheduler. 401 on a bad signature, 400 on an unknown payload,
    503 when signatures are enforced but no secret is configured.
    """
    payload = await request.body()
    try:
        return await ingestion.handle(payload, request.headers)
    except ProviderNotConfiguredError:
        logger.error("webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Webhook verification not configured")
    except AuthenticationError as e:
        logger.warning("webhook_signature_rejected", reason=str(e))
        raise HTTPException(status_code=401, detail="Invalid signature")
    except MalformedEventError as e:
        raise HTTPException(status_code=400, detail=str(e))
