"""Webhook handling endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
import logging

from connector_service.core.exceptions import IntegrationError
from connector_service.models import WebhookAck
from connector_service.services import WebhookRouter
from connector_service.api.dependencies import get_webhook_router, http_error

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{provider}")
async def verify_webhook(
    provider: str,
    request: Request,
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    """Answer a verification handshake by echoing the challenge."""
    try:
        challenge = webhook_router.challenge(provider, request.query_params)
    except IntegrationError as e:
        raise http_error(e)

    if challenge is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing challenge parameter"
        )
    return PlainTextResponse(challenge)


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    """Handle incoming webhooks from providers."""
    try:
        # Microsoft Graph validates the endpoint with a POST
        challenge = webhook_router.challenge(provider, request.query_params, method="POST")
        if challenge is not None:
            return PlainTextResponse(challenge)

        body = await request.body()
        return await webhook_router.receive(provider, body, request.headers)
    except IntegrationError as e:
        logger.warning(f"Webhook for {provider} rejected: {e.message}")
        raise http_error(e)
