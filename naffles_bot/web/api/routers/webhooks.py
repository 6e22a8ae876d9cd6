"""Platform webhook receiver.

Platform pushes task, allowlist and community changes here; each event is
handed to :class:`RealTimeSync`, which edits the Discord messages showing
the changed entity. Unknown event types are acknowledged so the Platform
does not keep redelivering them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from naffles_bot.bot.services.container import BotServices
from naffles_bot.web.api.dependencies import get_services, verify_signature
from naffles_bot.web.api.schemas import BatchAck, WebhookAck, WebhookBatch, WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _apply(services: BotServices, event: WebhookEvent) -> WebhookAck:
    result = await services.sync.handle_event(event.event_type, event.payload())
    if result is None:
        return WebhookAck(event_type=event.event_type)
    return WebhookAck(event_type=event.event_type, messages_updated=result.updated, stale=result.stale)


@router.post("/platform", response_model=WebhookAck)
async def receive_platform_event(
    body: bytes = Depends(verify_signature),
    services: BotServices = Depends(get_services),
) -> WebhookAck:
    """Apply one Platform event."""
    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload") from e

    logger.info(f"Received webhook: {event.event_type}")
    return await _apply(services, event)


@router.post("/platform/batch", response_model=BatchAck)
async def receive_platform_batch(
    body: bytes = Depends(verify_signature),
    services: BotServices = Depends(get_services),
) -> BatchAck:
    """Apply a batch of events; one failing event does not stop the rest."""
    try:
        batch = WebhookBatch.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload") from e

    logger.info(f"Received batch webhook {batch.batch_id}: {len(batch.events)} event(s)")
    results = []
    for event in batch.events:
        try:
            ack = await _apply(services, event)
            results.append({"eventType": event.event_type, "success": True, "messagesUpdated": ack.messages_updated})
        except Exception as e:
            logger.error(f"❌ Failed to apply {event.event_type} in batch {batch.batch_id}: {e}")
            results.append({"eventType": event.event_type, "success": False, "error": str(e)})

    processed = sum(1 for result in results if result["success"])
    return BatchAck(batch_id=batch.batch_id, processed=processed, failed=len(results) - processed, results=results)
