"""
Webhook router.

POST /webhooks/{source_id} hands the raw body and headers to the ingestion
pipeline and answers with the ack's status code. Signatures cover the raw
bytes, so the body is never parsed here. Not behind the admin API key:
each source authenticates its own deliveries.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..schemas.webhooks import WebhookAckResponse
from .._hub_state import get_hub_service


router = APIRouter()


@router.post(
    "/{source_id}",
    response_model=WebhookAckResponse,
    responses={
        202: {"model": WebhookAckResponse, "description": "Accepted but not processed"},
        404: {"model": WebhookAckResponse, "description": "Unknown source"},
        503: {"model": WebhookAckResponse, "description": "Processing failed; sender should retry"},
    },
)
async def receive_webhook(source_id: str, request: Request):
    """
    Receive one delivery from a webhook source.

    Processing runs the bound workflow synchronously (in a worker thread),
    waiting for an in-flight run of the same workflow if needed.
    """
    service = get_hub_service()
    raw_body = await request.body()
    headers = dict(request.headers)

    ack = await run_in_threadpool(service.ingest_webhook, source_id, raw_body, headers)
    return JSONResponse(status_code=ack.status_code, content=ack.to_dict())
