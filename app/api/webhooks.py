import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.pipeline import CheckinPipeline, ValidationFailure
from app.db.session import get_db
from app.db.store import SqlPersistenceStore
from app.services.llm import TextGenerationProvider, get_text_generator
from app.services.messaging import MessagingGateway, get_messaging_gateway

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("uvicorn.error")


def get_pipeline(
    db: Session = Depends(get_db),
    generator: TextGenerationProvider = Depends(get_text_generator),
    gateway: MessagingGateway = Depends(get_messaging_gateway),
) -> CheckinPipeline:
    return CheckinPipeline(store=SqlPersistenceStore(db), generator=generator, gateway=gateway)


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            # Undecodable bytes or malformed JSON carry no usable fields.
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


async def handle_whatsapp_webhook(request: Request, pipeline: CheckinPipeline) -> JSONResponse:
    try:
        payload = await _read_payload(request)
        result = await run_in_threadpool(pipeline.handle, payload)
    except ValidationFailure as exc:
        logger.info("Rejected inbound message, missing fields: %s", ", ".join(exc.missing_fields))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid message data"})
    except Exception:
        logger.exception("Error processing webhook")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal server error"}
        )
    return JSONResponse(content={"status": "success", "message_sid": result.message_sid})


@router.post("/whatsapp")
async def whatsapp_webhook(request: Request, pipeline: CheckinPipeline = Depends(get_pipeline)) -> JSONResponse:
    return await handle_whatsapp_webhook(request, pipeline)


@router.get("/whatsapp")
def whatsapp_webhook_status() -> dict[str, str]:
    return {"status": "WhatsApp webhook endpoint is active"}
