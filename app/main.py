from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.daily_log import router as daily_log_router
from app.api.webhooks import get_pipeline, handle_whatsapp_webhook
from app.api.webhooks import router as webhook_router
from app.core.pipeline import CheckinPipeline
from app.db.session import create_tables

APP_VERSION = "1.0.0"

app = FastAPI(title="WhatsApp Coach", version=APP_VERSION)


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/")
def root() -> dict[str, str]:
    return {"status": "WhatsApp Coach API is running", "version": APP_VERSION}


@app.post("/")
async def root_webhook(request: Request, pipeline: CheckinPipeline = Depends(get_pipeline)) -> JSONResponse:
    # Provider consoles are often pointed at the bare service URL.
    return await handle_whatsapp_webhook(request, pipeline)


app.include_router(webhook_router)
app.include_router(daily_log_router)
