import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from billing.config import configure_logging, get_settings
from billing.database import Base, engine
from billing.dependencies import get_webhook_processor
from billing.errors import BillingError
from billing.routes import router

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Tutoring Payments Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code,
                     getattr(exc, "provider_message", None) or exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Signature is checked against the raw, unparsed body
@app.post("/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    processor=Depends(get_webhook_processor),
):
    payload = await request.body()
    return await run_in_threadpool(processor.handle_event, payload, stripe_signature)
