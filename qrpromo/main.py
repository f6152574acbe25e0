import os

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from qrpromo.config import app_base_url
from qrpromo.database import Base, engine
from qrpromo.logs import configure_logging
from qrpromo.reconciliation import OrderReconciler
from qrpromo.routes import get_reconciler, router
from qrpromo.validation import WebhookNotification

configure_logging()

app = FastAPI(title="QR Promo Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("CORS_ALLOWED_ORIGIN") or "*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    max_age=86400,
)

app.include_router(router)

Base.metadata.create_all(bind=engine)

WEBHOOK_STATUS_CODES = {
    "acknowledged": 200,
    "already_processed": 200,
    "processed": 200,
    "rejected": 400,
    "not_found": 404,
    "failed": 500,
}


@app.exception_handler(RequestValidationError)
async def invalid_payload(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Invalid payload", "details": _details(exc.errors())},
        status_code=400,
    )


def _details(errors):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]


@app.post("/p24-webhook")
async def p24_webhook(request: Request, reconciler: OrderReconciler = Depends(get_reconciler)):
    try:
        notification = WebhookNotification.model_validate(await request.json())
    except PydanticValidationError as e:
        return JSONResponse({"error": "Invalid payload", "details": _details(e.errors())}, status_code=400)
    except ValueError:
        return JSONResponse({"error": "Invalid payload"}, status_code=400)

    base_url = app_base_url(str(request.base_url))
    outcome = await run_in_threadpool(reconciler.handle_webhook, notification, base_url)

    status_code = WEBHOOK_STATUS_CODES[outcome.status]
    if status_code != 200:
        return JSONResponse({"error": outcome.error.public_message}, status_code=status_code)

    body = {"status": outcome.status}
    if outcome.campaign_id:
        body["campaignId"] = outcome.campaign_id
    return body
