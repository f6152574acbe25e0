from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from qrpromo.auth import verify_token
from qrpromo.config import app_base_url, get_gateway_config
from qrpromo.database import SessionLocal
from qrpromo.errors import ValidationError
from qrpromo.gateway import GatewayClient
from qrpromo.provisioner import CampaignProvisioner
from qrpromo.reconciliation import OrderOutcome, OrderReconciler
from qrpromo.redemption import RedemptionGate
from qrpromo.results import Err
from qrpromo.storage import SqlStorage
from qrpromo.validation import CampaignSpec, OrderRequest

router = APIRouter()


def get_storage():
    return SqlStorage(SessionLocal)


def get_provisioner(storage=Depends(get_storage)):
    return CampaignProvisioner(storage)


def get_config_provider():
    return get_gateway_config


def get_gateway_provider(config_provider=Depends(get_config_provider)):
    return lambda: GatewayClient(config_provider())


def get_reconciler(
    storage=Depends(get_storage),
    provisioner=Depends(get_provisioner),
    gateway_provider=Depends(get_gateway_provider),
    config_provider=Depends(get_config_provider),
):
    return OrderReconciler(storage, provisioner, gateway_provider, config_provider)


def customer_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return None


def order_response(outcome: OrderOutcome):
    if outcome.status == "failed":
        if outcome.order is None and isinstance(outcome.error, ValidationError):
            return JSONResponse({"error": outcome.error.public_message}, status_code=400)
        message = outcome.error.public_message if outcome.error else "Failed to process the order"
        return JSONResponse({"error": message}, status_code=502)

    order = outcome.order
    body = {
        "status": outcome.status,
        "order": {
            "id": order.id,
            "sessionId": order.session_id,
            "amount": order.amount,
            "currency": order.currency,
        },
        "payment": {
            "method": outcome.payment_method,
            "orderId": outcome.gateway_order_id,
        },
    }
    if outcome.redirect_url:
        body["payment"]["redirectUrl"] = outcome.redirect_url

    if outcome.status == "pending":
        return JSONResponse(body, status_code=202)

    body["campaign"] = outcome.campaign.to_dict()
    return JSONResponse(body, status_code=201)


@router.post("/orders")
def create_order_api(
    order: OrderRequest,
    request: Request,
    reconciler: OrderReconciler = Depends(get_reconciler),
    auth=Depends(verify_token)
):
    base_url = app_base_url(str(request.base_url))
    outcome = reconciler.create_order(order, base_url, customer_ip(request))
    return order_response(outcome)


@router.post("/campaigns")
def create_campaign_api(
    spec: CampaignSpec,
    request: Request,
    provisioner: CampaignProvisioner = Depends(get_provisioner),
    auth=Depends(verify_token)
):
    result = provisioner.provision(spec, app_base_url(str(request.base_url)))
    if isinstance(result, Err):
        if isinstance(result.error, ValidationError):
            return JSONResponse({"error": result.error.public_message}, status_code=400)
        return JSONResponse({"error": "Failed to create campaign"}, status_code=500)
    return JSONResponse(result.value.to_dict(), status_code=201)


@router.get("/qr/{token}")
async def redeem_api(token: str, storage=Depends(get_storage)):
    redemption = await run_in_threadpool(RedemptionGate(storage).redeem, token)
    return Response(
        content=redemption.body,
        status_code=redemption.status_code,
        headers=redemption.headers,
    )
