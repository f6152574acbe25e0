"""Order lifecycle: ``pending -> paid | failed``.

Both terminal states are absorbing. Orders reach ``paid`` through either the
synchronous immediate-code path or the gateway webhook, and both go through
``_settle``, which claims the order in the store before provisioning so that
exactly one path ever creates the campaign.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import pydantic
import structlog

from qrpromo.config import GatewayConfig, get_gateway_config, resolve_return_url, resolve_status_url
from qrpromo.errors import (
    GatewayError,
    GatewayProtocolError,
    OrderNotFound,
    PersistenceError,
    QrPromoError,
    QrRenderError,
    SignatureMismatch,
    ValidationError,
)
from qrpromo.gateway import GatewayClient
from qrpromo.provisioner import CampaignProvisioner, CampaignResult
from qrpromo.results import Err, Ok, Result
from qrpromo.signing import verify
from qrpromo.storage import OrderRecord, Storage
from qrpromo.validation import CampaignSpec, OrderRequest, WebhookNotification, to_minor_units

logger = structlog.get_logger(__name__)

CURRENCY = "PLN"
COUNTRY = "PL"
LANGUAGE = "pl"
SUCCESS = "success"


def _utcnow():
    return datetime.now(timezone.utc)


def build_description(email: str) -> str:
    base = f"Kampania QR dla {email}"
    return base[:252] + "..." if len(base) > 255 else base


def _gateway_order_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise GatewayProtocolError("Invalid order identifier returned by Przelewy24")


@dataclass(frozen=True)
class OrderOutcome:
    status: str                                 # pending | success | failed
    order: Optional[OrderRecord] = None
    payment_method: Optional[str] = None
    gateway_order_id: Optional[int] = None
    redirect_url: Optional[str] = None
    campaign: Optional[CampaignResult] = None
    error: Optional[QrPromoError] = None


@dataclass(frozen=True)
class WebhookOutcome:
    status: str             # acknowledged | already_processed | processed | rejected | not_found | failed
    campaign_id: Optional[str] = None
    error: Optional[QrPromoError] = None


class OrderReconciler:
    """The only component allowed to move an order between states."""

    def __init__(self, storage: Storage, provisioner: CampaignProvisioner,
                 gateway_provider: Callable[[], GatewayClient],
                 config_provider: Callable[[], GatewayConfig] = get_gateway_config, clock=_utcnow):
        self.storage = storage
        self.provisioner = provisioner
        self.gateway_provider = gateway_provider
        self.config_provider = config_provider
        self.clock = clock

    def create_order(self, request: OrderRequest, base_url: str, customer_ip: Optional[str] = None) -> OrderOutcome:
        method = request.payment.method
        try:
            amount = to_minor_units(request.price)
        except ValidationError as e:
            return OrderOutcome(status="failed", payment_method=method, error=e)

        spec = request.campaign_spec()
        session_id = str(uuid.uuid4())

        try:
            order = self.storage.create_order({
                "session_id": session_id,
                "email": request.email,
                "amount": amount,
                "currency": CURRENCY,
                "payment_method": method,
                "payload": request.storage_payload(),
                "campaign_payload": spec.model_dump(by_alias=True, exclude_none=True),
                "extension": request.extension.model_dump(by_alias=True),
                "invoice_requested": request.invoice_requested,
                "invoice_details": request.invoice_details,
                "notes": request.notes,
            })
        except PersistenceError as e:
            logger.error("order_persist_failed", session_id=session_id, error=str(e))
            return OrderOutcome(status="failed", payment_method=method, error=e)

        log = logger.bind(order_id=order.id, session_id=session_id, payment_method=method)
        log.info("order_created", amount=amount, currency=CURRENCY)

        gateway_order_id = None
        gateway = None
        try:
            gateway = self.gateway_provider()
            registered = gateway.register_transaction(
                session_id=session_id,
                amount=amount,
                currency=CURRENCY,
                description=build_description(request.email),
                email=request.email,
                country=COUNTRY,
                language=LANGUAGE,
                url_return=resolve_return_url(base_url, gateway.config),
                url_status=resolve_status_url(base_url, gateway.config),
                customer_ip=customer_ip,
            )
            gateway_order_id = _gateway_order_id(registered.order_id)
            self.storage.attach_transaction(order.id, registered.token, gateway_order_id)

            if method == "transfer":
                log.info("order_awaiting_transfer", gateway_order_id=gateway_order_id)
                return OrderOutcome(
                    status="pending",
                    order=order,
                    payment_method=method,
                    gateway_order_id=gateway_order_id,
                    redirect_url=gateway.build_redirect_url(registered.token),
                )

            gateway.charge_immediate_code(registered.token, request.payment.code)
            verification = gateway.verify_transaction(session_id, amount, CURRENCY, gateway_order_id)
            if verification.status != SUCCESS:
                raise GatewayError(f"Immediate-code payment not confirmed (status: {verification.status})")
        except Exception as e:
            log.exception("order_payment_failed")
            return self._fail(order, e, base_url, gateway_order_id)
        finally:
            if gateway is not None:
                gateway.close()

        log.info("order_payment_confirmed", gateway_order_id=gateway_order_id)
        settled = self._settle(order, spec, base_url)
        if isinstance(settled, Err):
            log.error("order_paid_but_not_provisioned", error=str(settled.error))
            return OrderOutcome(status="failed", order=order, payment_method=method,
                                gateway_order_id=gateway_order_id, error=settled.error)
        if settled.value is None:
            return self._current_outcome(order, base_url, gateway_order_id)
        return OrderOutcome(status="success", order=order, payment_method=method,
                            gateway_order_id=gateway_order_id, campaign=settled.value)

    def handle_webhook(self, notification: WebhookNotification, base_url: str) -> WebhookOutcome:
        session_id = notification.session_id
        log = logger.bind(session_id=session_id, gateway_order_id=notification.order_id)

        try:
            config = self.config_provider()
        except QrPromoError as e:
            log.error("webhook_config_unavailable", error=str(e))
            return WebhookOutcome(status="failed", error=e)

        if notification.merchant_id != config.merchant_id or notification.pos_id != config.pos_id:
            log.warning("webhook_merchant_mismatch", merchant_id=notification.merchant_id, pos_id=notification.pos_id)
            return WebhookOutcome(status="rejected", error=ValidationError("Merchant mismatch"))

        signed_parts = [session_id, notification.order_id, notification.amount, notification.currency]
        if not verify(signed_parts, config.crc, notification.sign):
            log.warning("webhook_signature_invalid")
            return WebhookOutcome(status="rejected", error=SignatureMismatch())

        try:
            order = self.storage.get_order_by_session(session_id)
        except PersistenceError as e:
            return WebhookOutcome(status="failed", error=PersistenceError(str(e), public_message="Failed to load order"))

        if order is None:
            log.warning("webhook_order_not_found")
            return WebhookOutcome(status="not_found", error=OrderNotFound())

        log = log.bind(order_id=order.id)

        if notification.status != SUCCESS:
            try:
                self._mark_failed(order, f"Gateway status: {notification.status}")
            except PersistenceError as e:
                log.error("order_mark_failed_failed", error=str(e))
                return WebhookOutcome(
                    status="failed",
                    error=PersistenceError(str(e), public_message="Failed to update order"),
                )
            log.info("webhook_payment_failed", gateway_status=notification.status)
            return WebhookOutcome(status="acknowledged")

        if order.status == "paid" and order.campaign_id:
            log.info("webhook_already_processed", campaign_id=order.campaign_id)
            return WebhookOutcome(status="already_processed")

        if order.status == "failed":
            # TODO: route captured-but-failed orders to a refund once the gateway refund API is wired in
            log.error("webhook_success_for_failed_order", failure_reason=order.failure_reason)
            return WebhookOutcome(status="acknowledged")

        try:
            spec = CampaignSpec.model_validate(order.campaign_payload)
        except pydantic.ValidationError as e:
            log.error("stored_campaign_payload_invalid", error=str(e))
            try:
                self._mark_failed(order, "Stored payload invalid")
            except PersistenceError as write_error:
                log.error("order_mark_failed_failed", error=str(write_error))
            return WebhookOutcome(status="failed", error=ValidationError(public_message="Stored payload invalid"))

        settled = self._settle(order, spec, base_url, gateway_order_id=notification.order_id)
        if isinstance(settled, Err):
            return WebhookOutcome(
                status="failed",
                error=QrPromoError(str(settled.error), public_message="Failed to finalize order"),
            )
        if settled.value is None:
            log.info("webhook_lost_provisioning_race")
            return WebhookOutcome(status="already_processed")
        return WebhookOutcome(status="processed", campaign_id=settled.value.campaign_id)

    def _settle(self, order: OrderRecord, spec: CampaignSpec, base_url: str,
                gateway_order_id: Optional[int] = None) -> Result[Optional[CampaignResult]]:
        """Provision the campaign for a paid order and mark it ``paid``.

        ``Ok(None)`` means another path already owns (or finished) this order.
        """
        log = logger.bind(order_id=order.id, session_id=order.session_id)
        try:
            if not self.storage.claim_provisioning(order.id):
                return Ok(None)
        except PersistenceError as e:
            self._abandon(order, str(e))
            return Err(e)

        result = self.provisioner.provision(spec, base_url)
        if isinstance(result, Err):
            log.error("provisioning_failed", error=str(result.error))
            if isinstance(result.error, QrRenderError):
                self.provisioner.discard(result.error.campaign_id)
            self._abandon(order, str(result.error))
            return result

        campaign = result.value
        try:
            won = self.storage.mark_paid(order.id, campaign.campaign_id, self.clock(), gateway_order_id)
        except PersistenceError as e:
            won, error = False, e
        else:
            error = PersistenceError(f"Order {order.id} left pending before it could be marked paid")

        if not won:
            log.error("order_settle_failed", campaign_id=campaign.campaign_id, error=str(error))
            self.provisioner.discard(campaign.campaign_id)
            self._abandon(order, str(error))
            return Err(error)

        log.info("order_paid", campaign_id=campaign.campaign_id)
        return Ok(campaign)

    def _mark_failed(self, order: OrderRecord, reason: str) -> bool:
        """``False`` when the order is already paid. Store errors propagate."""
        changed = self.storage.mark_failed(order.id, reason)
        if changed:
            logger.info("order_failed", order_id=order.id, reason=reason)
        return changed

    def _abandon(self, order: OrderRecord, reason: str):
        """Fail a claimed order, or hand the claim back if the failure cannot be written."""
        try:
            self._mark_failed(order, reason)
            return
        except PersistenceError as e:
            logger.error("order_mark_failed_failed", order_id=order.id, error=str(e))
        try:
            self.storage.release_claim(order.id)
            logger.warning("order_claim_released", order_id=order.id)
        except PersistenceError as e:
            logger.error("order_claim_release_failed", order_id=order.id, error=str(e))

    def _fail(self, order: OrderRecord, error: Exception, base_url: str,
              gateway_order_id: Optional[int]) -> OrderOutcome:
        if not isinstance(error, QrPromoError):
            error = QrPromoError(str(error) or type(error).__name__)
        try:
            if not self._mark_failed(order, str(error)):
                # Already paid through the webhook
                return self._current_outcome(order, base_url, gateway_order_id, error)
        except PersistenceError as e:
            logger.error("order_mark_failed_failed", order_id=order.id, error=str(e))
        return OrderOutcome(status="failed", order=order, payment_method=order.payment_method,
                            gateway_order_id=gateway_order_id, error=error)

    def _current_outcome(self, order: OrderRecord, base_url: str, gateway_order_id: Optional[int],
                         error: Optional[QrPromoError] = None) -> OrderOutcome:
        """Outcome for an order settled (or being settled) by another path."""
        method = order.payment_method
        try:
            current = self.storage.get_order_by_session(order.session_id)
        except PersistenceError as e:
            return OrderOutcome(status="failed", order=order, payment_method=method,
                                gateway_order_id=gateway_order_id, error=e)

        if current is not None and current.status == "paid" and current.campaign_id:
            described = self.provisioner.describe(current.campaign_id, base_url)
            if isinstance(described, Ok):
                return OrderOutcome(status="success", order=current, payment_method=method,
                                    gateway_order_id=gateway_order_id, campaign=described.value)
            return OrderOutcome(status="failed", order=current, payment_method=method,
                                gateway_order_id=gateway_order_id, error=described.error)

        if current is not None and current.status == "pending":
            return OrderOutcome(status="pending", order=current, payment_method=method,
                                gateway_order_id=gateway_order_id)

        return OrderOutcome(status="failed", order=current or order, payment_method=method,
                            gateway_order_id=gateway_order_id,
                            error=error or QrPromoError("Failed to process the order"))
