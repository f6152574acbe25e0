import itertools
import os
import threading
import uuid
from dataclasses import replace

# Settings must exist before qrpromo.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_qrpromo.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.pop("RESEND_API_KEY", None)

import pytest

from qrpromo.config import GatewayConfig
from qrpromo.errors import PersistenceError
from qrpromo.gateway import GatewayClient, RegisteredTransaction, TransactionStatus
from qrpromo.provisioner import CampaignProvisioner
from qrpromo.reconciliation import OrderReconciler
from qrpromo.storage import CampaignRecord, OrderRecord, QrCodeRecord, ScanResult, Storage

CRC = "test-crc-secret"


class MemoryStorage(Storage):
    """Storage fake with the same conditional-update semantics as SqlStorage."""

    def __init__(self):
        self.lock = threading.Lock()
        self.orders = {}
        self.claims = set()
        self.campaigns = {}
        self.qr_codes = []
        self.fail_qr_insert = False
        self.short_qr_insert = False
        self._ids = itertools.count(1)

    def create_order(self, values):
        with self.lock:
            order = OrderRecord(
                id=str(uuid.uuid4()),
                session_id=values["session_id"],
                email=values["email"],
                amount=values["amount"],
                currency=values["currency"],
                payment_method=values["payment_method"],
                status="pending",
                campaign_payload=values["campaign_payload"],
            )
            self.orders[order.id] = order
            return order

    def get_order_by_session(self, session_id):
        with self.lock:
            return next((o for o in self.orders.values() if o.session_id == session_id), None)

    def attach_transaction(self, order_id, token, gateway_order_id):
        with self.lock:
            self.orders[order_id] = replace(self.orders[order_id], p24_token=token, p24_order_id=gateway_order_id)

    def claim_provisioning(self, order_id):
        with self.lock:
            if self.orders[order_id].status != "pending" or order_id in self.claims:
                return False
            self.claims.add(order_id)
            return True

    def release_claim(self, order_id):
        with self.lock:
            if self.orders[order_id].status != "pending":
                return False
            self.claims.discard(order_id)
            return True

    def mark_paid(self, order_id, campaign_id, paid_at, gateway_order_id=None):
        with self.lock:
            order = self.orders[order_id]
            if order.status != "pending":
                return False
            self.orders[order_id] = replace(
                order,
                status="paid",
                campaign_id=campaign_id,
                paid_at=paid_at,
                failure_reason=None,
                p24_order_id=gateway_order_id if gateway_order_id is not None else order.p24_order_id,
            )
            return True

    def mark_failed(self, order_id, reason):
        with self.lock:
            order = self.orders[order_id]
            if order.status == "paid":
                return False
            self.orders[order_id] = replace(order, status="failed", failure_reason=reason)
            return True

    def insert_campaign(self, values):
        with self.lock:
            campaign = CampaignRecord(id=f"campaign-{next(self._ids)}", **values)
            self.campaigns[campaign.id] = campaign
            return campaign

    def insert_qr_codes(self, campaign_id, rows):
        if self.fail_qr_insert:
            raise PersistenceError("insert_qr_codes failed: unique violation")
        with self.lock:
            if self.short_qr_insert:
                rows = rows[:1]
            codes = [QrCodeRecord(campaign_id=campaign_id, **row) for row in rows]
            self.qr_codes.extend(codes)
            return codes

    def delete_campaign(self, campaign_id):
        with self.lock:
            self.qr_codes = [c for c in self.qr_codes if c.campaign_id != campaign_id]
            self.campaigns.pop(campaign_id, None)

    def get_campaign(self, campaign_id):
        return self.campaigns.get(campaign_id)

    def get_qr_codes(self, campaign_id):
        return [c for c in self.qr_codes if c.campaign_id == campaign_id]

    def consume_scan(self, token):
        with self.lock:
            qr = next((c for c in self.qr_codes if c.token == token), None)
            if qr is None:
                return None
            campaign = self.campaigns[qr.campaign_id]
            if qr.is_test:
                active = campaign.remaining_scans > 0
            elif campaign.remaining_scans > 0:
                campaign = replace(campaign, remaining_scans=campaign.remaining_scans - 1)
                self.campaigns[campaign.id] = campaign
                active = True
            else:
                active = False
            return ScanResult(
                campaign_id=campaign.id,
                status="active" if active else "expired",
                remaining_scans=campaign.remaining_scans,
                promotion_type=campaign.promotion_type,
                promo_code=campaign.promo_code,
                redirect_url=campaign.redirect_url,
                image_url=campaign.image_url,
                cashier_code=campaign.cashier_code,
                is_test=qr.is_test,
            )


def fake_renderer(urls):
    return [f"data:image/png;base64,{url}" for url in urls]


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        merchant_id=11111,
        pos_id=11111,
        api_key="api-key",
        crc=CRC,
        api_url="https://gateway.test/api/v1",
        payment_url="https://gateway.test",
    )


@pytest.fixture
def gateway(mocker, gateway_config):
    mock = mocker.Mock(spec=GatewayClient)
    mock.config = gateway_config
    mock.build_redirect_url.side_effect = GatewayClient(gateway_config).build_redirect_url
    mock.register_transaction.return_value = RegisteredTransaction(token="p24-token", order_id=987654)
    mock.verify_transaction.return_value = TransactionStatus(status="success")
    return mock


@pytest.fixture
def mailer(mocker):
    return mocker.Mock()


@pytest.fixture
def provisioner(memory_storage, mailer):
    return CampaignProvisioner(memory_storage, mailer=mailer, renderer=fake_renderer)


@pytest.fixture
def reconciler(memory_storage, provisioner, gateway, gateway_config):
    return OrderReconciler(memory_storage, provisioner, lambda: gateway, lambda: gateway_config)


def campaign_spec_payload(**overrides):
    payload = {
        "email": "owner@kawiarnia.pl",
        "maxScans": 100,
        "promotionType": "promo_code",
        "promoCode": "SUMMER10",
        "cashierCode": "K-42",
        "title": "Summer",
    }
    payload.update(overrides)
    return payload


def order_payload(method="transfer", price=49.99, **overrides):
    payload = campaign_spec_payload()
    payload.update({
        "price": price,
        "invoiceRequested": False,
        "extension": {"units": 0, "extraDays": 0, "extraCost": 0, "totalValidityDays": 30},
        "payment": {"method": method},
    })
    if method == "immediate-code":
        payload["payment"]["code"] = "123456"
    payload.update(overrides)
    return payload
