import math

import pydantic
import pytest

from conftest import campaign_spec_payload, order_payload
from qrpromo.errors import ConfigurationError, ValidationError
from qrpromo.validation import (
    CampaignSpec,
    OrderRequest,
    WebhookNotification,
    assert_promotion_consistency,
    campaign_row,
    to_minor_units,
)


@pytest.mark.parametrize("price,amount", [(49.99, 4999), (0.01, 1), (10, 1000), (19.995, 2000)])
def test_to_minor_units(price, amount):
    assert to_minor_units(price) == amount


@pytest.mark.parametrize("price", [0, -5, 0.001, math.inf, math.nan])
def test_to_minor_units_rejects_non_positive_and_non_finite(price):
    with pytest.raises(ValidationError):
        to_minor_units(price)


@pytest.mark.parametrize("overrides,message", [
    ({"promotionType": "redirect", "promoCode": None}, "redirectUrl"),
    ({"promotionType": "promo_code", "promoCode": None}, "promoCode"),
    ({"promotionType": "image", "promoCode": None}, "imagePath"),
])
def test_promotion_consistency(overrides, message):
    spec = CampaignSpec.model_validate(campaign_spec_payload(**overrides))
    with pytest.raises(ValidationError, match=message):
        assert_promotion_consistency(spec)


def test_campaign_row_resolves_image_url(monkeypatch):
    monkeypatch.setenv("STORAGE_PUBLIC_URL", "https://store.example.com/")
    monkeypatch.delenv("PROMO_ASSET_BUCKET", raising=False)
    spec = CampaignSpec.model_validate(campaign_spec_payload(promotionType="image", imagePath="/promos/a.png"))

    row = campaign_row(spec)

    assert row["image_url"] == "https://store.example.com/storage/v1/object/public/promo-assets/promos/a.png"
    assert row["remaining_scans"] == row["max_scans"] == 100


def test_campaign_row_requires_storage_url_for_images(monkeypatch):
    monkeypatch.delenv("STORAGE_PUBLIC_URL", raising=False)
    spec = CampaignSpec.model_validate(campaign_spec_payload(promotionType="image", imagePath="a.png"))
    with pytest.raises(ConfigurationError):
        campaign_row(spec)


def test_order_request_requires_code_for_immediate_payments():
    payload = order_payload(method="immediate-code")
    del payload["payment"]["code"]
    with pytest.raises(pydantic.ValidationError):
        OrderRequest.model_validate(payload)


def test_order_request_rejects_malformed_code():
    payload = order_payload(method="immediate-code")
    payload["payment"]["code"] = "12345a"
    with pytest.raises(pydantic.ValidationError):
        OrderRequest.model_validate(payload)


def test_storage_payload_drops_payment_code():
    request = OrderRequest.model_validate(order_payload(method="immediate-code"))
    stored = request.storage_payload()
    assert stored["payment"] == {"method": "immediate-code"}
    assert stored["maxScans"] == 100
    assert request.campaign_spec().promo_code == "SUMMER10"


def test_webhook_accepts_numeric_strings():
    notification = WebhookNotification.model_validate({
        "merchantId": "11111", "posId": 11111, "sessionId": "s", "amount": "4999",
        "currency": "PLN", "orderId": "987654", "sign": "x", "status": "success",
    })
    assert notification.amount == 4999
    assert notification.order_id == 987654


def test_webhook_rejects_fractional_amount():
    with pytest.raises(pydantic.ValidationError):
        WebhookNotification.model_validate({
            "merchantId": 1, "posId": 1, "sessionId": "s", "amount": "49.99",
            "currency": "PLN", "orderId": 1, "sign": "x", "status": "success",
        })
