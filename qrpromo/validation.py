import math
import os
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from qrpromo.errors import ConfigurationError, ValidationError


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CampaignSpec(_Payload):
    email: EmailStr
    max_scans: int = Field(gt=0, le=100000)
    promotion_type: Literal["redirect", "promo_code", "image"]
    redirect_url: Optional[str] = Field(default=None, max_length=2048)
    promo_code: Optional[str] = Field(default=None, max_length=255)
    cashier_code: Optional[str] = Field(default=None, max_length=255)
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1024)
    image_path: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("redirect_url")
    @classmethod
    def _absolute_url(cls, value):
        if value is None:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("redirectUrl must be an absolute http(s) URL")
        return value


class Extension(_Payload):
    units: int = Field(ge=0, le=365)
    extra_days: int = Field(ge=0)
    extra_cost: float = Field(ge=0)
    total_validity_days: int = Field(gt=0)


class PaymentDetails(_Payload):
    method: Literal["immediate-code", "transfer"]
    code: Optional[str] = Field(default=None, pattern=r"^[0-9]{6}$")


class OrderRequest(CampaignSpec):
    campaign_start: Optional[str] = Field(default=None, max_length=64)
    invoice_requested: bool = False
    invoice_details: Optional[str] = Field(default=None, max_length=2048)
    notes: Optional[str] = Field(default=None, max_length=2048)
    price: float = Field(gt=0, allow_inf_nan=False)
    extension: Extension
    payment: PaymentDetails

    @model_validator(mode="after")
    def _code_for_immediate_payments(self):
        if self.payment.method == "immediate-code" and not self.payment.code:
            raise ValueError("A 6-digit code is required for immediate-code payments")
        return self

    def campaign_spec(self) -> CampaignSpec:
        return CampaignSpec.model_validate(self.model_dump(include=set(CampaignSpec.model_fields)))

    def storage_payload(self) -> dict:
        """The request as stored on the order: the one-time payment code is dropped."""
        payload = self.model_dump(by_alias=True, exclude={"payment"})
        payload["payment"] = {"method": self.payment.method}
        return payload


def assert_promotion_consistency(spec: CampaignSpec):
    if spec.promotion_type == "redirect" and not spec.redirect_url:
        raise ValidationError("redirectUrl is required for redirect promotions")
    if spec.promotion_type == "promo_code" and not spec.promo_code:
        raise ValidationError("promoCode is required for promo_code promotions")
    if spec.promotion_type == "image" and not spec.image_path:
        raise ValidationError("imagePath is required for image promotions")


def resolve_image_url(spec: CampaignSpec) -> Optional[str]:
    if spec.promotion_type != "image" or not spec.image_path:
        return None

    storage_url = os.getenv("STORAGE_PUBLIC_URL")
    if not storage_url:
        raise ConfigurationError("Missing STORAGE_PUBLIC_URL environment variable")
    bucket = os.getenv("PROMO_ASSET_BUCKET") or "promo-assets"
    path = spec.image_path.lstrip("/")
    return f"{storage_url.rstrip('/')}/storage/v1/object/public/{bucket}/{path}"


def campaign_row(spec: CampaignSpec) -> dict:
    return {
        "email": spec.email,
        "max_scans": spec.max_scans,
        "remaining_scans": spec.max_scans,
        "promotion_type": spec.promotion_type,
        "promo_code": spec.promo_code,
        "redirect_url": spec.redirect_url,
        "image_url": resolve_image_url(spec),
        "cashier_code": spec.cashier_code,
        "title": spec.title,
        "description": spec.description,
    }


def to_minor_units(price) -> int:
    """Price in major units to an integer amount, rounded half-up."""
    try:
        if isinstance(price, float) and not math.isfinite(price):
            raise InvalidOperation
        amount = int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Invalid amount computed from price")
    if amount <= 0:
        raise ValidationError("Invalid amount computed from price")
    return amount


def _numeric_like(value):
    if isinstance(value, bool):
        raise ValueError("must be an integer or a numeric string")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"[0-9]+", value):
        return int(value)
    raise ValueError("must be an integer or a numeric string")


NumericLike = Annotated[int, BeforeValidator(_numeric_like)]


class WebhookNotification(_Payload):
    merchant_id: NumericLike
    pos_id: NumericLike
    session_id: str
    amount: NumericLike
    currency: str
    order_id: NumericLike
    sign: str
    status: str
