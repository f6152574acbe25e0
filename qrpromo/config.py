import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from qrpromo.errors import ConfigurationError

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DEFAULT_API_URL = "https://sandbox.przelewy24.pl/api/v1"
DEFAULT_PAYMENT_URL = "https://sandbox.przelewy24.pl"


@dataclass(frozen=True)
class GatewayConfig:
    merchant_id: int
    pos_id: int
    api_key: str
    crc: str
    api_url: str = DEFAULT_API_URL
    payment_url: str = DEFAULT_PAYMENT_URL
    return_url: Optional[str] = None
    status_url: Optional[str] = None


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ConfigurationError(f"Missing {name} environment variable")
    return value


def _positive_int(name: str) -> int:
    raw = _require(name)
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        raise ConfigurationError(f"Environment variable {name} must be a positive integer")
    return value


def get_gateway_config() -> GatewayConfig:
    return GatewayConfig(
        merchant_id=_positive_int("P24_MERCHANT_ID"),
        pos_id=_positive_int("P24_POS_ID"),
        api_key=_require("P24_REST_API_KEY"),
        crc=_require("P24_CRC"),
        api_url=os.getenv("P24_API_URL") or DEFAULT_API_URL,
        payment_url=os.getenv("P24_PAYMENT_URL") or DEFAULT_PAYMENT_URL,
        return_url=os.getenv("P24_RETURN_URL") or None,
        status_url=os.getenv("P24_STATUS_URL") or None,
    )


def app_base_url(request_origin: str) -> str:
    return (os.getenv("PUBLIC_APP_URL") or request_origin).rstrip("/")


def resolve_return_url(base_url: str, config: GatewayConfig) -> str:
    return config.return_url or os.getenv("PUBLIC_FRONTEND_URL") or base_url


def resolve_status_url(base_url: str, config: GatewayConfig) -> str:
    if config.status_url:
        return config.status_url
    return f"{base_url.rstrip('/')}/p24-webhook"
