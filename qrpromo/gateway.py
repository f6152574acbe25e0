from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from qrpromo.config import GatewayConfig
from qrpromo.errors import GatewayError, GatewayProtocolError
from qrpromo.signing import sign

logger = structlog.get_logger(__name__)

DEFAULT_CUSTOMER_IP = "127.0.0.1"


@dataclass(frozen=True)
class RegisteredTransaction:
    token: str
    order_id: Any


@dataclass(frozen=True)
class TransactionStatus:
    status: str


class GatewayClient:
    """Przelewy24 REST client.

    Every call is synchronous and signed with the merchant CRC. Failures are
    raised as ``GatewayError``; a success envelope without a ``data`` payload
    is a ``GatewayProtocolError``.
    """

    def __init__(self, config: GatewayConfig, http_client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout
        self._http_client = http_client

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self.timeout)
        return self._http_client

    def close(self):
        if self._http_client is not None:
            self._http_client.close()

    def _call(self, method: str, path: str, body: Dict[str, Any]) -> Any:
        url = f"{self.config.api_url.rstrip('/')}/{path}"
        try:
            response = self._client().request(
                method,
                url,
                json=body,
                auth=(str(self.config.pos_id), self.config.api_key),
            )
        except httpx.HTTPError as e:
            logger.error("gateway_unreachable", path=path, error=str(e))
            raise GatewayError(f"Przelewy24 request to {path} failed: {e}") from e

        parsed = None
        if response.text:
            try:
                parsed = response.json()
            except ValueError as e:
                logger.error("gateway_unparseable_response", path=path, body=response.text[:500])
                raise GatewayError("Unexpected response from Przelewy24") from e

        if response.is_error:
            logger.error("gateway_api_error", path=path, status_code=response.status_code, body=parsed or response.text)
            raise GatewayError(f"Przelewy24 API request failed with status {response.status_code}")

        if isinstance(parsed, dict) and "data" in parsed:
            data = parsed["data"]
        else:
            data = parsed

        if not data:
            logger.error("gateway_empty_payload", path=path, body=parsed)
            raise GatewayProtocolError("Przelewy24 API returned empty payload")

        return data

    def register_transaction(
        self,
        session_id: str,
        amount: int,
        currency: str,
        description: str,
        email: str,
        url_return: str,
        url_status: str,
        country: str = "PL",
        language: str = "pl",
        customer_ip: Optional[str] = None,
    ) -> RegisteredTransaction:
        config = self.config
        signature = sign([config.merchant_id, config.pos_id, session_id, amount, currency], config.crc)
        data = self._call("POST", "transaction/register", {
            "merchantId": config.merchant_id,
            "posId": config.pos_id,
            "sessionId": session_id,
            "amount": amount,
            "currency": currency,
            "description": description,
            "email": email,
            "country": country,
            "language": language,
            "urlReturn": url_return,
            "urlStatus": url_status,
            "customerIp": customer_ip or DEFAULT_CUSTOMER_IP,
            "sign": signature,
        })

        if not isinstance(data, dict) or not data.get("token"):
            raise GatewayProtocolError("Przelewy24 registration response lacks a token")

        logger.info("gateway_transaction_registered", session_id=session_id, gateway_order_id=data.get("orderId"))
        return RegisteredTransaction(token=data["token"], order_id=data.get("orderId"))

    def charge_immediate_code(self, token: str, code: str) -> None:
        config = self.config
        signature = sign([config.merchant_id, token, code], config.crc)
        self._call("POST", "paymentmethods/blik/charge", {
            "merchantId": config.merchant_id,
            "posId": config.pos_id,
            "token": token,
            "blikCode": code,
            "sign": signature,
        })

    def verify_transaction(self, session_id: str, amount: int, currency: str, order_id: int) -> TransactionStatus:
        config = self.config
        signature = sign([session_id, order_id, amount, currency], config.crc)
        data = self._call("PUT", "transaction/verify", {
            "merchantId": config.merchant_id,
            "posId": config.pos_id,
            "sessionId": session_id,
            "amount": amount,
            "currency": currency,
            "orderId": order_id,
            "sign": signature,
        })

        if not isinstance(data, dict) or "status" not in data:
            raise GatewayProtocolError("Przelewy24 verification response lacks a status")
        return TransactionStatus(status=str(data["status"]))

    def build_redirect_url(self, token: str) -> str:
        return f"{self.config.payment_url.rstrip('/')}/trnRequest/{token}"
