class QrPromoError(Exception):
    """Base error. ``public_message`` is what API clients get to see."""

    public_message = "Failed to process the request"

    def __init__(self, message=None, public_message=None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(QrPromoError):
    public_message = "Invalid payload"

    def __init__(self, message=None, public_message=None):
        # Validation messages are client-fixable, so they are safe to echo back
        super().__init__(message, public_message or message)


class ConfigurationError(QrPromoError):
    public_message = "Service is misconfigured"


class GatewayError(QrPromoError):
    public_message = "Payment gateway request failed"


class GatewayProtocolError(GatewayError):
    public_message = "Unexpected response from payment gateway"


class PersistenceError(QrPromoError):
    public_message = "Failed to persist data"


class SignatureMismatch(QrPromoError):
    public_message = "Invalid signature"


class OrderNotFound(QrPromoError):
    public_message = "Order not found"


class QrRenderError(QrPromoError):
    """Images could not be rendered; the campaign and its tokens are already stored."""

    public_message = "Failed to render QR codes"

    def __init__(self, campaign_id, message=None):
        super().__init__(message)
        self.campaign_id = campaign_id
