import os
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class CampaignSummary:
    email: str
    public_url: str
    test_url: str
    max_scans: int
    promotion_type: str
    promo_code: Optional[str] = None
    redirect_url: Optional[str] = None
    cashier_code: Optional[str] = None


def summary_text(summary: CampaignSummary) -> str:
    lines = [
        f"Maksymalna liczba skanów: {summary.max_scans}",
        f"Link publiczny: {summary.public_url}",
        f"Link testowy: {summary.test_url}",
    ]
    if summary.promo_code:
        lines.append(f"Kod promocyjny: {summary.promo_code}")
    if summary.redirect_url:
        lines.append(f"Adres docelowy: {summary.redirect_url}")
    if summary.cashier_code:
        lines.append(f"Kod kasowy: {summary.cashier_code}")
    return "\n".join(lines)


class SummaryMailer:
    def __init__(self, api_key: Optional[str] = None, sender: Optional[str] = None,
                 http_client: Optional[httpx.Client] = None):
        self.api_key = api_key if api_key is not None else os.getenv("RESEND_API_KEY")
        self.sender = sender if sender is not None else os.getenv("EMAIL_FROM")
        self.http_client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.sender)

    def send(self, summary: CampaignSummary) -> bool:
        if not self.enabled:
            logger.debug("summary_email_disabled", email=summary.email)
            return False

        client = self.http_client or httpx.Client(timeout=10.0)
        try:
            response = client.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.sender,
                    "to": summary.email,
                    "subject": f"Twoja kampania QR ({summary.promotion_type})",
                    "text": summary_text(summary),
                },
            )
        finally:
            if self.http_client is None:
                client.close()

        if response.is_error:
            logger.warning("summary_email_rejected", status_code=response.status_code, body=response.text[:500])
            return False

        logger.info("summary_email_sent", email=summary.email)
        return True
