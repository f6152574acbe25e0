from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from qrpromo.email import CampaignSummary, SummaryMailer
from qrpromo.errors import PersistenceError, QrPromoError, QrRenderError
from qrpromo.qr import render_many
from qrpromo.results import Err, Ok, Result
from qrpromo.storage import CampaignRecord, QrCodeRecord, Storage
from qrpromo.tokens import generate_token
from qrpromo.validation import CampaignSpec, assert_promotion_consistency, campaign_row

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QrImage:
    token: str
    url: str
    data_url: str

    def to_dict(self):
        return {"token": self.token, "url": self.url, "dataUrl": self.data_url}


@dataclass(frozen=True)
class CampaignResult:
    campaign: CampaignRecord
    public_qr: QrImage
    test_qr: QrImage

    @property
    def campaign_id(self) -> str:
        return self.campaign.id

    def to_dict(self):
        c = self.campaign
        return {
            "campaignId": c.id,
            "maxScans": c.max_scans,
            "promotionType": c.promotion_type,
            "promoCode": c.promo_code,
            "redirectUrl": c.redirect_url,
            "imageUrl": c.image_url,
            "cashierCode": c.cashier_code,
            "title": c.title,
            "description": c.description,
            "publicQr": self.public_qr.to_dict(),
            "testQr": self.test_qr.to_dict(),
        }


def build_qr_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/qr/{token}"


def _split_codes(codes: List[QrCodeRecord]):
    public = next((code for code in codes if not code.is_test), None)
    test = next((code for code in codes if code.is_test), None)
    return public, test


class CampaignProvisioner:
    """Creates a campaign with its public and test scan tokens.

    Never leaves a campaign behind with fewer than two tokens. It does not
    guard against being called twice for the same order; callers own that.
    """

    def __init__(self, storage: Storage, mailer: Optional[SummaryMailer] = None,
                 renderer: Callable[[List[str]], List[str]] = render_many):
        self.storage = storage
        self.mailer = mailer or SummaryMailer()
        self.renderer = renderer

    def provision(self, spec: CampaignSpec, base_url: str) -> Result[CampaignResult]:
        try:
            assert_promotion_consistency(spec)
            values = campaign_row(spec)
        except QrPromoError as e:
            return Err(e)

        try:
            campaign = self.storage.insert_campaign(values)
        except PersistenceError as e:
            return Err(e)

        public, test = None, None
        try:
            codes = self.storage.insert_qr_codes(campaign.id, [
                {"token": generate_token(), "is_test": False},
                {"token": generate_token(), "is_test": True},
            ])
            public, test = _split_codes(codes)
        except PersistenceError as e:
            logger.error("qr_code_insert_failed", campaign_id=campaign.id, error=str(e))

        if public is None or test is None:
            self._compensate(campaign.id)
            return Err(PersistenceError("Failed to create campaign"))

        public_url = build_qr_url(base_url, public.token)
        test_url = build_qr_url(base_url, test.token)
        try:
            public_data, test_data = self.renderer([public_url, test_url])
        except Exception as e:
            logger.error("qr_render_failed", campaign_id=campaign.id, error=str(e))
            return Err(QrRenderError(campaign.id, f"QR rendering failed: {e}"))

        self._notify(spec, public_url, test_url)

        logger.info("campaign_provisioned", campaign_id=campaign.id, promotion_type=campaign.promotion_type)
        return Ok(CampaignResult(
            campaign=campaign,
            public_qr=QrImage(token=public.token, url=public_url, data_url=public_data),
            test_qr=QrImage(token=test.token, url=test_url, data_url=test_data),
        ))

    def describe(self, campaign_id: str, base_url: str) -> Result[CampaignResult]:
        """Rebuild the result of an earlier provisioning, without notifying anyone."""
        try:
            campaign = self.storage.get_campaign(campaign_id)
            public, test = _split_codes(self.storage.get_qr_codes(campaign_id)) if campaign else (None, None)
        except PersistenceError as e:
            return Err(e)
        if campaign is None or public is None or test is None:
            return Err(PersistenceError(f"Campaign {campaign_id} is incomplete"))

        public_url = build_qr_url(base_url, public.token)
        test_url = build_qr_url(base_url, test.token)
        try:
            public_data, test_data = self.renderer([public_url, test_url])
        except Exception as e:
            return Err(QrRenderError(campaign.id, f"QR rendering failed: {e}"))
        return Ok(CampaignResult(
            campaign=campaign,
            public_qr=QrImage(token=public.token, url=public_url, data_url=public_data),
            test_qr=QrImage(token=test.token, url=test_url, data_url=test_data),
        ))

    def discard(self, campaign_id: str):
        self._compensate(campaign_id)

    def _compensate(self, campaign_id: str):
        try:
            self.storage.delete_campaign(campaign_id)
            logger.warning("campaign_rolled_back", campaign_id=campaign_id)
        except PersistenceError as e:
            logger.error("campaign_rollback_failed", campaign_id=campaign_id, error=str(e))

    def _notify(self, spec: CampaignSpec, public_url: str, test_url: str):
        try:
            self.mailer.send(CampaignSummary(
                email=spec.email,
                public_url=public_url,
                test_url=test_url,
                max_scans=spec.max_scans,
                promotion_type=spec.promotion_type,
                promo_code=spec.promo_code,
                redirect_url=spec.redirect_url,
                cashier_code=spec.cashier_code,
            ))
        except Exception as e:
            logger.warning("summary_email_failed", email=spec.email, error=str(e))
