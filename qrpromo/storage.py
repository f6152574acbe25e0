from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from qrpromo.errors import PersistenceError
from qrpromo.models import Campaign, Order, QrCode

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrderRecord:
    id: str
    session_id: str
    email: str
    amount: int
    currency: str
    payment_method: str
    status: str
    campaign_payload: Dict[str, Any]
    p24_token: Optional[str] = None
    p24_order_id: Optional[int] = None
    campaign_id: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class CampaignRecord:
    id: str
    email: str
    max_scans: int
    remaining_scans: int
    promotion_type: str
    promo_code: Optional[str] = None
    redirect_url: Optional[str] = None
    image_url: Optional[str] = None
    cashier_code: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class QrCodeRecord:
    campaign_id: str
    token: str
    is_test: bool


@dataclass(frozen=True)
class ScanResult:
    campaign_id: str
    status: str                 # active | expired
    remaining_scans: int
    promotion_type: str
    promo_code: Optional[str]
    redirect_url: Optional[str]
    image_url: Optional[str]
    cashier_code: Optional[str]
    is_test: bool


class Storage(ABC):
    """Everything the order, provisioning and redemption paths need from the store.

    The ``claim_provisioning``/``mark_paid``/``mark_failed`` transitions are
    conditional updates: they return ``True`` only when this call changed the
    row, which is how concurrent paths learn whether they won.
    ``release_claim`` hands a still-pending order back so a later delivery can
    settle it.
    """

    @abstractmethod
    def create_order(self, values: Dict[str, Any]) -> OrderRecord: ...

    @abstractmethod
    def get_order_by_session(self, session_id: str) -> Optional[OrderRecord]: ...

    @abstractmethod
    def attach_transaction(self, order_id: str, token: str, gateway_order_id: int) -> None: ...

    @abstractmethod
    def claim_provisioning(self, order_id: str) -> bool: ...

    @abstractmethod
    def release_claim(self, order_id: str) -> bool: ...

    @abstractmethod
    def mark_paid(self, order_id: str, campaign_id: str, paid_at: datetime,
                  gateway_order_id: Optional[int] = None) -> bool: ...

    @abstractmethod
    def mark_failed(self, order_id: str, reason: str) -> bool: ...

    @abstractmethod
    def insert_campaign(self, values: Dict[str, Any]) -> CampaignRecord: ...

    @abstractmethod
    def insert_qr_codes(self, campaign_id: str, rows: List[Dict[str, Any]]) -> List[QrCodeRecord]: ...

    @abstractmethod
    def delete_campaign(self, campaign_id: str) -> None: ...

    @abstractmethod
    def get_campaign(self, campaign_id: str) -> Optional[CampaignRecord]: ...

    @abstractmethod
    def get_qr_codes(self, campaign_id: str) -> List[QrCodeRecord]: ...

    @abstractmethod
    def consume_scan(self, token: str) -> Optional[ScanResult]: ...


def _order_record(row: Order) -> OrderRecord:
    return OrderRecord(
        id=row.id,
        session_id=row.session_id,
        email=row.email,
        amount=row.amount,
        currency=row.currency,
        payment_method=row.payment_method,
        status=row.status,
        campaign_payload=row.campaign_payload,
        p24_token=row.p24_token,
        p24_order_id=row.p24_order_id,
        campaign_id=row.campaign_id,
        failure_reason=row.failure_reason,
        paid_at=row.paid_at,
    )


def _campaign_record(row: Campaign) -> CampaignRecord:
    return CampaignRecord(
        id=row.id,
        email=row.email,
        max_scans=row.max_scans,
        remaining_scans=row.remaining_scans,
        promotion_type=row.promotion_type,
        promo_code=row.promo_code,
        redirect_url=row.redirect_url,
        image_url=row.image_url,
        cashier_code=row.cashier_code,
        title=row.title,
        description=row.description,
    )


def _qr_record(row: QrCode) -> QrCodeRecord:
    return QrCodeRecord(campaign_id=row.campaign_id, token=row.token, is_test=row.is_test)


class SqlStorage(Storage):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _run(self, operation, fn):
        db = self.session_factory()
        try:
            result = fn(db)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("storage_operation_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e
        finally:
            db.close()

    def create_order(self, values):
        def op(db):
            order = Order(status="pending", **values)
            db.add(order)
            db.flush()
            return _order_record(order)
        return self._run("create_order", op)

    def get_order_by_session(self, session_id):
        def op(db):
            order = db.query(Order).filter_by(session_id=session_id).first()
            return _order_record(order) if order else None
        return self._run("get_order_by_session", op)

    def attach_transaction(self, order_id, token, gateway_order_id):
        def op(db):
            db.query(Order).filter_by(id=order_id).update(
                {Order.p24_token: token, Order.p24_order_id: gateway_order_id},
                synchronize_session=False,
            )
        self._run("attach_transaction", op)

    def claim_provisioning(self, order_id):
        def op(db):
            return db.query(Order).filter(
                Order.id == order_id,
                Order.status == "pending",
                Order.provisioning_started_at.is_(None),
            ).update(
                {Order.provisioning_started_at: datetime.now(timezone.utc)},
                synchronize_session=False,
            )
        return self._run("claim_provisioning", op) == 1

    def release_claim(self, order_id):
        def op(db):
            return db.query(Order).filter(
                Order.id == order_id,
                Order.status == "pending",
            ).update(
                {Order.provisioning_started_at: None},
                synchronize_session=False,
            )
        return self._run("release_claim", op) == 1

    def mark_paid(self, order_id, campaign_id, paid_at, gateway_order_id=None):
        values = {
            Order.status: "paid",
            Order.campaign_id: campaign_id,
            Order.paid_at: paid_at,
            Order.failure_reason: None,
        }
        if gateway_order_id is not None:
            values[Order.p24_order_id] = gateway_order_id

        def op(db):
            return db.query(Order).filter(
                Order.id == order_id,
                Order.status == "pending",
            ).update(values, synchronize_session=False)
        return self._run("mark_paid", op) == 1

    def mark_failed(self, order_id, reason):
        def op(db):
            return db.query(Order).filter(
                Order.id == order_id,
                Order.status != "paid",
            ).update(
                {Order.status: "failed", Order.failure_reason: reason},
                synchronize_session=False,
            )
        return self._run("mark_failed", op) == 1

    def insert_campaign(self, values):
        def op(db):
            campaign = Campaign(**values)
            db.add(campaign)
            db.flush()
            return _campaign_record(campaign)
        return self._run("insert_campaign", op)

    def insert_qr_codes(self, campaign_id, rows):
        def op(db):
            codes = [QrCode(campaign_id=campaign_id, **row) for row in rows]
            db.add_all(codes)
            db.flush()
            return [_qr_record(code) for code in codes]
        return self._run("insert_qr_codes", op)

    def delete_campaign(self, campaign_id):
        def op(db):
            db.query(QrCode).filter_by(campaign_id=campaign_id).delete(synchronize_session=False)
            db.query(Campaign).filter_by(id=campaign_id).delete(synchronize_session=False)
        self._run("delete_campaign", op)

    def get_campaign(self, campaign_id):
        def op(db):
            campaign = db.get(Campaign, campaign_id)
            return _campaign_record(campaign) if campaign else None
        return self._run("get_campaign", op)

    def get_qr_codes(self, campaign_id):
        def op(db):
            codes = db.query(QrCode).filter_by(campaign_id=campaign_id).order_by(QrCode.id).all()
            return [_qr_record(code) for code in codes]
        return self._run("get_qr_codes", op)

    def consume_scan(self, token):
        def op(db):
            qr = db.query(QrCode).filter_by(token=token).first()
            if not qr:
                return None

            if qr.is_test:
                consumed = None
            else:
                # Single statement decrement, race-free under concurrent scans
                consumed = db.query(Campaign).filter(
                    Campaign.id == qr.campaign_id,
                    Campaign.remaining_scans > 0,
                ).update(
                    {Campaign.remaining_scans: Campaign.remaining_scans - 1},
                    synchronize_session=False,
                ) == 1

            campaign = db.query(Campaign).filter_by(id=qr.campaign_id).populate_existing().one()
            if consumed is None:
                active = campaign.remaining_scans > 0
            else:
                active = consumed

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
        return self._run("consume_scan", op)
