import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, func

from qrpromo.database import Base


def _uuid():
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    session_id = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)                # minor currency units
    currency = Column(String, nullable=False)
    payment_method = Column(String, nullable=False)         # immediate-code | transfer
    status = Column(String, nullable=False, default="pending")  # pending | paid | failed
    payload = Column(JSON)
    campaign_payload = Column(JSON, nullable=False)
    extension = Column(JSON)
    invoice_requested = Column(Boolean, default=False)
    invoice_details = Column(Text)
    notes = Column(Text)
    p24_token = Column(String)
    p24_order_id = Column(Integer)
    campaign_id = Column(String, ForeignKey("campaigns.id"))
    provisioning_started_at = Column(DateTime(timezone=True))
    failure_reason = Column(Text)
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, nullable=False)
    max_scans = Column(Integer, nullable=False)
    remaining_scans = Column(Integer, nullable=False)
    promotion_type = Column(String, nullable=False)         # redirect | promo_code | image
    promo_code = Column(String)
    redirect_url = Column(String)
    image_url = Column(String)
    cashier_code = Column(String)
    title = Column(String)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class QrCode(Base):
    __tablename__ = "qr_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(String, ForeignKey("campaigns.id"), index=True, nullable=False)
    token = Column(String, unique=True, index=True, nullable=False)
    is_test = Column(Boolean, nullable=False, default=False)
