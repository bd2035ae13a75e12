# taxflow/models/integrations.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from taxflow.db import Base, UTCDateTime, utcnow

ACTIVE = "active"
EXPIRED = "expired"
REVOKED = "revoked"


class Integration(Base):
    """
    A tenant's connection to a provider. Inbound deliveries are routed to their owning
    business through this table; only `active` rows route.
    """
    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(String(64), index=True)
    # realmId (quickbooks), organization id (zoho), phone_number_id (whatsapp), site url (woocommerce)
    account_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default=ACTIVE)
    alert_recipients: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
