from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from chainsync.shared.db.base import Base


class WebhookIdempotencyKey(Base):
    """
    Short-lived dedup record for inbound webhook deliveries.

    The primary key makes insert-if-absent atomic; rows past ``expires_at``
    are reclaimable.
    """

    __tablename__ = "webhook_idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
