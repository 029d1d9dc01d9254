"""Audit trail of user actions."""
import uuid

from sqlalchemy import Column, Index, String, Text

from ledgerly.clock import Clock
from ledgerly.database import Base

_clock = Clock()


class ActivityLog(Base):
    """Append-only record of security-relevant user actions."""

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("ix_activity_logs_user_created", "user_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(16), index=True)  # null for pre-identity actions (OTP send)
    action = Column(String(64), nullable=False)
    details = Column(Text)
    ip_address = Column(String(45))
    created_at = Column(String(26), nullable=False, default=_clock.now_iso)
