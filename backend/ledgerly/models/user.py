"""User and wallet models."""
import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from ledgerly.clock import Clock
from ledgerly.database import Base

_clock = Clock()


class User(Base):
    """Business identity, created on first successful OTP verification."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(16), unique=True, nullable=False, index=True)  # e.g. IND004237
    phone_number = Column(String(32), unique=True, index=True)
    email = Column(String(255), unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    kyc_status = Column(String(16), nullable=False, default="NONE")
    role = Column(String(16), nullable=False, default="user")
    created_at = Column(String(26), default=_clock.now_iso)
    updated_at = Column(String(26), default=_clock.now_iso, onupdate=_clock.now_iso)

    # Relationships
    wallet = relationship("Wallet", back_populates="user", uselist=False, cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user")


class Wallet(Base):
    """Zero-balance wallet provisioned when a user is bootstrapped."""

    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(16), ForeignKey("users.user_id", ondelete="CASCADE"), unique=True, nullable=False)
    balance = Column(Numeric(18, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    created_at = Column(String(26), default=_clock.now_iso)

    user = relationship("User", back_populates="wallet")
