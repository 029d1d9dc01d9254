"""SQLAlchemy models package."""
from ledgerly.models.user import User, Wallet
from ledgerly.models.otp import OtpChallenge
from ledgerly.models.auth import RevokedRefreshToken, UserSession
from ledgerly.models.activity import ActivityLog

__all__ = [
    "User",
    "Wallet",
    "OtpChallenge",
    "UserSession",
    "RevokedRefreshToken",
    "ActivityLog",
]
