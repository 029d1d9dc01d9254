"""User resolution after a verified OTP."""
import logging
import re
import secrets

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerly.clock import Clock
from ledgerly.config import Settings
from ledgerly.models.user import User, Wallet
from ledgerly.services.activity import log_user_action, mask_target

logger = logging.getLogger(__name__)

USER_ID_ALLOCATION_ATTEMPTS = 5


class UserAllocationError(RuntimeError):
    """No free business user id could be allocated."""


def normalize_user_from(value: str | None, default: str = "IND") -> str:
    """Up to three uppercase alphanumerics, e.g. ``"in-d"`` -> ``"IND"``."""
    cleaned = re.sub(r"[^A-Z0-9]", "", str(value or "").upper())[:3]
    return cleaned or default


def generate_user_id(prefix: str, digits: int = 6) -> str:
    serial = secrets.randbelow(10 ** digits)
    return f"{prefix}{serial:0{digits}d}"


def find_user_by_identity(db: Session, channel: str, target: str) -> User | None:
    if channel == "PHONE":
        return db.query(User).filter(User.phone_number == target).first()
    return db.query(User).filter(User.email == target).first()


def bootstrap_user(db: Session, user: User) -> None:
    """Provision the 1-1 records a verified user needs. Safe to call repeatedly."""
    if not db.query(Wallet).filter(Wallet.user_id == user.user_id).first():
        db.add(Wallet(user_id=user.user_id, balance=0))
    user.is_active = True
    user.is_verified = True


def get_or_create_user(
    db: Session,
    settings: Settings,
    channel: str,
    target: str,
    user_from: str | None = None,
    ip_address: str | None = None,
    clock: Clock | None = None,
) -> tuple[User, bool]:
    """Find the user for a verified identity, creating one on first sight.

    Returns ``(user, created)``. Commits, and may roll back on an id
    collision, so callers must not have uncommitted work pending.
    """
    user = find_user_by_identity(db, channel, target)
    if user:
        return user, False

    prefix = normalize_user_from(user_from or settings.user_id_prefix_default, settings.user_id_prefix_default)
    identity = {"phone_number": target} if channel == "PHONE" else {"email": target}

    for _ in range(USER_ID_ALLOCATION_ATTEMPTS):
        user_id = generate_user_id(prefix, settings.user_id_num_digits)
        if db.query(User.id).filter(User.user_id == user_id).first():
            continue

        candidate = User(user_id=user_id, is_active=True, **identity)
        db.add(candidate)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            # Either the serial collided or a concurrent verify created this identity.
            existing = find_user_by_identity(db, channel, target)
            if existing:
                return existing, False
            continue

        bootstrap_user(db, candidate)
        log_user_action(
            db,
            "user_signup",
            f"New user created: {candidate.user_id} ({mask_target(channel, target)})",
            user_id=candidate.user_id,
            ip_address=ip_address,
            clock=clock,
        )
        db.commit()
        logger.info(f"Created user {candidate.user_id}")
        return candidate, True

    raise UserAllocationError("Failed to allocate userId")
