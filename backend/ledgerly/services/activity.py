"""Activity logging and PII masking helpers."""
import logging

from sqlalchemy.orm import Session

from ledgerly.clock import Clock
from ledgerly.models.activity import ActivityLog

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("ledgerly.security")


def mask_email(email: str) -> str:
    name, _, domain = email.partition("@")
    if len(name) <= 2:
        return f"***@{domain}"
    return f"{name[0]}{'*' * (len(name) - 2)}{name[-1]}@{domain}"


def mask_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "*" * len(phone)
    return f"{'*' * (len(phone) - 4)}{phone[-4:]}"


def mask_target(channel: str, target: str) -> str:
    """Mask an OTP target so it can be logged."""
    return mask_email(target) if channel == "EMAIL" else mask_phone(target)


def log_user_action(
    db: Session,
    action: str,
    details: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    clock: Clock | None = None,
) -> ActivityLog:
    """Record an activity row. The caller owns the transaction."""
    entry = ActivityLog(
        user_id=user_id,
        action=action,
        details=details,
        ip_address=ip_address,
        created_at=(clock or Clock()).now_iso(),
    )
    db.add(entry)
    logger.info(f"activity {action} user={user_id or '-'}")
    return entry


def log_security_event(event: str, **fields) -> None:
    """Emit an alertable security audit record, separate from ordinary failures."""
    rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
    security_logger.warning(f"SECURITY {event} {rendered}".rstrip())
