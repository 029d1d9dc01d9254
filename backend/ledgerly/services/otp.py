"""One-time code issuance and verification."""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import re
import secrets

from sqlalchemy.orm import Session

from ledgerly.clock import Clock, to_iso
from ledgerly.config import Settings
from ledgerly.models.otp import OtpChallenge
from ledgerly.services.activity import log_user_action, mask_target
from ledgerly.services.errors import (
    InvalidInputError,
    InvalidOtpError,
    OtpNotFoundError,
    TooManyAttemptsError,
)
from ledgerly.services.notifications import CodeNotifier
from ledgerly.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)

CHANNELS = ("PHONE", "EMAIL")
CODE_PATTERN = re.compile(r"^\d{6}$")


@dataclass(frozen=True)
class IssuedChallenge:
    """Handle returned to the caller. ``code`` is only set in diagnostic mode."""

    challenge_id: str
    channel: str
    expires_at: datetime
    code: str | None = None


def normalize_channel(channel: str | None) -> str:
    normalized = str(channel or "").strip().upper()
    if normalized not in CHANNELS:
        raise InvalidInputError("Invalid channel")
    return normalized


def normalize_target(channel: str, target: str | None) -> str:
    normalized = str(target or "").strip()
    if not normalized or len(normalized) > 255:
        raise InvalidInputError("Invalid target")
    if channel == "EMAIL":
        normalized = normalized.lower()
    return normalized


def generate_code() -> str:
    """Cryptographically random 6-digit numeric code."""
    return f"{secrets.randbelow(1_000_000):06d}"


class OtpService:
    """Issues and verifies OTP challenges per (channel, target)."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        notifier: CodeNotifier,
        issuer: TokenIssuer | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.clock = clock or Clock()
        self.issuer = issuer or TokenIssuer(settings, self.clock)

    def issue_challenge(self, channel: str, target: str, ip_address: str | None = None) -> IssuedChallenge:
        channel = normalize_channel(channel)
        target = normalize_target(channel, target)

        code = generate_code()
        now = self.clock.now()
        expires_at = now + timedelta(minutes=self.settings.otp_ttl_minutes)
        challenge = OtpChallenge(
            channel=channel,
            target=target,
            code_hash=self.issuer.hash_secret(code),
            expires_at=to_iso(expires_at),
            attempts=0,
            created_at=to_iso(now),
        )
        self.db.add(challenge)
        log_user_action(
            self.db,
            "send_otp",
            f"OTP sent to {mask_target(channel, target)} via {channel}",
            ip_address=ip_address,
            clock=self.clock,
        )
        self.db.commit()

        # The challenge exists whether or not delivery succeeds; the user can resend.
        self.notifier.send_code(channel, target, code)

        return IssuedChallenge(
            challenge_id=challenge.id,
            channel=channel,
            expires_at=expires_at,
            code=code if self.settings.expose_otp_codes else None,
        )

    def verify_challenge(
        self,
        channel: str,
        target: str,
        code: str,
        max_attempts: int | None = None,
        ip_address: str | None = None,
    ) -> OtpChallenge:
        """Consume the newest active challenge if ``code`` matches it.

        Raises ``InvalidInputError``, ``OtpNotFoundError``, ``InvalidOtpError``
        or ``TooManyAttemptsError``.
        """
        channel = normalize_channel(channel)
        target = normalize_target(channel, target)
        code = str(code or "").strip()
        if not CODE_PATTERN.match(code):
            raise InvalidInputError("Invalid OTP format")
        limit = max_attempts if max_attempts is not None else self.settings.otp_max_attempts

        now = self.clock.now_iso()
        challenge = self.db.query(OtpChallenge).filter(
            OtpChallenge.channel == channel,
            OtpChallenge.target == target,
            OtpChallenge.consumed_at.is_(None),
            OtpChallenge.expires_at > now,
        ).order_by(OtpChallenge.created_at.desc(), OtpChallenge.id.desc()).first()

        if not challenge:
            self._record_failure(channel, target, ip_address)
            raise OtpNotFoundError()

        if self.issuer.verify_secret(code, challenge.code_hash):
            self._consume(challenge, now)
            return challenge

        attempts = self._increment_attempts(challenge.id)
        if attempts is None:
            # Consumed by a concurrent verifier between our read and write.
            self._record_failure(channel, target, ip_address)
            raise OtpNotFoundError()

        if attempts >= limit:
            self.db.query(OtpChallenge).filter(OtpChallenge.id == challenge.id).update(
                {"consumed_at": now},
                synchronize_session=False,
            )
            self._record_failure(channel, target, ip_address)
            logger.warning(f"OTP attempts exhausted for {mask_target(channel, target)}")
            raise TooManyAttemptsError()

        self._record_failure(channel, target, ip_address)
        raise InvalidOtpError()

    def _consume(self, challenge: OtpChallenge, now: str) -> None:
        consumed = self.db.query(OtpChallenge).filter(
            OtpChallenge.id == challenge.id,
            OtpChallenge.consumed_at.is_(None),
        ).update(
            {"consumed_at": now, "attempts": OtpChallenge.attempts + 1},
            synchronize_session=False,
        )
        if not consumed:
            self.db.rollback()
            raise OtpNotFoundError()

        # Supersede every older unconsumed challenge for the same identity.
        self.db.query(OtpChallenge).filter(
            OtpChallenge.channel == challenge.channel,
            OtpChallenge.target == challenge.target,
            OtpChallenge.consumed_at.is_(None),
            OtpChallenge.created_at <= challenge.created_at,
        ).update({"consumed_at": now}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(challenge)

    def _increment_attempts(self, challenge_id: str) -> int | None:
        """Atomically bump the attempt counter and return the new value."""
        updated = self.db.query(OtpChallenge).filter(
            OtpChallenge.id == challenge_id,
            OtpChallenge.consumed_at.is_(None),
        ).update(
            {"attempts": OtpChallenge.attempts + 1},
            synchronize_session=False,
        )
        if not updated:
            return None
        return self.db.query(OtpChallenge.attempts).filter(OtpChallenge.id == challenge_id).scalar()

    def _record_failure(self, channel: str, target: str, ip_address: str | None) -> None:
        log_user_action(
            self.db,
            "verify_otp_failed",
            f"OTP verification failed for {mask_target(channel, target)} via {channel}",
            ip_address=ip_address,
            clock=self.clock,
        )
        self.db.commit()
