"""Session lifecycle: creation, refresh-token rotation, reuse detection, revocation.

A session is usable iff it has not been revoked and both deadlines are in the
future: ``expires_at`` (idle, pushed forward by each rotation) and
``absolute_expires_at`` (fixed at creation). Rotation never moves the idle
deadline past the absolute one. Expiry is never written back; it is always
evaluated against the injected clock.

Refresh tokens are opaque. Each session stores a bcrypt hash of its current
token plus a keyed HMAC fingerprint. The fingerprint narrows the candidate rows
through an index; bcrypt confirms the match. Neither value can be reversed into
a usable token.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session

from ledgerly.clock import Clock, from_iso, to_iso
from ledgerly.config import Settings
from ledgerly.models.auth import RevokedRefreshToken, UserSession
from ledgerly.models.user import User
from ledgerly.services.activity import log_security_event, log_user_action
from ledgerly.services.errors import InvalidRefreshTokenError, UnauthorizedError
from ledgerly.services.tokens import AccessClaims, TokenIssuer

logger = logging.getLogger(__name__)

# Anything longer than this was not minted by us.
MAX_REFRESH_TOKEN_LENGTH = 256


@dataclass(frozen=True)
class ClientMeta:
    """Best-effort client metadata captured at session creation."""

    device: str | None = None
    platform: str | None = None
    ip_address: str | None = None


@dataclass
class IssuedSession:
    session: UserSession
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class SessionSummary:
    """Session metadata safe to return to clients (no token material)."""

    id: str
    user_id: str
    session_version: int
    device: str | None
    platform: str | None
    ip_address: str | None
    created_at: str
    last_used_at: str | None
    expires_at: str
    absolute_expires_at: str | None
    revoked_at: str | None
    revoke_reason: str | None
    active: bool


def is_session_active(
    revoked_at: str | None,
    expires_at: str | None,
    now: datetime,
    absolute_expires_at: str | None = None,
) -> bool:
    """Pure usability check: not revoked and past neither deadline."""
    if revoked_at is not None or not expires_at:
        return False
    if absolute_expires_at and from_iso(absolute_expires_at) <= now:
        return False
    return from_iso(expires_at) > now


class SessionManager:
    """Owns the UserSession state machine.

    Each public mutating method is one unit of work and commits before it
    returns, so a failed refresh still persists any revocation it triggered.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        issuer: TokenIssuer | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock or Clock()
        self.issuer = issuer or TokenIssuer(settings, self.clock)

    # ------------------------------------------------------------------
    # Creation and rotation
    # ------------------------------------------------------------------

    def create_session(self, user: User, client_meta: ClientMeta | None = None) -> IssuedSession:
        """Open a new session for ``user`` and issue its first token pair."""
        client_meta = client_meta or ClientMeta()
        now = self.clock.now()

        self._enforce_session_cap(user.user_id, now)

        absolute_expiry = now + timedelta(days=self.settings.session_absolute_ttl_days)
        raw_refresh = self.issuer.new_refresh_token()
        session = UserSession(
            user_id=user.user_id,
            refresh_token_hash=self.issuer.hash_secret(raw_refresh),
            refresh_token_lookup=self.issuer.lookup_fingerprint(raw_refresh),
            session_version=1,
            device=client_meta.device,
            platform=client_meta.platform,
            ip_address=client_meta.ip_address,
            created_at=to_iso(now),
            last_used_at=to_iso(now),
            expires_at=to_iso(self._refresh_expiry(now, absolute_expiry)),
            absolute_expires_at=to_iso(absolute_expiry),
        )
        self.db.add(session)
        self.db.flush()

        access_token = self._sign_for(session, user)
        self.db.commit()
        logger.info(f"Created session {session.id} for {user.user_id}")
        return IssuedSession(session=session, access_token=access_token, refresh_token=raw_refresh)

    def rotate_refresh_token(self, presented_token: str) -> IssuedSession:
        """Replace the session's refresh token, archiving the superseded hash.

        Callers must run ``detect_reuse`` first. Two concurrent rotations with
        the same token race on a compare-and-swap; the loser gets
        ``InvalidRefreshTokenError`` and its retry is caught as reuse.
        """
        session = self._find_active_by_token(presented_token)
        if session is None:
            raise InvalidRefreshTokenError()

        now = self.clock.now()
        old_hash = session.refresh_token_hash
        old_lookup = session.refresh_token_lookup
        raw_refresh = self.issuer.new_refresh_token()

        swapped = self.db.query(UserSession).filter(
            UserSession.id == session.id,
            UserSession.refresh_token_lookup == old_lookup,
            UserSession.revoked_at.is_(None),
        ).update(
            {
                "refresh_token_hash": self.issuer.hash_secret(raw_refresh),
                "refresh_token_lookup": self.issuer.lookup_fingerprint(raw_refresh),
                "expires_at": to_iso(self._refresh_expiry(now, _absolute_of(session))),
                "last_used_at": to_iso(now),
            },
            synchronize_session=False,
        )
        if not swapped:
            self.db.rollback()
            logger.info(f"Lost rotation race on session {session.id}")
            raise InvalidRefreshTokenError()

        self.db.add(RevokedRefreshToken(
            session_id=session.id,
            token_hash=old_hash,
            token_lookup=old_lookup,
            created_at=to_iso(now),
        ))
        self.db.commit()
        self.db.refresh(session)

        user = self.db.query(User).filter(User.user_id == session.user_id).first()
        access_token = self._sign_for(session, user)
        return IssuedSession(session=session, access_token=access_token, refresh_token=raw_refresh)

    def detect_reuse(self, presented_token: str) -> UserSession | None:
        """Revoke the session behind a replayed, already-rotated refresh token.

        Returns the revoked session, or ``None`` when the token was never
        superseded.
        """
        if not self._plausible(presented_token):
            return None

        now = self.clock.now()
        window_start = to_iso(now - timedelta(days=self.settings.revoked_token_retention_days))
        records = self.db.query(RevokedRefreshToken).filter(
            RevokedRefreshToken.token_lookup == self.issuer.lookup_fingerprint(presented_token),
            RevokedRefreshToken.created_at >= window_start,
        ).order_by(RevokedRefreshToken.created_at.desc()).limit(self.settings.revoked_scan_limit).all()

        for record in records:
            if not self.issuer.verify_secret(presented_token, record.token_hash):
                continue

            self.db.query(UserSession).filter(
                UserSession.id == record.session_id,
                UserSession.revoked_at.is_(None),
            ).update(self._revocation(now, "token_reuse"), synchronize_session=False)
            session = self.db.get(UserSession, record.session_id)
            if session is None:
                # Archived hash outlived its purged session; nothing left to revoke.
                logger.warning(f"Replayed refresh token for missing session {record.session_id}")
                return None
            self.db.refresh(session)

            log_user_action(
                self.db,
                "token_reuse",
                f"Refresh token reuse detected; session {session.id} revoked",
                user_id=session.user_id,
                clock=self.clock,
            )
            self.db.commit()
            log_security_event(
                "refresh_token_reuse",
                session_id=session.id,
                user_id=session.user_id,
            )
            return session

        return None

    # ------------------------------------------------------------------
    # Revocation and listing
    # ------------------------------------------------------------------

    def revoke_session(self, user_id: str, session_id: str, reason: str = "manual_revoke") -> bool:
        """Revoke one of the user's sessions. False if absent or owned by someone else."""
        session = self.db.query(UserSession).filter(
            UserSession.id == session_id,
            UserSession.user_id == user_id,
        ).first()
        if session is None:
            return False

        if session.revoked_at is None:
            now = self.clock.now()
            self.db.query(UserSession).filter(
                UserSession.id == session_id,
                UserSession.user_id == user_id,
                UserSession.revoked_at.is_(None),
            ).update(self._revocation(now, reason), synchronize_session=False)
            log_user_action(
                self.db,
                "session_revoked",
                f"Revoked session {session_id}",
                user_id=user_id,
                clock=self.clock,
            )
            self.db.commit()
            self.db.refresh(session)
        return True

    def revoke_all_sessions(
        self,
        user_id: str,
        keep_session_id: str | None = None,
        reason: str = "revoke_all",
    ) -> int:
        """Revoke every active session of the user, optionally sparing one."""
        query = self.db.query(UserSession).filter(
            UserSession.user_id == user_id,
            UserSession.revoked_at.is_(None),
        )
        if keep_session_id:
            query = query.filter(UserSession.id != keep_session_id)

        revoked = query.update(self._revocation(self.clock.now(), reason), synchronize_session=False)
        log_user_action(
            self.db,
            "sessions_revoked_others" if keep_session_id else "sessions_revoked_all",
            f"Revoked {revoked} sessions",
            user_id=user_id,
            clock=self.clock,
        )
        self.db.commit()
        self.db.expire_all()
        return revoked

    def list_sessions(self, user_id: str, include_revoked: bool = False) -> list[SessionSummary]:
        """Newest sessions first. Without ``include_revoked`` only usable ones."""
        now = self.clock.now()
        query = self.db.query(UserSession).filter(UserSession.user_id == user_id)
        if not include_revoked:
            query = query.filter(
                UserSession.revoked_at.is_(None),
                UserSession.expires_at > to_iso(now),
                UserSession.absolute_expires_at > to_iso(now),
            )
        sessions = query.order_by(UserSession.created_at.desc(), UserSession.id.desc()).all()
        return [self._summarize(session, now) for session in sessions]

    def logout(self, presented_token: str | None) -> UserSession | None:
        """Best-effort revocation of the session holding ``presented_token``."""
        if not presented_token:
            return None
        session = self._find_active_by_token(presented_token)
        if session is None:
            return None

        self.db.query(UserSession).filter(
            UserSession.id == session.id,
            UserSession.revoked_at.is_(None),
        ).update(self._revocation(self.clock.now(), "logout"), synchronize_session=False)
        log_user_action(self.db, "logout", "User logged out", user_id=session.user_id, clock=self.clock)
        self.db.commit()
        self.db.refresh(session)
        return session

    # ------------------------------------------------------------------
    # Access-token binding
    # ------------------------------------------------------------------

    def authenticate_access(self, claims: AccessClaims) -> UserSession:
        """Resolve the live session behind verified access-token claims."""
        session = self.db.get(UserSession, claims.session_id)
        if (
            session is None
            or session.user_id != claims.subject
            or session.session_version != claims.session_version
            or not is_session_active(
                session.revoked_at,
                session.expires_at,
                self.clock.now(),
                session.absolute_expires_at,
            )
        ):
            raise UnauthorizedError("Session is no longer active")
        return session

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enforce_session_cap(self, user_id: str, now: datetime) -> None:
        """Revoke oldest active sessions so the new one fits under the cap."""
        cap = self.settings.max_active_sessions_per_user
        if cap <= 0:
            return
        active = self.db.query(UserSession).filter(
            UserSession.user_id == user_id,
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > to_iso(now),
            UserSession.absolute_expires_at > to_iso(now),
        ).order_by(UserSession.created_at.asc(), UserSession.id.asc()).all()

        overflow = len(active) - cap + 1
        if overflow <= 0:
            return
        evicted = [session.id for session in active[:overflow]]
        self.db.query(UserSession).filter(UserSession.id.in_(evicted)).update(
            self._revocation(now, "session_limit"),
            synchronize_session=False,
        )
        logger.info(f"Evicted {len(evicted)} sessions for {user_id} (cap {cap})")

    def _find_active_by_token(self, presented_token: str) -> UserSession | None:
        if not self._plausible(presented_token):
            return None
        candidates = self.db.query(UserSession).filter(
            UserSession.refresh_token_lookup == self.issuer.lookup_fingerprint(presented_token),
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > self.clock.now_iso(),
            UserSession.absolute_expires_at > self.clock.now_iso(),
        ).order_by(UserSession.created_at.desc()).limit(self.settings.refresh_scan_limit).all()

        for candidate in candidates:
            if self.issuer.verify_secret(presented_token, candidate.refresh_token_hash):
                return candidate
        return None

    def _sign_for(self, session: UserSession, user: User | None) -> str:
        return self.issuer.sign_access_token(AccessClaims(
            subject=session.user_id,
            session_id=session.id,
            session_version=session.session_version,
            role=(user.role if user else None) or "user",
            kyc_status=_kyc_of(user),
        ))

    def _refresh_expiry(self, now: datetime, absolute_expiry: datetime | None) -> datetime:
        idle_expiry = now + timedelta(days=self.settings.refresh_token_expire_days)
        if absolute_expiry is None:
            return idle_expiry
        return min(idle_expiry, absolute_expiry)

    @staticmethod
    def _plausible(presented_token: str | None) -> bool:
        return bool(presented_token) and len(presented_token) <= MAX_REFRESH_TOKEN_LENGTH

    @staticmethod
    def _revocation(now: datetime, reason: str) -> dict:
        return {
            "revoked_at": to_iso(now),
            "revoke_reason": reason,
            "refresh_token_hash": None,
            "refresh_token_lookup": None,
            "session_version": UserSession.session_version + 1,
        }

    @staticmethod
    def _summarize(session: UserSession, now: datetime) -> SessionSummary:
        return SessionSummary(
            id=session.id,
            user_id=session.user_id,
            session_version=session.session_version,
            device=session.device,
            platform=session.platform,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            expires_at=session.expires_at,
            absolute_expires_at=session.absolute_expires_at,
            revoked_at=session.revoked_at,
            revoke_reason=session.revoke_reason,
            active=is_session_active(
                session.revoked_at,
                session.expires_at,
                now,
                session.absolute_expires_at,
            ),
        )


def _kyc_of(user: User | None) -> str:
    return (user.kyc_status if user else None) or "NONE"


def _absolute_of(session: UserSession) -> datetime | None:
    return from_iso(session.absolute_expires_at) if session.absolute_expires_at else None
