"""Access-token signing and refresh-token material."""
from calendar import timegm
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import secrets
import uuid

import bcrypt
from jose import JWTError, jwt

from ledgerly.clock import Clock
from ledgerly.config import Settings
from ledgerly.services.errors import InvalidTokenError

# bcrypt only looks at the first 72 bytes; longer input is never a token we issued.
MAX_SECRET_BYTES = 72


@dataclass(frozen=True)
class AccessClaims:
    """Verified (or to-be-signed) access token claims."""

    subject: str
    session_id: str
    session_version: int
    role: str = "user"
    kyc_status: str = "NONE"
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    token_id: str | None = None


def _epoch(value: datetime) -> int:
    return timegm(value.utctimetuple())


def _from_epoch(value) -> datetime:
    return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)


class TokenIssuer:
    """Signs stateless access tokens and mints opaque refresh tokens."""

    def __init__(self, settings: Settings, clock: Clock | None = None):
        self.settings = settings
        self.clock = clock or Clock()

    def sign_access_token(self, claims: AccessClaims, ttl: timedelta | None = None) -> str:
        """Create a signed JWT bound to a session id and version."""
        issued_at = self.clock.now()
        expire = issued_at + (ttl or timedelta(minutes=self.settings.access_token_expire_minutes))
        to_encode = {
            "sub": claims.subject,
            "sid": claims.session_id,
            "sv": claims.session_version,
            "role": claims.role,
            "kyc": claims.kyc_status,
            "iat": _epoch(issued_at),
            "exp": _epoch(expire),
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "type": "access",
        }
        return jwt.encode(to_encode, self.settings.secret_key, algorithm=self.settings.algorithm)

    def verify_access_token(self, token: str) -> AccessClaims:
        """Validate signature, issuer, audience and expiry.

        Expiry is checked against the injected clock rather than the library's
        wall clock. Every failure raises the same ``InvalidTokenError``.
        """
        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[self.settings.algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            raise InvalidTokenError()

        if payload.get("type") != "access":
            raise InvalidTokenError()

        try:
            expires_at = _from_epoch(payload["exp"])
            issued_at = _from_epoch(payload["iat"])
            session_version = int(payload["sv"])
            subject = str(payload["sub"])
            session_id = str(payload["sid"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()

        leeway = timedelta(seconds=self.settings.access_token_leeway_seconds)
        if expires_at + leeway <= self.clock.now():
            raise InvalidTokenError()

        return AccessClaims(
            subject=subject,
            session_id=session_id,
            session_version=session_version,
            role=payload.get("role") or "user",
            kyc_status=payload.get("kyc") or "NONE",
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=payload.get("jti"),
        )

    def new_refresh_token(self) -> str:
        """Opaque, high-entropy refresh token. The server trusts no structure in it."""
        return secrets.token_urlsafe(32)

    def hash_secret(self, value: str) -> str:
        """Adaptive one-way hash for refresh tokens and OTP codes."""
        return bcrypt.hashpw(
            value.encode("utf-8"),
            bcrypt.gensalt(rounds=self.settings.bcrypt_rounds),
        ).decode("utf-8")

    def verify_secret(self, value: str, hashed: str | None) -> bool:
        """Check a presented secret against a stored bcrypt hash."""
        if not hashed or not value:
            return False
        raw = value.encode("utf-8")
        if len(raw) > MAX_SECRET_BYTES:
            return False
        try:
            return bcrypt.checkpw(raw, hashed.encode("utf-8"))
        except ValueError:
            return False

    def lookup_fingerprint(self, raw_token: str) -> str:
        """Keyed fingerprint used to narrow candidate rows before bcrypt checks."""
        return hmac.new(
            self.settings.lookup_key.encode("utf-8"),
            raw_token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
