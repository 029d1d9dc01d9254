"""Housekeeping for OTP challenges, sessions and revoked refresh-token hashes.

Call these from a scheduler/cron, e.g. ``ledgerly-cleanup --dry-run``.
All jobs are idempotent, batched, and support a dry run.
"""
from datetime import timedelta
import logging

from sqlalchemy import or_, select
from sqlalchemy.orm import Session
import typer

from ledgerly.clock import Clock, to_iso
from ledgerly.config import Settings, get_settings
from ledgerly.models.auth import RevokedRefreshToken, UserSession
from ledgerly.models.otp import OtpChallenge

logger = logging.getLogger(__name__)


def _batched_delete(db: Session, model, criteria, batch_size: int) -> int:
    deleted = 0
    while True:
        ids = [row.id for row in db.query(model.id).filter(criteria).limit(batch_size).all()]
        if not ids:
            break
        deleted += db.query(model).filter(model.id.in_(ids)).delete(synchronize_session=False)
        db.commit()
        if len(ids) < batch_size:
            break
    return deleted


def cleanup_otp_challenges(
    db: Session,
    settings: Settings,
    clock: Clock | None = None,
    dry_run: bool = False,
) -> dict:
    """Delete consumed, expired, and past-retention OTP challenges."""
    now = (clock or Clock()).now()
    consumed_cutoff = to_iso(now - timedelta(hours=settings.otp_cleanup_consumed_after_hours))
    hard_cutoff = to_iso(now - timedelta(days=settings.otp_cleanup_hard_retention_days))

    criteria = or_(
        (OtpChallenge.consumed_at.isnot(None)) & (OtpChallenge.created_at < consumed_cutoff),
        (OtpChallenge.consumed_at.is_(None)) & (OtpChallenge.expires_at < to_iso(now)),
        OtpChallenge.created_at < hard_cutoff,
    )
    candidates = db.query(OtpChallenge).filter(criteria).count()
    logger.info(f"OTP cleanup candidates: {candidates} (dry_run={dry_run})")
    if dry_run:
        return {"candidates": candidates, "deleted": 0, "dry_run": True}

    deleted = _batched_delete(db, OtpChallenge, criteria, settings.cleanup_batch_size)
    logger.info(f"OTP cleanup deleted {deleted} challenges")
    return {"candidates": candidates, "deleted": deleted, "dry_run": False}


def cleanup_sessions(
    db: Session,
    settings: Settings,
    clock: Clock | None = None,
    dry_run: bool = False,
) -> dict:
    """Purge expired/long-revoked sessions and prune old revoked-token hashes."""
    now = (clock or Clock()).now()
    revoked_cutoff = to_iso(now - timedelta(days=settings.session_revoked_grace_days))
    max_age_cutoff = to_iso(now - timedelta(days=settings.session_max_age_days))
    hash_cutoff = to_iso(now - timedelta(days=settings.revoked_token_retention_days))

    session_criteria = or_(
        UserSession.expires_at < to_iso(now),
        UserSession.revoked_at < revoked_cutoff,
        UserSession.created_at < max_age_cutoff,
    )
    hash_criteria = RevokedRefreshToken.created_at < hash_cutoff

    stats = {
        "sessions": db.query(UserSession).filter(session_criteria).count(),
        "revoked_hashes": db.query(RevokedRefreshToken).filter(hash_criteria).count(),
    }
    logger.info(f"Session cleanup candidates: {stats} (dry_run={dry_run})")
    if dry_run:
        return {**stats, "deleted": 0, "dry_run": True}

    deleted = _batched_delete(db, RevokedRefreshToken, hash_criteria, settings.cleanup_batch_size)
    # Hashes still pointing at purged sessions go with them.
    deleted += _batched_delete(
        db,
        RevokedRefreshToken,
        RevokedRefreshToken.session_id.in_(select(UserSession.id).where(session_criteria)),
        settings.cleanup_batch_size,
    )
    deleted += _batched_delete(db, UserSession, session_criteria, settings.cleanup_batch_size)
    logger.info(f"Session cleanup deleted {deleted} rows")
    return {**stats, "deleted": deleted, "dry_run": False}


def run_all(dry_run: bool = False) -> dict:
    from ledgerly.database import get_db_context

    settings = get_settings()
    with get_db_context() as db:
        return {
            "otp": cleanup_otp_challenges(db, settings, dry_run=dry_run),
            "sessions": cleanup_sessions(db, settings, dry_run=dry_run),
        }


app = typer.Typer(
    name="ledgerly-cleanup",
    help="Purge stale OTP challenges, sessions and revoked refresh-token hashes.",
)


@app.command()
def main(
    dry_run: bool = typer.Option(False, "--dry-run", help="Count candidates without deleting."),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level."),
) -> None:
    """Run every cleanup job once."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    results = run_all(dry_run=dry_run)
    logger.info(f"OTP cleanup: {results['otp']}")
    logger.info(f"Session cleanup: {results['sessions']}")


def cli() -> None:
    """Entry point for the cleanup command."""
    app()


if __name__ == "__main__":
    cli()
