"""
Permanent removal of accounts whose deletion grace period has elapsed.

run_purge_sweep() is a plain function over a session so it can be called
on demand (admin endpoint, tests); PurgeScheduler only decides *when* it runs.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from foodiemap.core.clock import utcnow
from foodiemap.core.config import settings
from foodiemap.core.database import SessionLocal, store_call
from foodiemap.models import AccountStatus, Favorite, Review, User
from foodiemap.services.verification_store import VerificationCodeStore

logger = logging.getLogger(__name__)


@dataclass
class PurgeSweepResult:
    run_at: datetime
    purged_count: int = 0
    failed_count: int = 0
    purged_ids: List[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "run_at": self.run_at.isoformat(),
            "purged_count": self.purged_count,
            "failed_count": self.failed_count,
        }


def find_expired_accounts(db: Session, cutoff: datetime) -> list:
    """(id, email) of every pending account requested at or before cutoff."""
    rows = db.execute(
        select(User.id, User.email).where(
            User.status == AccountStatus.PENDING_DELETION.value,
            User.deletion_requested_at <= cutoff,
        )
    ).all()
    return [(row.id, row.email) for row in rows]


def purge_account(db: Session, account_id: uuid.UUID, email: str, cutoff: datetime, now: datetime) -> bool:
    """
    Claim and erase one account in a single transaction.

    The claim is a conditional UPDATE, so an account recovered in the
    meantime, or already taken by an overlapping sweep, is skipped. Returns
    True only for the sweep that actually erased the account.
    """
    claimed = db.execute(
        update(User)
        .where(
            User.id == account_id,
            User.status == AccountStatus.PENDING_DELETION.value,
            User.deletion_requested_at <= cutoff,
        )
        .values(status=AccountStatus.DELETED.value, updated_at=now)
    )
    if claimed.rowcount != 1:
        db.rollback()
        return False

    VerificationCodeStore().delete_for_keys(db, [email.lower() if email else None, str(account_id)])
    db.execute(delete(Favorite).where(Favorite.user_id == account_id))
    db.execute(delete(Review).where(Review.user_id == account_id))
    db.execute(delete(User).where(User.id == account_id))
    db.commit()
    return True


def run_purge_sweep(
    db: Session,
    grace_period: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> PurgeSweepResult:
    """
    One sweep: permanently erase every account whose grace period has elapsed.

    A failure on one account is logged and the sweep moves on; that account
    stays pending and is picked up by the next run.

    Raises:
        TransientStoreError: the candidate selection itself failed
    """
    grace_period = grace_period or timedelta(days=settings.ACCOUNT_GRACE_PERIOD_DAYS)
    now = now or utcnow()
    cutoff = now - grace_period
    result = PurgeSweepResult(run_at=now)

    logger.info(f"🧹 Purge sweep started at {now} (cutoff {cutoff})")
    with store_call(db, "select_expired_accounts"):
        candidates = find_expired_accounts(db, cutoff)
        db.rollback()  # end the read transaction before claiming

    for account_id, email in candidates:
        try:
            with store_call(db, "purge_account"):
                if purge_account(db, account_id, email, cutoff, now):
                    result.purged_count += 1
                    result.purged_ids.append(account_id)
                    logger.info(f"Account {account_id} permanently deleted")
                else:
                    logger.info(f"Account {account_id} no longer eligible, skipped")
        except Exception:
            db.rollback()
            result.failed_count += 1
            logger.exception(f"Failed to purge account {account_id}")

    if result.purged_count or result.failed_count:
        logger.info(
            f"✅ Purge sweep finished: {result.purged_count} purged, {result.failed_count} failed"
        )
    else:
        logger.info("Purge sweep finished: no expired accounts")
    return result


class PurgeScheduler:
    """Runs run_purge_sweep daily at a fixed local time in a background thread."""

    JOB_ID = "purge_expired_accounts"

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        hour: int = None,
        minute: int = None,
        timezone: str = None,
        grace_period: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.hour = settings.PURGE_CRON_HOUR if hour is None else hour
        self.minute = settings.PURGE_CRON_MINUTE if minute is None else minute
        self.timezone = timezone or settings.PURGE_TIMEZONE
        self.grace_period = grace_period
        self._scheduler = BackgroundScheduler(timezone=self.timezone)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        self._scheduler.add_job(
            self.run_once,
            CronTrigger(hour=self.hour, minute=self.minute, timezone=self.timezone),
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"⏰ Account purge job registered: daily at {self.hour:02d}:{self.minute:02d} ({self.timezone})"
        )

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None

    def run_once(self) -> Optional[PurgeSweepResult]:
        """Scheduled entry point. A failed sweep is retried by the next run."""
        db = self.session_factory()
        try:
            return run_purge_sweep(db, grace_period=self.grace_period)
        except Exception:
            logger.exception("❌ Purge sweep failed, will retry on next scheduled run")
            return None
        finally:
            db.close()
