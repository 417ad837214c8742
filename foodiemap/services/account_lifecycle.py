import enum
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from foodiemap.core.clock import utcnow
from foodiemap.core.config import settings
from foodiemap.core.database import store_call
from foodiemap.core.errors import ValidationError
from foodiemap.models.user import AccountStatus, User

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000


class LifecycleRejection(str, enum.Enum):
    ACCOUNT_NOT_FOUND = "account_not_found"
    ALREADY_PENDING = "already_pending"
    NOT_PENDING = "not_pending"
    WINDOW_EXPIRED = "window_expired"


REJECTION_MESSAGES = {
    LifecycleRejection.ACCOUNT_NOT_FOUND: "Account not found.",
    LifecycleRejection.ALREADY_PENDING: "Account deletion has already been requested.",
    LifecycleRejection.NOT_PENDING: "This account is not scheduled for deletion.",
    LifecycleRejection.WINDOW_EXPIRED: "The recovery period for this account has expired.",
}


@dataclass
class LifecycleReceipt:
    account_id: uuid.UUID
    status: Optional[AccountStatus]
    message: str
    rejection: Optional[LifecycleRejection] = None
    deletion_requested_at: Optional[datetime] = None
    deletion_deadline: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None


@dataclass
class DeletionStatusView:
    account_id: uuid.UUID
    status: AccountStatus
    is_deletion_scheduled: bool
    can_recover: bool
    days_remaining: int
    message: str
    deletion_requested_at: Optional[datetime] = None
    deletion_deadline: Optional[datetime] = None
    deletion_reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["account_id"] = str(self.account_id)
        data["status"] = self.status.value
        return data


def parse_account_id(account_id) -> uuid.UUID:
    if isinstance(account_id, uuid.UUID):
        return account_id
    try:
        return uuid.UUID(str(account_id))
    except ValueError:
        raise ValidationError("Invalid account id", field="account_id")


class AccountLifecycleManager:
    """
    Soft-delete state machine for end-user accounts.

    Legal transitions: active -> pending_deletion (request),
    pending_deletion -> active (recover, inside the grace period) and
    pending_deletion -> deleted (purge sweep). Every transition is a single
    conditional UPDATE, so concurrent callers cannot both win.
    """

    def __init__(
        self,
        grace_period: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.grace_period = grace_period or timedelta(days=settings.ACCOUNT_GRACE_PERIOD_DAYS)
        self.clock = clock

    def request_deletion(self, db: Session, account_id, reason: Optional[str] = None) -> LifecycleReceipt:
        account_id = parse_account_id(account_id)
        reason = self._clean_reason(reason)
        now = self.clock()

        with store_call(db, "request_deletion"):
            result = db.execute(
                update(User)
                .where(User.id == account_id, User.status == AccountStatus.ACTIVE.value)
                .values(
                    status=AccountStatus.PENDING_DELETION.value,
                    deletion_requested_at=now,
                    deletion_reason=reason,
                    updated_at=now,
                )
            )
            db.commit()

            if result.rowcount == 0:
                user = db.get(User, account_id)
                if user is None:
                    return self._reject(account_id, None, LifecycleRejection.ACCOUNT_NOT_FOUND)
                return self._reject(account_id, AccountStatus(user.status), LifecycleRejection.ALREADY_PENDING)

        deadline = now + self.grace_period
        logger.info(f"Deletion requested for account {account_id}, purge after {deadline}")
        return LifecycleReceipt(
            account_id=account_id,
            status=AccountStatus.PENDING_DELETION,
            message=(
                f"Account deletion requested. You can recover your account "
                f"within {self.grace_period.days} days."
            ),
            deletion_requested_at=now,
            deletion_deadline=deadline,
        )

    def recover_account(self, db: Session, account_id) -> LifecycleReceipt:
        account_id = parse_account_id(account_id)
        now = self.clock()
        # Recoverable while now <= requested_at + grace, whether or not a
        # sweep has already run.
        earliest_recoverable = now - self.grace_period

        with store_call(db, "recover_account"):
            result = db.execute(
                update(User)
                .where(
                    User.id == account_id,
                    User.status == AccountStatus.PENDING_DELETION.value,
                    User.deletion_requested_at >= earliest_recoverable,
                )
                .values(
                    status=AccountStatus.ACTIVE.value,
                    deletion_requested_at=None,
                    deletion_reason=None,
                    updated_at=now,
                )
            )
            db.commit()

            if result.rowcount == 0:
                user = db.get(User, account_id)
                if user is None:
                    return self._reject(account_id, None, LifecycleRejection.ACCOUNT_NOT_FOUND)
                status = AccountStatus(user.status)
                if status != AccountStatus.PENDING_DELETION:
                    return self._reject(account_id, status, LifecycleRejection.NOT_PENDING)
                return self._reject(account_id, status, LifecycleRejection.WINDOW_EXPIRED)

        logger.info(f"Account {account_id} recovered")
        return LifecycleReceipt(
            account_id=account_id,
            status=AccountStatus.ACTIVE,
            message="Account recovered successfully.",
        )

    def get_status(self, db: Session, account_id) -> Optional[DeletionStatusView]:
        """Read-only projection of the account's deletion state. None if unknown."""
        account_id = parse_account_id(account_id)
        now = self.clock()

        with store_call(db, "get_deletion_status"):
            user = db.get(User, account_id, populate_existing=True)
        if user is None:
            return None

        status = AccountStatus(user.status)
        if status != AccountStatus.PENDING_DELETION:
            return DeletionStatusView(
                account_id=account_id,
                status=status,
                is_deletion_scheduled=False,
                can_recover=False,
                days_remaining=0,
                message="Account is active." if status == AccountStatus.ACTIVE else "Account has been deleted.",
            )

        deadline = user.deletion_requested_at + self.grace_period
        remaining = deadline - now
        return DeletionStatusView(
            account_id=account_id,
            status=status,
            is_deletion_scheduled=True,
            can_recover=now <= deadline,
            days_remaining=max(0, remaining.days),
            message="Account is scheduled for deletion.",
            deletion_requested_at=user.deletion_requested_at,
            deletion_deadline=deadline,
            deletion_reason=user.deletion_reason,
        )

    @staticmethod
    def _clean_reason(reason: Optional[str]) -> Optional[str]:
        if reason is None:
            return None
        reason = reason.strip()
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Reason must be at most {MAX_REASON_LENGTH} characters", field="reason")
        return reason or None

    @staticmethod
    def _reject(account_id, status, rejection: LifecycleRejection) -> LifecycleReceipt:
        logger.info(f"Lifecycle request for account {account_id} rejected: {rejection.value}")
        return LifecycleReceipt(
            account_id=account_id,
            status=status,
            message=REJECTION_MESSAGES[rejection],
            rejection=rejection,
        )
