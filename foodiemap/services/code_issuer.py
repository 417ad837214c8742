import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from foodiemap.core.clock import utcnow
from foodiemap.core.config import settings
from foodiemap.core.database import store_call
from foodiemap.core.errors import RateLimitExceeded
from foodiemap.models.verification_code import CodePurpose
from foodiemap.services.codes import coerce_purpose, generate_numeric_code, normalize_identity_key
from foodiemap.services.email_service import CodeNotification, NotificationDispatcher
from foodiemap.services.verification_store import VerificationCodeStore

logger = logging.getLogger(__name__)


@dataclass
class IssuedCode:
    identity_key: str
    purpose: CodePurpose
    code: str
    issued_at: datetime
    expires_at: datetime


class CodeIssuer:
    """Creates one-time codes, superseding any earlier code for the same key."""

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        store: Optional[VerificationCodeStore] = None,
        ttl: Optional[timedelta] = None,
        cooldown: Optional[timedelta] = None,
        code_length: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dispatcher = dispatcher
        self.store = store or VerificationCodeStore()
        self.ttl = ttl or timedelta(minutes=settings.CODE_TTL_MINUTES)
        self.cooldown = (
            cooldown if cooldown is not None
            else timedelta(seconds=settings.CODE_RESEND_COOLDOWN_SECONDS)
        )
        self.code_length = code_length or settings.CODE_LENGTH
        self.clock = clock

    def generate(
        self,
        db: Session,
        identity_key: str,
        purpose,
        display_name: Optional[str] = None,
    ) -> IssuedCode:
        """
        Issue a fresh code for (identity_key, purpose) and hand it to the
        dispatcher.

        Raises:
            ValidationError: malformed identity key or purpose
            RateLimitExceeded: a live code was issued inside the cooldown
            TransientStoreError: the store round trip failed
        """
        key = normalize_identity_key(identity_key)
        purpose = coerce_purpose(purpose)
        now = self.clock()

        with store_call(db, "issue_code"):
            if self.cooldown:
                self._check_cooldown(db, key, purpose, now)

            issued = IssuedCode(
                identity_key=key,
                purpose=purpose,
                code=generate_numeric_code(self.code_length),
                issued_at=now,
                expires_at=now + self.ttl,
            )
            self.store.replace(
                db,
                identity_key=key,
                purpose=purpose.value,
                code=issued.code,
                issued_at=issued.issued_at,
                expires_at=issued.expires_at,
            )

        logger.info(f"Issued {purpose.value} code for {key}, expires at {issued.expires_at}")
        self._dispatch(issued, display_name)
        return issued

    def _check_cooldown(self, db: Session, key: str, purpose: CodePurpose, now: datetime) -> None:
        """
        Best-effort abuse throttle. The read is separate from the replace, so
        two issuers racing on one key can both pass; supersede still leaves a
        single verifiable code.
        """
        previous = self.store.find(db, key, purpose.value)
        if previous is None or previous.consumed:
            return
        elapsed = now - previous.issued_at
        if elapsed < self.cooldown:
            retry_after = int((self.cooldown - elapsed).total_seconds()) + 1
            logger.warning(f"Code requested again for {key}/{purpose.value} within cooldown")
            raise RateLimitExceeded(retry_after)

    def _dispatch(self, issued: IssuedCode, display_name: Optional[str]) -> None:
        # Delivery problems never invalidate the stored code nor fail the caller.
        if self.dispatcher is None:
            logger.warning(f"No dispatcher configured, {issued.purpose.value} code for {issued.identity_key} not sent")
            return
        try:
            self.dispatcher.dispatch(
                CodeNotification(
                    identity_key=issued.identity_key,
                    code=issued.code,
                    purpose=issued.purpose,
                    expires_at=issued.expires_at,
                    display_name=display_name,
                )
            )
        except Exception as e:
            logger.error(
                f"Failed to dispatch {issued.purpose.value} code for {issued.identity_key}: {e}",
                exc_info=True,
            )
