import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from foodiemap.core.clock import utcnow
from foodiemap.core.database import store_call
from foodiemap.models.verification_code import CodePurpose
from foodiemap.services.codes import codes_match, coerce_purpose, normalize_identity_key
from foodiemap.services.verification_store import VerificationCodeStore

logger = logging.getLogger(__name__)

# Shown to end users for every failed verification, whatever the cause.
GENERIC_FAILURE_MESSAGE = "Invalid or expired verification code."


class VerificationOutcome(str, enum.Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    identity_key: str
    purpose: CodePurpose
    verified_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.outcome == VerificationOutcome.SUCCESS

    @property
    def public_message(self) -> str:
        return "Verification succeeded." if self.ok else GENERIC_FAILURE_MESSAGE


class CodeVerifier:
    """Validates a submitted code and consumes it in the same atomic step."""

    def __init__(
        self,
        store: Optional[VerificationCodeStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or VerificationCodeStore()
        self.clock = clock

    def verify(self, db: Session, identity_key: str, purpose, submitted_code: str) -> VerificationResult:
        key = normalize_identity_key(identity_key)
        purpose = coerce_purpose(purpose)
        submitted = (submitted_code or "").strip()
        now = self.clock()

        with store_call(db, "verify_code"):
            record = self.store.find(db, key, purpose.value)

            if record is None or record.consumed:
                return self._reject(VerificationOutcome.NOT_FOUND, key, purpose)
            if now > record.expires_at:
                return self._reject(VerificationOutcome.EXPIRED, key, purpose)
            if not codes_match(record.code, submitted):
                return self._reject(VerificationOutcome.MISMATCH, key, purpose)

            # Another verifier (or a new issuance) may have touched the row
            # since we read it; the conditional claim decides.
            if not self.store.claim(db, record.id, record.generation, now):
                return self._reject(VerificationOutcome.NOT_FOUND, key, purpose)

        logger.info(f"{purpose.value} code verified for {key}")
        return VerificationResult(
            outcome=VerificationOutcome.SUCCESS,
            identity_key=key,
            purpose=purpose,
            verified_at=now,
        )

    @staticmethod
    def _reject(outcome: VerificationOutcome, key: str, purpose: CodePurpose) -> VerificationResult:
        logger.info(f"{purpose.value} verification for {key} rejected: {outcome.value}")
        return VerificationResult(outcome=outcome, identity_key=key, purpose=purpose)
