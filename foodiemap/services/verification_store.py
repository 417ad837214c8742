import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from foodiemap.models.verification_code import VerificationCode

logger = logging.getLogger(__name__)


class VerificationCodeStore:
    """
    Keyed record store for one-time codes.

    Holds at most one row per (identity_key, purpose). All mutations are
    single conditional statements; no in-process state is kept.
    """

    def find(self, db: Session, identity_key: str, purpose: str) -> Optional[VerificationCode]:
        return db.query(VerificationCode).populate_existing().filter(
            VerificationCode.identity_key == identity_key,
            VerificationCode.purpose == purpose,
        ).first()

    def replace(
        self,
        db: Session,
        identity_key: str,
        purpose: str,
        code: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> None:
        """
        Overwrite the row for (identity_key, purpose) with a fresh code, or
        insert it. Any code issued earlier for the key stops being verifiable
        as soon as this commits.
        """
        values = {
            "code": code,
            "issued_at": issued_at,
            "expires_at": expires_at,
            "consumed": False,
            "consumed_at": None,
        }
        # Two attempts: a concurrent issuer may insert the row between our
        # UPDATE and INSERT, in which case the second UPDATE overwrites it.
        for attempt in range(2):
            result = db.execute(
                update(VerificationCode)
                .where(
                    VerificationCode.identity_key == identity_key,
                    VerificationCode.purpose == purpose,
                )
                .values(generation=VerificationCode.generation + 1, **values)
            )
            if result.rowcount:
                db.commit()
                return

            db.add(VerificationCode(identity_key=identity_key, purpose=purpose, generation=1, **values))
            try:
                db.commit()
                return
            except IntegrityError:
                db.rollback()
                logger.info(f"Concurrent issue for {identity_key}/{purpose}, retrying as overwrite")
        raise RuntimeError(f"Could not store code for {identity_key}/{purpose}")

    def claim(self, db: Session, record_id: int, generation: int, now: datetime) -> bool:
        """
        Consume the code atomically. Succeeds only if the row still holds the
        same issuance (generation), is unconsumed and unexpired; exactly one
        of any number of racing callers gets True. A re-issuance always bumps
        the generation, so a superseded code cannot claim the new row even
        when both were issued at the same instant.
        """
        result = db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.id == record_id,
                VerificationCode.generation == generation,
                VerificationCode.consumed.is_(False),
                VerificationCode.expires_at >= now,
            )
            .values(consumed=True, consumed_at=now)
        )
        db.commit()
        return result.rowcount == 1

    def delete_for_keys(self, db: Session, identity_keys: Iterable[str]) -> int:
        """Remove every code held by the given keys. Caller commits."""
        keys = [k for k in identity_keys if k]
        if not keys:
            return 0
        result = db.execute(
            delete(VerificationCode).where(VerificationCode.identity_key.in_(keys))
        )
        return result.rowcount
