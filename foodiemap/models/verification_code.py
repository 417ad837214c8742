import enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint

from foodiemap.core.database import Base


class CodePurpose(str, enum.Enum):
    EMAIL_VERIFICATION = "email_verification"
    OPERATOR_2FA = "operator_2fa"


class VerificationCode(Base):
    """
    One row per (identity_key, purpose). Issuing a new code overwrites the
    row in place, so a superseded code can never be found again.
    """

    __tablename__ = "verification_codes"
    __table_args__ = (
        UniqueConstraint("identity_key", "purpose", name="uq_verification_codes_key_purpose"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity_key = Column(String(255), nullable=False, index=True)
    purpose = Column(String(32), nullable=False)
    code = Column(String(12), nullable=False)
    issued_at = Column(DateTime, nullable=False)
    # bumped on every re-issuance; the consume step is conditioned on it
    generation = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime, nullable=False, index=True)
    consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        # never render the code value
        return (
            f"<VerificationCode(identity_key={self.identity_key}, purpose={self.purpose}, "
            f"expires_at={self.expires_at}, consumed={self.consumed})>"
        )
