import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from foodiemap.core.database import Base


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING_DELETION = "pending_deletion"
    DELETED = "deleted"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    password_hash = Column(String(255), nullable=True)

    # Email ownership
    email_verified = Column(Boolean, default=False, nullable=False)
    email_verified_at = Column(DateTime, nullable=True)

    # Account lifecycle: active -> pending_deletion -> (active | deleted)
    status = Column(String(20), nullable=False, default=AccountStatus.ACTIVE.value, index=True)
    deletion_requested_at = Column(DateTime, nullable=True, index=True)
    deletion_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    reviews = relationship("Review", back_populates="user", passive_deletes=True)
    favorites = relationship("Favorite", back_populates="user", passive_deletes=True)

    @property
    def can_authenticate(self) -> bool:
        return self.status == AccountStatus.ACTIVE.value

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, status={self.status})>"
