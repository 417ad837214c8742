import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Uuid
from sqlalchemy.sql import func

from foodiemap.core.database import Base


class Admin(Base):
    """Privileged operator. Login requires a second factor (operator_2fa code)."""

    __tablename__ = "admins"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="admin")  # 'admin' | 'super_admin'
    permissions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"

    def has_permission(self, permission: str) -> bool:
        return self.is_super_admin or permission in (self.permissions or [])

    def __repr__(self):
        return f"<Admin(email={self.email}, role={self.role})>"
