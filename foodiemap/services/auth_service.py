from datetime import datetime, timedelta, timezone
import re
from typing import Optional, Tuple

import bcrypt
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from foodiemap.core.config import settings
from foodiemap.core.database import store_call
from foodiemap.models.admin import Admin
from foodiemap.models.user import User

USER_SCOPE = "user"
ADMIN_SCOPE = "admin"


def parse_expires_in(value: str, default: timedelta = timedelta(days=7)) -> timedelta:
    """Parse durations like '7d' or '24h'."""
    value = (value or "").strip().lower()
    if value.endswith("d") and value[:-1].isdigit():
        return timedelta(days=int(value[:-1]))
    if value.endswith("h") and value[:-1].isdigit():
        return timedelta(hours=int(value[:-1]))
    if value.endswith("m") and value[:-1].isdigit():
        return timedelta(minutes=int(value[:-1]))
    return default


class AuthService:
    """Service for handling authentication operations"""

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using bcrypt"""
        salt = bcrypt.gensalt()
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        """Verify a password against its hash"""
        if not hashed_password:
            return False
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            hashed_password.encode("utf-8")
        )

    @staticmethod
    def create_jwt_token(subject_id: str, email: str, scope: str = USER_SCOPE) -> str:
        """Create a JWT token. Admin tokens use the shorter admin lifetime."""
        if scope == ADMIN_SCOPE:
            lifetime = parse_expires_in(settings.ADMIN_JWT_EXPIRES_IN, timedelta(hours=24))
        else:
            lifetime = parse_expires_in(settings.JWT_EXPIRES_IN)

        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(subject_id),
            "email": email,
            "scope": scope,
            "exp": now + lifetime,
            "iat": now,
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def verify_jwt_token(token: str, scope: str = USER_SCOPE) -> Optional[dict]:
        """Verify and decode a JWT token; None if invalid, expired or of another scope"""
        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        except JWTError:
            return None
        if payload.get("scope") != scope:
            return None
        return payload

    @staticmethod
    def find_user_by_email(db: Session, email: str) -> Optional[User]:
        with store_call(db, "find_user"):
            return db.query(User).filter(User.email == email.strip().lower()).first()

    @staticmethod
    def find_admin_by_email(db: Session, email: str) -> Optional[Admin]:
        with store_call(db, "find_admin"):
            return db.query(Admin).filter(Admin.email == email.strip().lower()).first()

    @staticmethod
    def check_credentials(db: Session, email: str, password: str) -> Optional[User]:
        """
        Return the user if the password matches, whatever the account status.
        Callers decide whether the status allows a session.
        """
        user = AuthService.find_user_by_email(db, email)
        if not user or not AuthService.verify_password(password, user.password_hash):
            return None
        return user

    @staticmethod
    def validate_password(password: str) -> Tuple[bool, str]:
        """Validate password strength"""
        if len(password) < 8:
            return False, "Password must be at least 8 characters"
        if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
            return False, "Password must contain letters and digits"
        return True, ""
