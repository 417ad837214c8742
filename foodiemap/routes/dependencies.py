import uuid
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from foodiemap.core.database import get_db, store_call
from foodiemap.models.admin import Admin
from foodiemap.models.user import User
from foodiemap.services.account_lifecycle import AccountLifecycleManager
from foodiemap.services.auth_service import ADMIN_SCOPE, USER_SCOPE, AuthService
from foodiemap.services.code_issuer import CodeIssuer
from foodiemap.services.code_verifier import CodeVerifier
from foodiemap.services.email_service import EmailDispatcher, NotificationDispatcher


# Service providers, overridable through app.dependency_overrides
@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    return EmailDispatcher()


def get_code_issuer(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> CodeIssuer:
    return CodeIssuer(dispatcher=dispatcher)


def get_code_verifier() -> CodeVerifier:
    return CodeVerifier()


def get_lifecycle_manager() -> AccountLifecycleManager:
    return AccountLifecycleManager()


def _bearer_payload(authorization: Optional[str], scope: str) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    token = authorization.replace("Bearer ", "", 1)
    payload = AuthService.verify_jwt_token(token, scope=scope)
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    return payload


def _subject_id(payload: dict) -> uuid.UUID:
    try:
        return uuid.UUID(payload["sub"])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the bearer token to an active user. Accounts pending deletion
    are refused even with a still-valid token.
    """
    payload = _bearer_payload(authorization, USER_SCOPE)

    with store_call(db, "load_current_user"):
        user = db.get(User, _subject_id(payload))

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )
    if not user.can_authenticate:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This account is scheduled for deletion. Recover it to continue."
        )
    return user


async def get_current_admin(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> Admin:
    payload = _bearer_payload(authorization, ADMIN_SCOPE)

    with store_call(db, "load_current_admin"):
        admin = db.get(Admin, _subject_id(payload))

    if not admin or not admin.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
    return admin


def require_permission(permission: str) -> Callable:
    async def checker(admin: Admin = Depends(get_current_admin)) -> Admin:
        if not admin.has_permission(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"'{permission}' permission required"
            )
        return admin

    return checker


async def require_super_admin(admin: Admin = Depends(get_current_admin)) -> Admin:
    if not admin.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin privileges required"
        )
    return admin
