from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import update
from sqlalchemy.orm import Session
from typing import Optional
import logging

from foodiemap.core.config import settings
from foodiemap.core.database import get_db, store_call
from foodiemap.models.admin import Admin
from foodiemap.models.verification_code import CodePurpose
from foodiemap.routes.account import DeletionStatusResponse
from foodiemap.routes.dependencies import (
    get_code_issuer,
    get_code_verifier,
    get_lifecycle_manager,
    require_permission,
    require_super_admin,
)
from foodiemap.routes.verification import CODE_PATTERN
from foodiemap.services.account_lifecycle import AccountLifecycleManager
from foodiemap.services.account_purge import run_purge_sweep
from foodiemap.services.auth_service import ADMIN_SCOPE, AuthService
from foodiemap.services.code_issuer import CodeIssuer
from foodiemap.services.code_verifier import GENERIC_FAILURE_MESSAGE, CodeVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class AdminLoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class AdminVerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., pattern=CODE_PATTERN)


class AdminLoginResponse(BaseModel):
    message: str
    requires_verification: bool = True
    email: str
    name: str
    verification_code: Optional[str] = None  # only with EXPOSE_CODES_IN_RESPONSE


class AdminAuthResponse(BaseModel):
    message: str
    token: str
    admin: dict


class PurgeSweepResponse(BaseModel):
    run_at: str
    purged_count: int
    failed_count: int


def admin_payload(admin: Admin) -> dict:
    return {
        "id": str(admin.id),
        "email": admin.email,
        "name": admin.name,
        "role": admin.role,
        "permissions": admin.permissions or [],
    }


@router.post("/login", response_model=AdminLoginResponse)
async def admin_login(
    request: AdminLoginRequest,
    db: Session = Depends(get_db),
    issuer: CodeIssuer = Depends(get_code_issuer),
):
    """
    First factor: password. On success a one-time sign-in code is sent.
    """
    admin = AuthService.find_admin_by_email(db, request.email)
    if not admin or not AuthService.verify_password(request.password, admin.password_hash):
        logger.warning(f"Admin login failed for {request.email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )
    if not admin.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin account is disabled"
        )

    issued = issuer.generate(db, admin.email, CodePurpose.OPERATOR_2FA, display_name=admin.name)
    return AdminLoginResponse(
        message="A sign-in code has been sent to your e-mail.",
        email=admin.email,
        name=admin.name,
        verification_code=issued.code if settings.EXPOSE_CODES_IN_RESPONSE else None,
    )


@router.post("/verify-auth", response_model=AdminAuthResponse)
async def admin_verify_auth(
    request: AdminVerifyRequest,
    db: Session = Depends(get_db),
    verifier: CodeVerifier = Depends(get_code_verifier),
):
    """
    Second factor: consume the sign-in code and open an admin session.
    """
    result = verifier.verify(db, request.email, CodePurpose.OPERATOR_2FA, request.code)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=GENERIC_FAILURE_MESSAGE
        )

    admin = AuthService.find_admin_by_email(db, result.identity_key)
    if not admin or not admin.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=GENERIC_FAILURE_MESSAGE
        )

    with store_call(db, "update_admin_last_login"):
        db.execute(
            update(Admin).where(Admin.id == admin.id).values(last_login_at=result.verified_at)
        )
        db.commit()

    logger.info(f"Admin signed in: {admin.email}")
    return AdminAuthResponse(
        message="Admin sign-in complete.",
        token=AuthService.create_jwt_token(str(admin.id), admin.email, scope=ADMIN_SCOPE),
        admin=admin_payload(admin),
    )


@router.get("/users/{user_id}/deletion-status", response_model=DeletionStatusResponse)
async def admin_get_user_deletion_status(
    user_id: str,
    admin: Admin = Depends(require_permission("manage_users")),
    db: Session = Depends(get_db),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    view = lifecycle.get_status(db, user_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return DeletionStatusResponse(**view.to_dict())


@router.post("/jobs/purge-expired-accounts", response_model=PurgeSweepResponse)
async def trigger_purge_sweep(
    admin: Admin = Depends(require_super_admin),
    db: Session = Depends(get_db),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Run the purge sweep now instead of waiting for the daily schedule.
    """
    logger.info(f"Purge sweep triggered manually by {admin.email}")
    result = run_purge_sweep(db, grace_period=lifecycle.grace_period, now=lifecycle.clock())
    return PurgeSweepResponse(**result.to_dict())
