from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session
from typing import Optional
import logging

from foodiemap.core.database import get_db
from foodiemap.models.user import User
from foodiemap.routes.auth import user_payload
from foodiemap.routes.dependencies import get_current_user, get_lifecycle_manager
from foodiemap.services.account_lifecycle import (
    AccountLifecycleManager,
    LifecycleReceipt,
    LifecycleRejection,
)
from foodiemap.services.auth_service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/account", tags=["Account"])

REJECTION_STATUS = {
    LifecycleRejection.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LifecycleRejection.ALREADY_PENDING: status.HTTP_409_CONFLICT,
    LifecycleRejection.NOT_PENDING: status.HTTP_409_CONFLICT,
    LifecycleRejection.WINDOW_EXPIRED: status.HTTP_410_GONE,
}


class DeletionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class RecoverRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class LifecycleResponse(BaseModel):
    message: str
    status: str
    deletion_requested_at: Optional[datetime] = None
    deletion_deadline: Optional[datetime] = None
    token: Optional[str] = None
    user: Optional[dict] = None


class DeletionStatusResponse(BaseModel):
    account_id: str
    status: str
    is_deletion_scheduled: bool
    can_recover: bool
    days_remaining: int
    message: str
    deletion_requested_at: Optional[datetime] = None
    deletion_deadline: Optional[datetime] = None
    deletion_reason: Optional[str] = None


def _raise_for_rejection(receipt: LifecycleReceipt) -> None:
    if receipt.ok:
        return
    raise HTTPException(status_code=REJECTION_STATUS[receipt.rejection], detail=receipt.message)


@router.post("/deletion", response_model=LifecycleResponse, status_code=status.HTTP_202_ACCEPTED)
async def request_account_deletion(
    request: DeletionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Schedule the current account for deletion. Sign-in stops working
    immediately; the account can be recovered during the grace period.
    """
    receipt = lifecycle.request_deletion(db, user.id, request.reason)
    _raise_for_rejection(receipt)
    return LifecycleResponse(
        message=receipt.message,
        status=receipt.status.value,
        deletion_requested_at=receipt.deletion_requested_at,
        deletion_deadline=receipt.deletion_deadline,
    )


@router.get("/deletion-status", response_model=DeletionStatusResponse)
async def get_account_deletion_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    view = lifecycle.get_status(db, user.id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return DeletionStatusResponse(**view.to_dict())


@router.post("/recover", response_model=LifecycleResponse)
async def recover_account(
    request: RecoverRequest,
    db: Session = Depends(get_db),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Cancel a pending deletion. Authenticated with e-mail and password, since
    accounts pending deletion cannot hold a session.
    """
    user = AuthService.check_credentials(db, request.email, request.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    receipt = lifecycle.recover_account(db, user.id)
    _raise_for_rejection(receipt)

    db.refresh(user)
    return LifecycleResponse(
        message=receipt.message,
        status=receipt.status.value,
        token=AuthService.create_jwt_token(str(user.id), user.email),
        user=user_payload(user),
    )
