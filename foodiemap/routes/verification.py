from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import update
from sqlalchemy.orm import Session
from typing import Optional
import logging

from foodiemap.core.config import settings
from foodiemap.core.database import get_db, store_call
from foodiemap.models.user import User
from foodiemap.models.verification_code import CodePurpose
from foodiemap.routes.auth import MessageResponse
from foodiemap.routes.dependencies import get_code_issuer, get_code_verifier
from foodiemap.services.auth_service import AuthService
from foodiemap.services.code_issuer import CodeIssuer
from foodiemap.services.code_verifier import GENERIC_FAILURE_MESSAGE, CodeVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verification", tags=["Verification"])

CODE_PATTERN = r"^\d{4,12}$"


class EmailRequest(BaseModel):
    email: EmailStr


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., pattern=CODE_PATTERN)


class VerifyEmailResponse(BaseModel):
    message: str
    email_verified: bool
    verified_at: Optional[datetime] = None


def _issue(db: Session, issuer: CodeIssuer, email: str, name: Optional[str]) -> MessageResponse:
    issued = issuer.generate(db, email, CodePurpose.EMAIL_VERIFICATION, display_name=name)
    return MessageResponse(
        message="A verification code has been sent to your e-mail.",
        email=issued.identity_key,
        verification_code=issued.code if settings.EXPOSE_CODES_IN_RESPONSE else None,
    )


@router.post("/send-email-verification", response_model=MessageResponse)
async def send_email_verification(
    request: EmailRequest,
    db: Session = Depends(get_db),
    issuer: CodeIssuer = Depends(get_code_issuer),
):
    """
    Send an e-mail ownership code. Works before the account exists.
    """
    user = AuthService.find_user_by_email(db, request.email)
    if user and user.email_verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already verified"
        )
    return _issue(db, issuer, request.email, user.name if user else None)


@router.post("/resend-email-verification", response_model=MessageResponse)
async def resend_email_verification(
    request: EmailRequest,
    db: Session = Depends(get_db),
    issuer: CodeIssuer = Depends(get_code_issuer),
):
    """
    Issue a new code for a registered user; the previous one stops working
    """
    user = AuthService.find_user_by_email(db, request.email)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    if user.email_verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already verified"
        )
    return _issue(db, issuer, request.email, user.name)


@router.post("/verify-email", response_model=VerifyEmailResponse)
async def verify_email(
    request: VerifyEmailRequest,
    db: Session = Depends(get_db),
    verifier: CodeVerifier = Depends(get_code_verifier),
):
    """
    Consume the e-mail code and mark the matching account as verified
    """
    result = verifier.verify(db, request.email, CodePurpose.EMAIL_VERIFICATION, request.code)
    if not result.ok:
        # one message for every failure cause
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=GENERIC_FAILURE_MESSAGE
        )

    with store_call(db, "mark_email_verified"):
        db.execute(
            update(User)
            .where(User.email == result.identity_key)
            .values(email_verified=True, email_verified_at=result.verified_at)
        )
        db.commit()

    logger.info(f"Email verified: {result.identity_key}")
    return VerifyEmailResponse(
        message="Email verified.",
        email_verified=True,
        verified_at=result.verified_at,
    )
