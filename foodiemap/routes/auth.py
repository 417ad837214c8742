from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session
from typing import Optional
import logging

from foodiemap.core.config import settings
from foodiemap.core.database import get_db, store_call
from foodiemap.core.errors import RateLimitExceeded
from foodiemap.models.user import AccountStatus, User
from foodiemap.models.verification_code import CodePurpose
from foodiemap.routes.dependencies import get_code_issuer, get_lifecycle_manager
from foodiemap.services.account_lifecycle import AccountLifecycleManager
from foodiemap.services.auth_service import AuthService
from foodiemap.services.code_issuer import CodeIssuer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


# Pydantic Models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    phone: Optional[str] = Field(None, max_length=50)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str
    email: Optional[str] = None
    verification_code: Optional[str] = None  # only with EXPOSE_CODES_IN_RESPONSE


class AuthResponse(BaseModel):
    token: str
    user: dict


def user_payload(user: User) -> dict:
    return {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "email_verified": user.email_verified,
    }


@router.post("/register", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db),
    issuer: CodeIssuer = Depends(get_code_issuer),
):
    """
    Register a new user and send an e-mail verification code
    """
    email = request.email.lower()

    is_valid, error_msg = AuthService.validate_password(request.password)
    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_msg
        )

    if AuthService.find_user_by_email(db, email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    user = User(
        email=email,
        name=request.name,
        phone=request.phone,
        password_hash=AuthService.hash_password(request.password),
        email_verified=False,
        status=AccountStatus.ACTIVE.value,
    )
    with store_call(db, "register_user"):
        db.add(user)
        db.commit()
        db.refresh(user)
    logger.info(f"User registered: {user.id}")

    try:
        issued = issuer.generate(db, email, CodePurpose.EMAIL_VERIFICATION, display_name=user.name)
    except RateLimitExceeded:
        # a code sent moments ago through /send-email-verification is still valid
        return MessageResponse(message="Registered. A verification code was already sent.", email=email)

    return MessageResponse(
        message="Registered. A verification code has been sent to your e-mail.",
        email=email,
        verification_code=issued.code if settings.EXPOSE_CODES_IN_RESPONSE else None,
    )


@router.post("/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Login with email and password
    """
    user = AuthService.check_credentials(db, request.email, request.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    # Accounts pending deletion cannot sign in; tell the client how to recover
    if not user.can_authenticate:
        logger.info(f"Login refused for account {user.id} in status {user.status}")
        view = lifecycle.get_status(db, user.id)
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "message": "This account is scheduled for deletion.",
                "deletion_status": jsonable_encoder(view.to_dict()) if view else None,
            },
        )

    token = AuthService.create_jwt_token(str(user.id), user.email)
    return AuthResponse(token=token, user=user_payload(user))
