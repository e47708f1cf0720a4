"""Authentication for admin users.

This module handles:
- Login with email and password
- JWT access/refresh token issuing
- Dependencies that gate admin-only endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from typing import Optional
from datetime import datetime
from uuid import UUID
from sqlalchemy.orm import Session

from src.config import settings
from src.database.session import get_db
from src.database import crud
from src.database.models import User
from src import auth_utils


router = APIRouter(prefix="/auth", tags=["authentication"])
security = HTTPBearer()

# bcrypt hash of "dummy", verified when the email is unknown so both paths cost the same
DUMMY_PASSWORD_HASH = "$2b$12$LQv3c1yqBWVHxkd0LHAkCOYz6TtxMQJqhN8/LewY5GyYqwL7K.sCe"


# ============================================================================
# Pydantic Models
# ============================================================================

class UserLogin(BaseModel):
    """User login request."""
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    """JWT token response."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RefreshTokenRequest(BaseModel):
    """Request to refresh an access token."""
    refresh_token: str


class UserResponse(BaseModel):
    """User information response."""
    id: UUID
    email: str
    full_name: Optional[str] = None
    is_admin: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ============================================================================
# Authentication Dependencies
# ============================================================================

def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Dependency to get current authenticated user from JWT token.

    Raises HTTPException if token is invalid or user not found.
    """
    try:
        token = credentials.credentials
        payload = auth_utils.validate_access_token(token)
        user_id = UUID(payload.get("sub"))
    except (ValueError, TypeError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = crud.get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )
    return user


def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Dependency to require admin privileges.

    Raises HTTPException if user is not an admin.
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user


def _issue_tokens(user: User) -> TokenResponse:
    token_data = {"sub": str(user.id), "email": user.email}
    return TokenResponse(
        access_token=auth_utils.create_access_token(token_data),
        refresh_token=auth_utils.create_refresh_token(token_data),
        expires_in=settings.jwt_access_token_expire_minutes * 60
    )


# ============================================================================
# Authentication Endpoints
# ============================================================================

@router.post("/login", response_model=TokenResponse)
def login_user(credentials: UserLogin, db: Session = Depends(get_db)):
    """
    Authenticate user and return JWT tokens.

    Security: the password check runs even for unknown emails so response
    time does not reveal which accounts exist.
    """
    user = crud.get_user_by_email(db, credentials.email)

    if user:
        password_valid = auth_utils.verify_password(credentials.password, user.password_hash)
    else:
        auth_utils.verify_password(credentials.password, DUMMY_PASSWORD_HASH)
        password_valid = False

    if not user or not password_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password"
        )

    crud.update_user_last_login(db, user.id)
    return _issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(request: RefreshTokenRequest, db: Session = Depends(get_db)):
    """Exchange a refresh token for a new token pair."""
    try:
        payload = auth_utils.validate_refresh_token(request.refresh_token)
        user_id = UUID(payload.get("sub"))
    except (ValueError, TypeError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )

    user = crud.get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )
    return _issue_tokens(user)


@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current authenticated user's information."""
    return current_user
