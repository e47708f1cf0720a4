"""Authentication utilities for password hashing and JWT tokens.

This module provides core authentication functionality used by the auth API.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
import jwt
from jwt.exceptions import InvalidTokenError

from src.config import settings


# ============================================================================
# Password Hashing (using bcrypt directly)
# ============================================================================

def _password_bytes(password: str) -> bytes:
    # Bcrypt has a max password length of 72 bytes
    return password.encode('utf-8')[:72]


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password

    Returns:
        Hashed password
    """
    salt = bcrypt.gensalt(rounds=settings.password_bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(_password_bytes(plain_password), hashed_password.encode('utf-8'))
    except ValueError:
        # Malformed hash
        return False


# ============================================================================
# JWT Token Management
# ============================================================================

def _encode(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    to_encode = data.copy()
    to_encode.update({
        "exp": now + expires_delta,
        "iat": now,
        "type": token_type
    })
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm
    )


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode in token
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    return _encode(
        data,
        "access",
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )


def create_refresh_token(data: Dict[str, Any]) -> str:
    """Create a JWT refresh token with longer expiration."""
    return _encode(data, "refresh", timedelta(days=settings.jwt_refresh_token_expire_days))


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Raises:
        InvalidTokenError: If token is invalid or expired
    """
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm]
    )


def _validate_token(token: str, token_type: str) -> Dict[str, Any]:
    try:
        payload = decode_token(token)
    except InvalidTokenError as e:
        raise ValueError(f"Invalid token: {str(e)}")

    if payload.get("type") != token_type:
        raise ValueError("Invalid token type")
    return payload


def validate_access_token(token: str) -> Dict[str, Any]:
    """
    Validate an access token and return its payload.

    Raises:
        ValueError: If token is invalid, expired, or wrong type
    """
    return _validate_token(token, "access")


def validate_refresh_token(token: str) -> Dict[str, Any]:
    """
    Validate a refresh token and return its payload.

    Raises:
        ValueError: If token is invalid, expired, or wrong type
    """
    return _validate_token(token, "refresh")
