"""
Authentication utilities
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
from datetime import datetime, timezone, timedelta
import os

from token_wallet.errors import WalletError

security = HTTPBearer(auto_error=False)
JWT_SECRET = os.environ.get('JWT_SECRET', 'token-wallet-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


def create_token(user_id: str, email: str, is_admin: bool = False) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "is_admin": is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    """Verify JWT token and return current user"""
    from database import db

    if credentials is None:
        raise WalletError("AUTHENTICATION_REQUIRED")

    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise WalletError("AUTHENTICATION_REQUIRED", "Token expired")
    except jwt.InvalidTokenError:
        raise WalletError("AUTHENTICATION_REQUIRED", "Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise WalletError("AUTHENTICATION_REQUIRED", "Invalid token")

    user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
    if not user:
        raise WalletError("AUTHENTICATION_REQUIRED", "User not found")

    return user


async def get_admin_user(user: dict = Depends(get_current_user)):
    """Check if user is admin"""
    if not user.get("is_admin"):
        raise WalletError("ADMIN_REQUIRED")
    return user
