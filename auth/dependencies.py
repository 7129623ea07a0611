# Authentication Dependencies for the Influence Chat platform
# Provides dependencies for getting the current user from a JWT bearer token

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from typing import Optional
from pydantic import BaseModel
import os

from database.config import get_db
from database.models import User


# JWT Configuration
JWT_SECRET = os.getenv("JWT_SECRET_KEY", "your-secret-key-here")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 60 * 24))

security = HTTPBearer()


class TokenData(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None


def create_access_token(user: User, expires_minutes: int = JWT_EXPIRE_MINUTES) -> str:
    """Issue a token for a user. Login lives upstream; this is used by tooling and tests."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": user.id, "email": user.email, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[TokenData]:
    """Decode and validate JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    email = payload.get("email")
    if user_id is None and email is None:
        return None
    return TokenData(user_id=user_id, email=email)


def get_user_from_token(token: str, db: Session) -> Optional[User]:
    """Resolve a raw token to a live user. Shared by HTTP and WebSocket auth."""
    token_data = decode_access_token(token)
    if token_data is None:
        return None

    query = db.query(User).filter(User.is_deleted.is_(False))
    if token_data.user_id:
        return query.filter(User.id == token_data.user_id).first()
    return query.filter(User.email == token_data.email).first()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Validate JWT token and return current user.
    This is the core authentication dependency.
    """
    if decode_access_token(credentials.credentials) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = get_user_from_token(credentials.credentials, db)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    return user
