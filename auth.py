import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import JWT_ALGO, TOKEN_EXPIRE_HOURS, jwt_secret

logger = logging.getLogger(__name__)

# auto_error is off so a missing header answers 401 rather than FastAPI's default
security = HTTPBearer(auto_error=False)


def create_token(payload: dict) -> str:
    secret = jwt_secret()
    if not secret:
        raise HTTPException(status_code=500, detail="JWT secret not configured!")
    exp = datetime.now(timezone.utc) + timedelta(hours=TOKEN_EXPIRE_HOURS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, secret, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    secret = jwt_secret()
    if not secret:
        logger.error("JWT_SECRET is not set, rejecting token")
        raise HTTPException(status_code=401, detail="unauthorized access")
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="unauthorized access: token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="unauthorized access")


def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    """Gate for protected routes; returns the decoded claims."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="unauthorized access")
    return decode_token(credentials.credentials)


def claims_email(claims: dict) -> str:
    email = claims.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return email
