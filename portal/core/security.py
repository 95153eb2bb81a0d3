import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
ACCESS_TOKEN_TYPE = "portal_access"

password_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_context.hash(password)


def password_matches(password: str, password_hash: str) -> bool:
    return password_context.verify(password, password_hash)


def issue_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "typ": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def token_user_id(token: str) -> int:
    """Return the account id carried by a portal access token.

    Raises JWTError for expired, tampered or foreign tokens.
    """
    claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    if claims.get("typ") != ACCESS_TOKEN_TYPE:
        raise JWTError("Not a portal access token")
    subject = str(claims.get("sub") or "")
    if not subject.isdigit():
        raise JWTError("Missing subject")
    return int(subject)
