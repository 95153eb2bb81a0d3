from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.core.security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    hash_password,
    issue_access_token,
    password_matches,
    token_user_id,
)
from portal.db.models import User
from portal.db.session import get_db
from portal.services.clients import UserCodeExhaustedError, create_client_record, get_client

router = APIRouter(prefix="/auth", tags=["auth"])
bearer_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=120)
    last_name: Optional[str] = Field(default=None, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)
    newsletter: bool = False


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = ACCESS_TOKEN_EXPIRE_MINUTES * 60


class AccountResponse(BaseModel):
    user_id: int
    email: str
    user_code: Optional[str] = None
    full_name: Optional[str] = None
    onboarding_completed: bool = False


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def _account_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.strip().lower()).first()


def _token_for(user: User) -> TokenResponse:
    return TokenResponse(access_token=issue_access_token(user.id))


def get_current_user(token: str = Depends(bearer_scheme), db: Session = Depends(get_db)) -> User:
    try:
        user_id = token_user_id(token)
    except JWTError:
        raise _unauthorized()
    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized()
    return user


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)) -> TokenResponse:
    if _account_by_email(db, payload.email):
        raise HTTPException(status_code=409, detail="Email already registered")

    # Account and client record are committed together.
    user = User(email=payload.email.lower(), password_hash=hash_password(payload.password))
    try:
        db.add(user)
        db.flush()
        create_client_record(
            db,
            user,
            first_name=_clean(payload.first_name),
            last_name=_clean(payload.last_name),
            phone=_clean(payload.phone),
            newsletter=payload.newsletter,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    except UserCodeExhaustedError:
        db.rollback()
        raise HTTPException(status_code=503, detail="Could not create client record. Please try again.")
    return _token_for(user)


@router.post("/login", response_model=TokenResponse)
def login(form: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    user = _account_by_email(db, form.username)
    if user is None or not password_matches(form.password, user.password_hash):
        raise _unauthorized()
    return _token_for(user)


@router.get("/me", response_model=AccountResponse)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> AccountResponse:
    client = get_client(db, user.id)
    account = AccountResponse(user_id=user.id, email=user.email)
    if client is None:
        return account
    account.user_code = client.user_code
    account.full_name = " ".join(part for part in (client.first_name, client.last_name) if part) or None
    account.onboarding_completed = bool(client.onboarding_completed)
    return account
