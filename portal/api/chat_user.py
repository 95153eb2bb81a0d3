from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from portal.api.auth import get_current_user
from portal.db.models import User
from portal.db.secondary_models import ChatUser
from portal.db.session import get_db, get_secondary_db
from portal.services.clients import get_client
from portal.services.profile_sync import find_chat_user


def require_secondary_db(secondary_db: Optional[Session] = Depends(get_secondary_db)) -> Session:
    if secondary_db is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Secondary database not available",
        )
    return secondary_db


def get_current_user_code(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> str:
    client = get_client(db, user.id)
    if not client:
        raise HTTPException(status_code=404, detail="Profile not found")
    return client.user_code


def get_current_chat_user(
    user_code: str = Depends(get_current_user_code),
    secondary_db: Session = Depends(require_secondary_db),
) -> ChatUser:
    chat_user = find_chat_user(secondary_db, user_code)
    if not chat_user:
        raise HTTPException(status_code=404, detail="Chat user not found")
    return chat_user
