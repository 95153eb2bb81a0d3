"""Primary profile writes with best-effort mirroring into the secondary store.

The primary write decides the outcome. The chat-user mirror runs only after
the primary commit and never raises; its failures end up in the log.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal.core.onboarding import PROFILE_COLUMNS, build_primary_update, build_secondary_update
from portal.core.wizard import SubmissionError
from portal.db.models import User
from portal.db.secondary_models import ChatUser
from portal.services.clients import UserCodeExhaustedError, get_client, get_or_create_client

logger = logging.getLogger("uvicorn.error")


class ProfileFetchError(RuntimeError):
    pass


class PrimaryWriteError(SubmissionError):
    pass


@dataclass(frozen=True)
class SyncResult:
    primary_written: bool
    secondary_synced: bool


def load_onboarding_profile(db: Session, user_id: int) -> Optional[dict[str, Any]]:
    try:
        client = get_client(db, user_id)
    except SQLAlchemyError as exc:
        logger.error("Loading client profile failed for user_id=%s: %s", user_id, exc)
        raise ProfileFetchError("Could not load client profile") from exc
    if client is None:
        return None
    return {column: getattr(client, column) for column in PROFILE_COLUMNS}


def find_chat_user(secondary_db: Session, user_code: str) -> Optional[ChatUser]:
    return secondary_db.query(ChatUser).filter(ChatUser.user_code == user_code).first()


def mirror_to_chat_user(
    secondary_db: Optional[Session], user_code: Optional[str], payload: Mapping[str, Any]
) -> bool:
    if secondary_db is None or not user_code or not payload:
        return False
    try:
        chat_user = find_chat_user(secondary_db, user_code)
        if chat_user is None:
            logger.warning("No chat user for user_code=%s; secondary sync skipped", user_code)
            return False
        for column, value in payload.items():
            setattr(chat_user, column, value)
        secondary_db.commit()
        return True
    except Exception:
        logger.exception("Secondary sync failed for user_code=%s", user_code)
        try:
            secondary_db.rollback()
        except Exception:
            logger.warning("Secondary rollback failed for user_code=%s", user_code)
        return False


def submit_onboarding(
    db: Session,
    secondary_db: Optional[Session],
    user: User,
    shown_fields: Iterable[str],
    values: Mapping[str, Any],
    calling_code: str,
    now: Optional[datetime] = None,
) -> SyncResult:
    stamp = now or datetime.utcnow()
    fields = list(shown_fields)
    try:
        primary_payload = build_primary_update(fields, values, calling_code, stamp)
        secondary_payload = build_secondary_update(fields, values, calling_code, stamp)
    except (TypeError, ValueError) as exc:
        raise PrimaryWriteError("Onboarding answers could not be mapped") from exc

    try:
        client = get_or_create_client(db, user)
        for column, value in primary_payload.items():
            setattr(client, column, value)
        db.commit()
        user_code = client.user_code
    except (SQLAlchemyError, UserCodeExhaustedError) as exc:
        db.rollback()
        logger.error("Saving onboarding answers failed for user_id=%s: %s", user.id, exc)
        raise PrimaryWriteError("Could not save onboarding answers") from exc

    synced = mirror_to_chat_user(secondary_db, user_code, secondary_payload)
    return SyncResult(primary_written=True, secondary_synced=synced)
