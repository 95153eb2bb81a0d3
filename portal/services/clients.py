import secrets
import string
from typing import Callable, Optional

from sqlalchemy.orm import Session

from portal.db.models import Client, User

USER_CODE_ALPHABET = string.ascii_uppercase
USER_CODE_LENGTH = 6
USER_CODE_MAX_ATTEMPTS = 100


class UserCodeExhaustedError(RuntimeError):
    pass


def generate_unique_user_code(db: Session, choice: Callable[[str], str] = secrets.choice) -> str:
    for _ in range(USER_CODE_MAX_ATTEMPTS):
        code = "".join(choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
        taken = db.query(Client.id).filter(Client.user_code == code).first()
        if not taken:
            return code
    raise UserCodeExhaustedError("Failed to generate unique user code after maximum attempts")


def get_client(db: Session, user_id: int) -> Optional[Client]:
    return db.query(Client).filter(Client.user_id == user_id).first()


def create_client_record(
    db: Session,
    user: User,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    phone: Optional[str] = None,
    newsletter: bool = False,
) -> Client:
    client = Client(
        user_id=user.id,
        user_code=generate_unique_user_code(db),
        first_name=first_name,
        last_name=last_name,
        email=user.email,
        phone=phone,
        newsletter=newsletter,
        status="active",
        onboarding_completed=False,
    )
    db.add(client)
    db.flush()
    return client


def get_or_create_client(db: Session, user: User) -> Client:
    return get_client(db, user.id) or create_client_record(db, user)
