import os
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from portal.db.models import Base
from portal.db.secondary_models import SecondaryBase

# Primary store: accounts and client profiles. Override with PRIMARY_DB_PATH when needed.
PRIMARY_DB_PATH = os.getenv("PRIMARY_DB_PATH", "/var/data/portal.db")
# Secondary store: coaching data keyed by user code. Empty string disables it.
SECONDARY_DB_PATH = os.getenv("SECONDARY_DB_PATH", "/var/data/portal_secondary.db")

connect_args = {"check_same_thread": False}


def _build_engine(db_path: str) -> Engine:
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(PRIMARY_DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

secondary_engine: Optional[Engine] = _build_engine(SECONDARY_DB_PATH) if SECONDARY_DB_PATH else None
SecondarySessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=secondary_engine)


def configure_database(db_path: str) -> None:
    global PRIMARY_DB_PATH, engine
    PRIMARY_DB_PATH = db_path
    engine = _build_engine(PRIMARY_DB_PATH)
    SessionLocal.configure(bind=engine)


def configure_secondary_database(db_path: Optional[str]) -> None:
    global SECONDARY_DB_PATH, secondary_engine
    SECONDARY_DB_PATH = db_path or ""
    secondary_engine = _build_engine(SECONDARY_DB_PATH) if SECONDARY_DB_PATH else None
    SecondarySessionLocal.configure(bind=secondary_engine)


def secondary_available() -> bool:
    return secondary_engine is not None


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    # Lightweight forward-compatible column upgrades for SQLite without full migrations.
    with engine.begin() as conn:
        client_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(clients)")).fetchall()}
        if "timezone" not in client_columns:
            conn.execute(text("ALTER TABLE clients ADD COLUMN timezone VARCHAR(64)"))
        if "client_preference" not in client_columns:
            conn.execute(text("ALTER TABLE clients ADD COLUMN client_preference TEXT"))
        if "onboarding_completed" not in client_columns:
            conn.execute(text("ALTER TABLE clients ADD COLUMN onboarding_completed BOOLEAN NOT NULL DEFAULT 0"))

    if secondary_engine is None:
        return
    SecondaryBase.metadata.create_all(bind=secondary_engine)
    with secondary_engine.begin() as conn:
        chat_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(chat_users)")).fetchall()}
        if "whatsapp_number" not in chat_columns:
            conn.execute(text("ALTER TABLE chat_users ADD COLUMN whatsapp_number VARCHAR(32)"))
            conn.execute(text("UPDATE chat_users SET whatsapp_number = phone_number WHERE whatsapp_number IS NULL"))


def get_db() -> Iterator[Session]:
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_secondary_db() -> Iterator[Optional[Session]]:
    if secondary_engine is None:
        yield None
        return
    db: Session = SecondarySessionLocal()
    try:
        yield db
    finally:
        db.close()
