import argparse
import os
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import Session

from portal.core.onboarding import FIELD_MAPPINGS, secondary_columns_for
from portal.db import session as db_session
from portal.db.models import Client
from portal.services.profile_sync import find_chat_user, mirror_to_chat_user

MIRRORED_COLUMNS = tuple(m.primary_column for m in FIELD_MAPPINGS if m.secondary_columns) + ("age",)


def resolve_db_path(override: Optional[str], env_name: str, default: str) -> Path:
    if override:
        return Path(override).expanduser().resolve()
    env_path = os.getenv(env_name)
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path(default).resolve()


def mirror_payload(client: Client) -> dict:
    # Unset primary columns leave the chat user's value alone.
    primary_values = {
        column: getattr(client, column) for column in MIRRORED_COLUMNS if getattr(client, column) is not None
    }
    payload = secondary_columns_for(primary_values)
    payload["onboarding_done"] = bool(client.onboarding_completed)
    if client.updated_at:
        payload["updated_at"] = client.updated_at
    return payload


def resync(primary: Session, secondary: Session, user_codes: list[str], dry_run: bool) -> dict[str, int]:
    query = primary.query(Client).order_by(Client.id.asc())
    if user_codes:
        query = query.filter(Client.user_code.in_(user_codes))
    counts = {"clients": 0, "synced": 0, "missing_chat_user": 0, "failed": 0}
    for client in query.all():
        counts["clients"] += 1
        if dry_run:
            if find_chat_user(secondary, client.user_code) is None:
                counts["missing_chat_user"] += 1
            continue
        if find_chat_user(secondary, client.user_code) is None:
            counts["missing_chat_user"] += 1
            continue
        if mirror_to_chat_user(secondary, client.user_code, mirror_payload(client)):
            counts["synced"] += 1
        else:
            counts["failed"] += 1
    return counts


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Re-apply client profile fields onto matching chat users in the secondary DB."
    )
    parser.add_argument(
        "--user-code",
        action="append",
        default=[],
        help="User code to resync (repeatable).",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Resync every client.",
    )
    parser.add_argument(
        "--primary-db-path",
        default=None,
        help="Override primary SQLite DB path. Defaults to PRIMARY_DB_PATH env or app default.",
    )
    parser.add_argument(
        "--secondary-db-path",
        default=None,
        help="Override secondary SQLite DB path. Defaults to SECONDARY_DB_PATH env or app default.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report matches only; do not write.",
    )
    args = parser.parse_args()

    if not args.all and not args.user_code:
        parser.error("Use --user-code <code> or --all")

    primary_path = resolve_db_path(args.primary_db_path, "PRIMARY_DB_PATH", "/var/data/portal.db")
    secondary_path = resolve_db_path(
        args.secondary_db_path, "SECONDARY_DB_PATH", "/var/data/portal_secondary.db"
    )
    for path in (primary_path, secondary_path):
        if not path.exists():
            print(f"DB not found: {path}")
            return 1

    db_session.configure_database(str(primary_path))
    db_session.configure_secondary_database(str(secondary_path))
    primary = db_session.SessionLocal()
    secondary = db_session.SecondarySessionLocal()
    try:
        codes = [] if args.all else [c.strip().upper() for c in args.user_code if c.strip()]
        print(f"Primary DB: {primary_path}")
        print(f"Secondary DB: {secondary_path}")
        counts = resync(primary, secondary, codes, args.dry_run)
        print("Resync counts:")
        for name, count in counts.items():
            print(f"  {name}: {count}")
    finally:
        primary.close()
        secondary.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
