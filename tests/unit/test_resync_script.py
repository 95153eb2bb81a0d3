from datetime import date, datetime

from portal.db.secondary_models import ChatUser
from scripts.resync_chat_users import mirror_payload, resync


def test_mirror_payload_uses_secondary_column_names(create_user) -> None:
    user = create_user(
        phone="+972544455656",
        user_language="he",
        birth_date=date(1990, 6, 15),
        age=35,
        dietary_preferences="vegetarian",
        activity_level="light",
        target_weight=60.0,
        onboarding_completed=True,
    )
    payload = mirror_payload(user.client)
    assert payload["phone_number"] == "+972544455656"
    assert payload["whatsapp_number"] == "+972544455656"
    assert payload["language"] == "he"
    assert payload["date_of_birth"] == date(1990, 6, 15)
    assert payload["age"] == 35
    assert payload["food_limitations"] == "vegetarian"
    assert payload["Activity_level"] == "light"
    assert payload["onboarding_done"] is True
    assert "target_weight" not in payload


def test_resync_updates_matching_chat_users(db_session, secondary_session, create_user, seed_chat_user) -> None:
    synced_user = create_user(city="Haifa", goal="maintain", onboarding_completed=True)
    orphan_user = create_user(city="Eilat")
    seed_chat_user(synced_user.client.user_code, city="Tel Aviv")
    codes = [synced_user.client.user_code, orphan_user.client.user_code]

    counts = resync(db_session, secondary_session, codes, dry_run=False)
    assert counts == {"clients": 2, "synced": 1, "missing_chat_user": 1, "failed": 0}

    secondary_session.expire_all()
    chat_row = secondary_session.query(ChatUser).filter(ChatUser.user_code == codes[0]).one()
    assert chat_row.city == "Haifa"
    assert chat_row.goal == "maintain"
    assert chat_row.onboarding_done is True


def test_resync_dry_run_writes_nothing(db_session, secondary_session, create_user, seed_chat_user) -> None:
    user = create_user(city="Haifa", updated_at=datetime(2026, 1, 1))
    seed_chat_user(user.client.user_code, city="Tel Aviv")

    counts = resync(db_session, secondary_session, [user.client.user_code], dry_run=True)
    assert counts == {"clients": 1, "synced": 0, "missing_chat_user": 0, "failed": 0}

    secondary_session.expire_all()
    chat_row = secondary_session.query(ChatUser).filter(ChatUser.user_code == user.client.user_code).one()
    assert chat_row.city == "Tel Aviv"
