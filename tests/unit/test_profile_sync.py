import logging
from datetime import date, datetime

import pytest
from sqlalchemy.exc import OperationalError

from portal.core.onboarding import PROFILE_COLUMNS
from portal.core.wizard import SubmissionError
from portal.db.models import Client
from portal.db.secondary_models import ChatUser
from portal.services import profile_sync
from portal.services.profile_sync import (
    PrimaryWriteError,
    ProfileFetchError,
    SyncResult,
    load_onboarding_profile,
    mirror_to_chat_user,
    submit_onboarding,
)

NOW = datetime(2026, 6, 14, 9, 30)
SHOWN = ["phone", "gender", "food_allergies", "activity_level"]
VALUES = {"phone": "054-445-5656", "gender": "female", "food_allergies": "", "activity_level": "light"}


def _client_row(db_session, user_id: int) -> Client:
    db_session.expire_all()
    return db_session.query(Client).filter(Client.user_id == user_id).one()


def _chat_row(secondary_session, user_code: str) -> ChatUser:
    secondary_session.expire_all()
    return secondary_session.query(ChatUser).filter(ChatUser.user_code == user_code).one()


def test_primary_error_is_a_submission_error() -> None:
    assert issubclass(PrimaryWriteError, SubmissionError)


def test_submit_writes_both_stores(db_session, secondary_session, create_user, seed_chat_user) -> None:
    user = create_user(food_allergies="shellfish")
    seed_chat_user(user.client.user_code, food_allergies="shellfish")

    result = submit_onboarding(db_session, secondary_session, user, SHOWN, VALUES, "+972", NOW)
    assert result == SyncResult(primary_written=True, secondary_synced=True)

    client_row = _client_row(db_session, user.id)
    assert client_row.phone == "+972544455656"
    assert client_row.gender == "female"
    assert client_row.food_allergies is None
    assert client_row.activity_level == "light"
    assert client_row.onboarding_completed is True
    assert client_row.updated_at == NOW

    chat_row = _chat_row(secondary_session, user.client.user_code)
    assert chat_row.phone_number == "+972544455656"
    assert chat_row.whatsapp_number == "+972544455656"
    assert chat_row.gender == "female"
    assert chat_row.food_allergies is None
    assert chat_row.Activity_level == "light"
    assert chat_row.onboarding_done is True


def test_submit_creates_missing_client_row(db_session, secondary_session, create_user) -> None:
    user = create_user(with_client=False)
    result = submit_onboarding(db_session, secondary_session, user, ["city"], {"city": "Haifa"}, "+972", NOW)
    assert result.primary_written
    assert not result.secondary_synced
    client_row = _client_row(db_session, user.id)
    assert client_row.city == "Haifa"
    assert len(client_row.user_code) == 6


def test_missing_chat_user_does_not_fail_submission(db_session, secondary_session, create_user) -> None:
    user = create_user()
    result = submit_onboarding(db_session, secondary_session, user, SHOWN, VALUES, "+972", NOW)
    assert result == SyncResult(primary_written=True, secondary_synced=False)
    assert _client_row(db_session, user.id).onboarding_completed is True


def test_unavailable_secondary_does_not_fail_submission(db_session, create_user) -> None:
    user = create_user()
    result = submit_onboarding(db_session, None, user, SHOWN, VALUES, "+972", NOW)
    assert result == SyncResult(primary_written=True, secondary_synced=False)


def test_secondary_errors_are_logged_and_swallowed(
    db_session, create_user, broken_secondary_session, caplog
) -> None:
    user = create_user()
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        result = submit_onboarding(db_session, broken_secondary_session, user, SHOWN, VALUES, "+972", NOW)
    assert result == SyncResult(primary_written=True, secondary_synced=False)
    assert "Secondary sync failed" in caplog.text
    assert _client_row(db_session, user.id).gender == "female"


def test_primary_failure_skips_secondary_write(
    db_session, secondary_session, create_user, seed_chat_user, failing_commit, monkeypatch
) -> None:
    user = create_user(gender="male")
    user_code = user.client.user_code
    seed_chat_user(user_code, gender="male")
    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(PrimaryWriteError):
        submit_onboarding(db_session, secondary_session, user, SHOWN, VALUES, "+972", NOW)

    monkeypatch.undo()
    assert _client_row(db_session, user.id).gender == "male"
    chat_row = _chat_row(secondary_session, user_code)
    assert chat_row.gender == "male"
    assert chat_row.onboarding_done is False


def test_unparseable_answers_are_reported_as_primary_failure(db_session, secondary_session, create_user) -> None:
    user = create_user()
    with pytest.raises(PrimaryWriteError):
        submit_onboarding(
            db_session, secondary_session, user, ["date_of_birth"], {"date_of_birth": "not-a-date"}, "+972", NOW
        )
    assert _client_row(db_session, user.id).onboarding_completed is False


def test_mirror_skips_without_target(secondary_session) -> None:
    assert mirror_to_chat_user(None, "ABCDEF", {"city": "Haifa"}) is False
    assert mirror_to_chat_user(secondary_session, None, {"city": "Haifa"}) is False
    assert mirror_to_chat_user(secondary_session, "NOPE00", {"city": "Haifa"}) is False


def test_load_profile_returns_profile_columns(db_session, create_user) -> None:
    user = create_user(city="Haifa", birth_date=date(1990, 6, 15))
    profile = load_onboarding_profile(db_session, user.id)
    assert set(profile) == set(PROFILE_COLUMNS)
    assert profile["city"] == "Haifa"
    assert profile["birth_date"] == date(1990, 6, 15)


def test_load_profile_without_client_row(db_session, create_user) -> None:
    user = create_user(with_client=False)
    assert load_onboarding_profile(db_session, user.id) is None


def test_load_profile_failure_raises_fetch_error(db_session, monkeypatch) -> None:
    def _fail(db, user_id):
        raise OperationalError("SELECT clients", {}, Exception("database is locked"))

    monkeypatch.setattr(profile_sync, "get_client", _fail)
    with pytest.raises(ProfileFetchError):
        load_onboarding_profile(db_session, 1)
