from portal.core.security import issue_access_token
from portal.db.secondary_models import ChatUser


def _chat_row(secondary_session, user_code: str) -> ChatUser:
    secondary_session.expire_all()
    return secondary_session.query(ChatUser).filter(ChatUser.user_code == user_code).one()


def test_profile_returns_signup_details(client, signup_account) -> None:
    account = signup_account()
    response = client.get("/profile", headers=account["headers"])
    assert response.status_code == 200
    body = response.json()
    assert body["user_code"] == account["user_code"]
    assert body["first_name"] == "Dana"
    assert body["email"] == account["email"]
    assert body["onboarding_completed"] is False


def test_profile_missing_client_row_is_404(client, create_user) -> None:
    user = create_user(with_client=False)
    headers = {"Authorization": f"Bearer {issue_access_token(user.id)}"}
    response = client.get("/profile", headers=headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Profile not found"


def test_profile_update_mirrors_overlapping_fields(client, signup_account, seed_chat_user, secondary_session) -> None:
    account = signup_account()
    seed_chat_user(account["user_code"], city="Tel Aviv", gender="male")

    response = client.put(
        "/profile",
        headers=account["headers"],
        json={
            "city": " Haifa ",
            "user_language": "he",
            "birth_date": "1990-06-15",
            "activity_level": "active",
            "target_weight": 60,
            "timezone": "Asia/Jerusalem",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["city"] == "Haifa"
    assert body["user_language"] == "he"
    assert body["age"] >= 35
    assert body["target_weight"] == 60.0
    assert body["first_name"] == "Dana"

    chat_row = _chat_row(secondary_session, account["user_code"])
    assert chat_row.city == "Haifa"
    assert chat_row.language == "he"
    assert chat_row.user_language == "he"
    assert chat_row.date_of_birth.isoformat() == "1990-06-15"
    assert chat_row.age == body["age"]
    assert chat_row.Activity_level == "active"
    assert chat_row.gender == "male"


def test_profile_update_clears_blank_strings(client, signup_account) -> None:
    headers = signup_account()["headers"]
    client.put("/profile", headers=headers, json={"region": "North", "food_allergies": "nuts"})
    response = client.put("/profile", headers=headers, json={"region": "  ", "newsletter": None})
    assert response.status_code == 200
    assert response.json()["region"] is None
    assert response.json()["food_allergies"] == "nuts"
    assert response.json()["newsletter"] is False


def test_profile_update_validates_choices(client, signup_account) -> None:
    headers = signup_account()["headers"]
    assert client.put("/profile", headers=headers, json={"gender": "robot"}).status_code == 422
    assert client.put("/profile", headers=headers, json={"activity_level": "couch"}).status_code == 422
    assert client.put("/profile", headers=headers, json={"user_language": "fr"}).status_code == 422
    assert client.put("/profile", headers=headers, json={"height": 900}).status_code == 422
    assert client.put("/profile", headers=headers, json={"current_weight": -1}).status_code == 422
    assert client.put("/profile", headers=headers, json={"target_weight": 501}).status_code == 422


def test_profile_update_survives_secondary_failure(client, signup_account, break_secondary) -> None:
    headers = signup_account()["headers"]
    break_secondary()
    response = client.put("/profile", headers=headers, json={"city": "Haifa"})
    assert response.status_code == 200
    assert response.json()["city"] == "Haifa"


def test_profile_update_primary_failure_is_500(client, signup_account, break_primary_commits) -> None:
    headers = signup_account()["headers"]
    break_primary_commits()
    response = client.put("/profile", headers=headers, json={"city": "Haifa"})
    assert response.status_code == 500
    assert response.json()["detail"] == "An unexpected error occurred. Please try again."


def test_profile_update_rejects_non_finite_measurements(client, signup_account) -> None:
    headers = signup_account()["headers"]
    json_headers = {**headers, "Content-Type": "application/json"}
    for body in ('{"current_weight": NaN}', '{"height": Infinity}'):
        assert client.put("/profile", headers=json_headers, content=body).status_code == 422
    assert client.get("/profile", headers=headers).json()["current_weight"] is None
