import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal.api.auth import get_current_user
from portal.core.onboarding import HEIGHT_CM_BOUNDS, WEIGHT_KG_BOUNDS, calculate_age, secondary_columns_for
from portal.db.models import Client, User
from portal.db.session import get_db, get_secondary_db
from portal.services.clients import UserCodeExhaustedError, get_client, get_or_create_client
from portal.services.profile_sync import mirror_to_chat_user

router = APIRouter(prefix="/profile", tags=["profile"])
logger = logging.getLogger("uvicorn.error")

VALID_GENDERS = {"male", "female", "other"}
VALID_ACTIVITY = {"sedentary", "light", "moderate", "active", "extreme"}
VALID_GOALS = {"lose", "cut", "maintain", "gain", "muscle", "improve_performance", "improve_health"}
VALID_LANGUAGES = {"en", "he"}


class ProfileResponse(BaseModel):
    user_code: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    newsletter: bool = False
    status: str
    user_language: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    timezone: Optional[str] = None
    birth_date: Optional[date] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    current_weight: Optional[float] = None
    target_weight: Optional[float] = None
    height: Optional[float] = None
    food_allergies: Optional[str] = None
    dietary_preferences: Optional[str] = None
    medical_conditions: Optional[str] = None
    activity_level: Optional[str] = None
    goal: Optional[str] = None
    client_preference: Optional[str] = None
    onboarding_completed: bool = False
    updated_at: Optional[datetime] = None


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=120)
    last_name: Optional[str] = Field(default=None, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)
    newsletter: Optional[bool] = None
    user_language: Optional[str] = None
    city: Optional[str] = Field(default=None, max_length=120)
    region: Optional[str] = Field(default=None, max_length=120)
    timezone: Optional[str] = Field(default=None, max_length=64)
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    current_weight: Optional[float] = Field(
        default=None, ge=WEIGHT_KG_BOUNDS[0], le=WEIGHT_KG_BOUNDS[1], allow_inf_nan=False
    )
    target_weight: Optional[float] = Field(
        default=None, ge=WEIGHT_KG_BOUNDS[0], le=WEIGHT_KG_BOUNDS[1], allow_inf_nan=False
    )
    height: Optional[float] = Field(
        default=None, ge=HEIGHT_CM_BOUNDS[0], le=HEIGHT_CM_BOUNDS[1], allow_inf_nan=False
    )
    food_allergies: Optional[str] = Field(default=None, max_length=2000)
    dietary_preferences: Optional[str] = Field(default=None, max_length=2000)
    medical_conditions: Optional[str] = Field(default=None, max_length=2000)
    activity_level: Optional[str] = None
    goal: Optional[str] = None
    client_preference: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def validate_choices(self):
        if self.gender and self.gender not in VALID_GENDERS:
            raise ValueError("gender must be male/female/other")
        if self.activity_level and self.activity_level not in VALID_ACTIVITY:
            raise ValueError("activity_level must be sedentary/light/moderate/active/extreme")
        if self.goal and self.goal not in VALID_GOALS:
            raise ValueError("goal is not a supported goal")
        if self.user_language and self.user_language not in VALID_LANGUAGES:
            raise ValueError("user_language must be en/he")
        return self


def _to_response(client: Client) -> ProfileResponse:
    return ProfileResponse(
        user_code=client.user_code,
        first_name=client.first_name,
        last_name=client.last_name,
        email=client.email,
        phone=client.phone,
        newsletter=bool(client.newsletter),
        status=client.status,
        user_language=client.user_language,
        city=client.city,
        region=client.region,
        timezone=client.timezone,
        birth_date=client.birth_date,
        age=client.age,
        gender=client.gender,
        current_weight=client.current_weight,
        target_weight=client.target_weight,
        height=client.height,
        food_allergies=client.food_allergies,
        dietary_preferences=client.dietary_preferences,
        medical_conditions=client.medical_conditions,
        activity_level=client.activity_level,
        goal=client.goal,
        client_preference=client.client_preference,
        onboarding_completed=bool(client.onboarding_completed),
        updated_at=client.updated_at,
    )


def _profile_updates(payload: ProfileUpdateRequest) -> dict:
    updates: dict = {}
    for column, value in payload.model_dump(exclude_unset=True).items():
        if isinstance(value, str):
            value = value.strip() or None
        if column == "newsletter" and value is None:
            continue
        updates[column] = value
    if "birth_date" in updates:
        age = calculate_age(updates["birth_date"])
        updates["age"] = age if age and age > 0 else None
    return updates


@router.get("", response_model=ProfileResponse)
def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ProfileResponse:
    client = get_client(db, user.id)
    if not client:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _to_response(client)


@router.put("", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    secondary_db: Optional[Session] = Depends(get_secondary_db),
) -> ProfileResponse:
    updates = _profile_updates(payload)
    try:
        client = get_or_create_client(db, user)
        for column, value in updates.items():
            setattr(client, column, value)
        client.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(client)
    except (SQLAlchemyError, UserCodeExhaustedError) as exc:
        db.rollback()
        logger.error("Saving profile failed for user_id=%s: %s", user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred. Please try again.",
        )

    mirrored = secondary_columns_for(updates)
    if mirrored:
        mirrored["updated_at"] = client.updated_at
        mirror_to_chat_user(secondary_db, client.user_code, mirrored)
    return _to_response(client)
