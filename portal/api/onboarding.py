from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from portal.api.auth import get_current_user
from portal.core.onboarding import (
    NONE_ALLOWED_FIELDS,
    ONBOARDING_FIELDS,
    SUPPORTED_LANGUAGES,
    WizardStep,
    build_wizard_plan,
    prefill_values,
)
from portal.core.phone import COUNTRY_CALLING_CODES, DEFAULT_CALLING_CODE
from portal.core.wizard import OnboardingWizard
from portal.db.models import User
from portal.db.session import get_db, get_secondary_db
from portal.services.profile_sync import ProfileFetchError, load_onboarding_profile, submit_onboarding

router = APIRouter(prefix="/onboarding", tags=["onboarding"])


class CountryCodeItem(BaseModel):
    calling_code: str
    display_name: str
    min_digits: int
    max_digits: int


class CountryCodeListResponse(BaseModel):
    items: list[CountryCodeItem]


class WizardStepModel(BaseModel):
    title: str = Field(max_length=120)
    fields: list[str] = Field(min_length=1)


class OnboardingPlanResponse(BaseModel):
    completed: bool
    steps: list[WizardStepModel]
    values: dict[str, Any]
    phone_country_code: str
    none_allowed_fields: list[str]


class WizardStateRequest(BaseModel):
    steps: list[WizardStepModel] = Field(min_length=1)
    current_step: int = Field(default=0, ge=0)
    values: dict[str, Any] = Field(default_factory=dict)
    phone_country_code: str = Field(default=DEFAULT_CALLING_CODE, min_length=2, max_length=5)
    language: str = "en"

    @model_validator(mode="after")
    def validate_plan(self):
        if self.current_step >= len(self.steps):
            raise ValueError("current_step must point at one of the submitted steps")
        if self.language not in SUPPORTED_LANGUAGES:
            raise ValueError("language must be en/he")
        known = set(ONBOARDING_FIELDS)
        seen: set[str] = set()
        for step in self.steps:
            for name in step.fields:
                if name not in known:
                    raise ValueError(f"Unknown onboarding field: {name}")
                if name in seen:
                    raise ValueError(f"Duplicate onboarding field: {name}")
                seen.add(name)
        return self


class WizardStateResponse(BaseModel):
    status: str
    current_step: int
    total_steps: int
    error: Optional[str] = None
    closed: bool


def _to_wizard(payload: WizardStateRequest) -> OnboardingWizard:
    # One wizard per request; its submitting guard does not span requests.
    return OnboardingWizard(
        steps=[WizardStep(title=step.title, fields=tuple(step.fields)) for step in payload.steps],
        values=dict(payload.values),
        phone_country_code=payload.phone_country_code,
        language=payload.language,
        current_step=payload.current_step,
    )


def _state(wizard: OnboardingWizard) -> WizardStateResponse:
    return WizardStateResponse(
        status=wizard.status.value,
        current_step=wizard.current_step,
        total_steps=len(wizard.steps),
        error=wizard.error,
        closed=wizard.closed,
    )


@router.get("/countries", response_model=CountryCodeListResponse)
def list_country_codes() -> CountryCodeListResponse:
    return CountryCodeListResponse(
        items=[
            CountryCodeItem(
                calling_code=entry.calling_code,
                display_name=entry.display_name,
                min_digits=entry.min_digits,
                max_digits=entry.max_digits,
            )
            for entry in COUNTRY_CALLING_CODES
        ]
    )


@router.get("/plan", response_model=OnboardingPlanResponse)
def get_onboarding_plan(
    language: str = Query(default="en", pattern="^(en|he)$"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> OnboardingPlanResponse:
    try:
        profile = load_onboarding_profile(db, user.id)
    except ProfileFetchError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not load profile. Please try again later.",
        )
    plan = build_wizard_plan(profile, language)
    return OnboardingPlanResponse(
        completed=not plan,
        steps=[WizardStepModel(title=step.title, fields=list(step.fields)) for step in plan],
        values=prefill_values(profile),
        phone_country_code=DEFAULT_CALLING_CODE,
        none_allowed_fields=sorted(NONE_ALLOWED_FIELDS),
    )


@router.post("/next", response_model=WizardStateResponse)
def next_step(
    payload: WizardStateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    secondary_db: Optional[Session] = Depends(get_secondary_db),
) -> WizardStateResponse:
    wizard = _to_wizard(payload)

    def _submit(shown_fields: list[str], values: dict[str, Any], calling_code: str) -> None:
        submit_onboarding(db, secondary_db, user, shown_fields, values, calling_code)

    wizard.next(_submit)
    return _state(wizard)


@router.post("/back", response_model=WizardStateResponse)
def previous_step(
    payload: WizardStateRequest, user: User = Depends(get_current_user)
) -> WizardStateResponse:
    wizard = _to_wizard(payload)
    wizard.back()
    return _state(wizard)


@router.post("/skip", response_model=WizardStateResponse)
def skip_onboarding(
    payload: WizardStateRequest, user: User = Depends(get_current_user)
) -> WizardStateResponse:
    wizard = _to_wizard(payload)
    wizard.skip()
    return _state(wizard)
