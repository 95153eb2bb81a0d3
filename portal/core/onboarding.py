"""Onboarding field catalog, wizard plan resolution and store payload mapping.

Everything here is pure: profiles come in as plain mappings keyed by primary
store column names and payloads go out as dicts keyed by the column names of
the store they target.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from portal.core.phone import normalize_phone_number, strip_separators, validate_phone_number


class FieldKind(str, Enum):
    text = "text"
    number = "number"
    date = "date"
    phone = "phone"


@dataclass(frozen=True)
class FieldMapping:
    field: str
    primary_column: str
    secondary_columns: tuple[str, ...]
    kind: FieldKind = FieldKind.text
    none_allowed: bool = False
    bounds: Optional[tuple[float, float]] = None


# Shared with the profile editor so both write paths accept the same range.
WEIGHT_KG_BOUNDS: tuple[float, float] = (0, 500)
HEIGHT_CM_BOUNDS: tuple[float, float] = (0, 300)

FIELD_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("phone", "phone", ("phone_number", "whatsapp_number"), FieldKind.phone),
    FieldMapping("language", "user_language", ("language", "user_language")),
    FieldMapping("city", "city", ("city",)),
    FieldMapping("region", "region", ("region",)),
    FieldMapping("date_of_birth", "birth_date", ("date_of_birth",), FieldKind.date),
    FieldMapping("gender", "gender", ("gender",)),
    FieldMapping("weight_kg", "current_weight", ("weight_kg",), FieldKind.number, bounds=WEIGHT_KG_BOUNDS),
    FieldMapping("target_weight", "target_weight", (), FieldKind.number, bounds=WEIGHT_KG_BOUNDS),
    FieldMapping("height_cm", "height", ("height_cm",), FieldKind.number, bounds=HEIGHT_CM_BOUNDS),
    FieldMapping("food_allergies", "food_allergies", ("food_allergies",), none_allowed=True),
    FieldMapping("food_limitations", "dietary_preferences", ("food_limitations",), none_allowed=True),
    FieldMapping("activity_level", "activity_level", ("Activity_level",)),
    FieldMapping("goal", "goal", ("goal",)),
    FieldMapping("client_preference", "client_preference", ("client_preference",), none_allowed=True),
    FieldMapping("medical_conditions", "medical_conditions", (), none_allowed=True),
)

FIELD_MAP: dict[str, FieldMapping] = {mapping.field: mapping for mapping in FIELD_MAPPINGS}

# An explicit empty answer on these fields means "None", not "unanswered".
NONE_ALLOWED_FIELDS = frozenset(mapping.field for mapping in FIELD_MAPPINGS if mapping.none_allowed)

AGE_PRIMARY_COLUMN = "age"
AGE_SECONDARY_COLUMNS = ("age",)

SUPPORTED_LANGUAGES = ("en", "he")


@dataclass(frozen=True)
class StepDefinition:
    key: str
    titles: Mapping[str, str]
    fields: tuple[str, ...]

    def title(self, language: str) -> str:
        return self.titles.get(language) or self.titles["en"]


ONBOARDING_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition(
        key="basic_info",
        titles={"en": "Basic Personal Information", "he": "מידע אישי בסיסי"},
        fields=("phone", "language", "city", "region"),
    ),
    StepDefinition(
        key="health_info",
        titles={"en": "Health Information", "he": "פרטי בריאות"},
        fields=("date_of_birth", "gender", "weight_kg", "target_weight", "height_cm", "medical_conditions"),
    ),
    StepDefinition(
        key="nutrition_goals",
        titles={"en": "Nutrition & Goals", "he": "תזונה ומטרות"},
        fields=("food_allergies", "food_limitations", "activity_level", "goal", "client_preference"),
    ),
)

ONBOARDING_FIELDS: tuple[str, ...] = tuple(field for step in ONBOARDING_STEPS for field in step.fields)
PROFILE_COLUMNS: tuple[str, ...] = tuple(FIELD_MAP[field].primary_column for field in ONBOARDING_FIELDS)

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "fill_all_fields": "Please fill in all fields",
        "invalid_number": "Please enter a valid number",
        "invalid_date": "Please enter a valid date",
        "number_out_of_range": "Please enter a value between {low} and {high}",
        "invalid_phone": "Phone number may only contain digits",
        "save_failed": "Error saving data. Please try again.",
    },
    "he": {
        "fill_all_fields": "אנא מלא את כל השדות",
        "invalid_number": "אנא הזן מספר תקין",
        "invalid_date": "אנא הזן תאריך תקין",
        "number_out_of_range": "אנא הזן ערך בין {low} ל-{high}",
        "invalid_phone": "מספר הטלפון יכול להכיל ספרות בלבד",
        "save_failed": "שגיאה בשמירת הנתונים. אנא נסה שוב.",
    },
}


@dataclass(frozen=True)
class WizardStep:
    title: str
    fields: tuple[str, ...]


def localized(key: str, language: str) -> str:
    return MESSAGES.get(language, MESSAGES["en"]).get(key) or MESSAGES["en"][key]


def is_empty(value: Any) -> bool:
    # TODO: decide whether an explicit False should count as answered once a boolean field joins the catalog.
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, bool):
        return not value
    if isinstance(value, (int, float)):
        return False
    return not value


def missing_fields(profile: Optional[Mapping[str, Any]]) -> list[str]:
    """Onboarding fields with no stored value, in catalog order.

    A missing profile row counts as every field being empty.
    """
    stored = profile or {}
    return [
        field for field in ONBOARDING_FIELDS if is_empty(stored.get(FIELD_MAP[field].primary_column))
    ]


def build_wizard_plan(profile: Optional[Mapping[str, Any]], language: str = "en") -> list[WizardStep]:
    missing = set(missing_fields(profile))
    plan: list[WizardStep] = []
    for step in ONBOARDING_STEPS:
        fields = tuple(field for field in step.fields if field in missing)
        if fields:
            plan.append(WizardStep(title=step.title(language), fields=fields))
    return plan


def prefill_values(profile: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    stored = profile or {}
    values: dict[str, Any] = {}
    for field in ONBOARDING_FIELDS:
        raw = stored.get(FIELD_MAP[field].primary_column)
        if isinstance(raw, date):
            values[field] = raw.isoformat()
        elif raw is None:
            values[field] = ""
        else:
            values[field] = raw
    if is_empty(values.get("language")):
        values["language"] = "en"
    return values


def parse_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("Not a number")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        number = float(str(value).strip())
    if not math.isfinite(number):
        raise ValueError("Not a finite number")
    return number


def within_bounds(mapping: FieldMapping, number: float) -> bool:
    if mapping.bounds is None:
        return True
    low, high = mapping.bounds
    return low <= number <= high


def _parse_field_number(mapping: FieldMapping, value: Any) -> float:
    number = parse_number(value)
    if not within_bounds(mapping, number):
        raise ValueError(f"{mapping.field} out of range")
    return number


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def calculate_age(birth_date: Optional[date], today: Optional[date] = None) -> Optional[int]:
    if birth_date is None:
        return None
    current = today or date.today()
    age = current.year - birth_date.year
    if (current.month, current.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def validate_step(
    fields: Iterable[str],
    values: Mapping[str, Any],
    calling_code: str,
    language: str = "en",
    none_allowed: frozenset[str] = NONE_ALLOWED_FIELDS,
) -> Optional[str]:
    """Return a user-facing error for the step, or None when it may be left."""
    step_fields = list(fields)
    required = [field for field in step_fields if field not in none_allowed]
    if any(is_empty(values.get(field)) for field in required):
        return localized("fill_all_fields", language)

    for field in step_fields:
        mapping = FIELD_MAP.get(field)
        raw = values.get(field)
        if mapping is None or is_empty(raw):
            continue
        try:
            if mapping.kind == FieldKind.number:
                number = parse_number(raw)
                if not within_bounds(mapping, number):
                    low, high = mapping.bounds
                    return localized("number_out_of_range", language).format(low=f"{low:g}", high=f"{high:g}")
            elif mapping.kind == FieldKind.date:
                parse_date(raw)
        except (TypeError, ValueError):
            key = "invalid_number" if mapping.kind == FieldKind.number else "invalid_date"
            return localized(key, language)

    if "phone" in step_fields:
        check = validate_phone_number(str(values.get("phone") or ""), calling_code)
        if check.reason == "not_digits":
            return localized("invalid_phone", language)
        if not check.valid:
            return check.error
    return None


def _clean_text(value: Any) -> Optional[str]:
    if is_empty(value):
        return None
    return str(value).strip()


def _stored_answers(shown_fields: Iterable[str], values: Mapping[str, Any], calling_code: str) -> dict[str, Any]:
    shown = set(shown_fields)
    answers: dict[str, Any] = {}
    for field in ONBOARDING_FIELDS:
        if field not in shown:
            continue
        mapping = FIELD_MAP[field]
        raw = values.get(field)
        if mapping.none_allowed:
            answers[field] = _clean_text(raw)
            continue
        if is_empty(raw):
            continue
        if mapping.kind == FieldKind.phone:
            if not strip_separators(str(raw).strip()):
                continue
            answers[field] = normalize_phone_number(str(raw), calling_code)
        elif mapping.kind == FieldKind.number:
            answers[field] = _parse_field_number(mapping, raw)
        elif mapping.kind == FieldKind.date:
            answers[field] = parse_date(raw)
        else:
            answers[field] = str(raw).strip()
    return answers


def _derived_age(answers: Mapping[str, Any], today: Optional[date]) -> Optional[int]:
    age = calculate_age(answers.get("date_of_birth"), today)
    return age if age and age > 0 else None


def build_primary_update(
    shown_fields: Iterable[str],
    values: Mapping[str, Any],
    calling_code: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    stamp = now or datetime.utcnow()
    answers = _stored_answers(shown_fields, values, calling_code)
    payload: dict[str, Any] = {
        FIELD_MAP[field].primary_column: value for field, value in answers.items()
    }
    age = _derived_age(answers, stamp.date())
    if age is not None:
        payload[AGE_PRIMARY_COLUMN] = age
    payload["onboarding_completed"] = True
    payload["updated_at"] = stamp
    return payload


def build_secondary_update(
    shown_fields: Iterable[str],
    values: Mapping[str, Any],
    calling_code: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    stamp = now or datetime.utcnow()
    answers = _stored_answers(shown_fields, values, calling_code)
    payload: dict[str, Any] = {}
    for field, value in answers.items():
        for column in FIELD_MAP[field].secondary_columns:
            payload[column] = value
    age = _derived_age(answers, stamp.date())
    if age is not None:
        for column in AGE_SECONDARY_COLUMNS:
            payload[column] = age
    payload["onboarding_done"] = True
    payload["updated_at"] = stamp
    return payload


def secondary_columns_for(primary_updates: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a primary-store update into the overlapping secondary columns."""
    by_primary: dict[str, tuple[str, ...]] = {
        mapping.primary_column: mapping.secondary_columns for mapping in FIELD_MAPPINGS
    }
    by_primary[AGE_PRIMARY_COLUMN] = AGE_SECONDARY_COLUMNS
    payload: dict[str, Any] = {}
    for column, value in primary_updates.items():
        for target in by_primary.get(column, ()):
            payload[target] = value
    return payload
