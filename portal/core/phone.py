import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_CALLING_CODE = "+972"
# Local numbers in this country carry a trunk "0" that is dropped in international format.
TRUNK_PREFIX_CALLING_CODE = "+972"
TRUNK_PREFIX_LOCAL_PATTERN = "10 digits (05X-XXX-XXXX)"

NOT_DIGITS_ERROR = "Phone number may only contain digits"

_SEPARATORS = re.compile(r"[-\s]")
_DIALABLE = re.compile(r"\+?\d+")


@dataclass(frozen=True)
class CountryCallingCode:
    calling_code: str
    display_name: str
    min_digits: int
    max_digits: int


@dataclass(frozen=True)
class PhoneCheck:
    valid: bool
    error: str = ""
    # One of "not_digits", "too_short" or "too_long" when invalid.
    reason: str = ""


COUNTRY_CALLING_CODES: tuple[CountryCallingCode, ...] = (
    CountryCallingCode("+1", "US/CA", 10, 10),
    CountryCallingCode("+44", "UK", 10, 10),
    CountryCallingCode("+49", "Germany", 10, 12),
    CountryCallingCode("+33", "France", 9, 9),
    CountryCallingCode("+39", "Italy", 9, 10),
    CountryCallingCode("+34", "Spain", 9, 9),
    CountryCallingCode("+31", "Netherlands", 9, 9),
    CountryCallingCode("+32", "Belgium", 9, 9),
    CountryCallingCode("+41", "Switzerland", 9, 9),
    CountryCallingCode("+43", "Austria", 10, 13),
    CountryCallingCode("+46", "Sweden", 9, 9),
    CountryCallingCode("+47", "Norway", 8, 8),
    CountryCallingCode("+45", "Denmark", 8, 8),
    CountryCallingCode("+358", "Finland", 5, 10),
    CountryCallingCode("+353", "Ireland", 9, 9),
    CountryCallingCode("+351", "Portugal", 9, 9),
    CountryCallingCode("+30", "Greece", 10, 10),
    CountryCallingCode("+972", "Israel", 9, 9),
    CountryCallingCode("+971", "UAE", 9, 9),
    CountryCallingCode("+7", "Russia", 10, 10),
    CountryCallingCode("+86", "China", 11, 11),
    CountryCallingCode("+81", "Japan", 10, 10),
    CountryCallingCode("+82", "South Korea", 9, 11),
    CountryCallingCode("+91", "India", 10, 10),
    CountryCallingCode("+61", "Australia", 9, 9),
    CountryCallingCode("+64", "New Zealand", 8, 10),
    CountryCallingCode("+27", "South Africa", 9, 9),
    CountryCallingCode("+55", "Brazil", 10, 11),
    CountryCallingCode("+52", "Mexico", 10, 10),
    CountryCallingCode("+54", "Argentina", 10, 10),
    CountryCallingCode("+60", "Malaysia", 9, 11),
    CountryCallingCode("+65", "Singapore", 8, 8),
    CountryCallingCode("+66", "Thailand", 9, 9),
    CountryCallingCode("+90", "Turkey", 10, 10),
)

_BY_CODE = {entry.calling_code: entry for entry in COUNTRY_CALLING_CODES}


def find_country(calling_code: str) -> Optional[CountryCallingCode]:
    return _BY_CODE.get((calling_code or "").strip())


def strip_separators(phone: str) -> str:
    return _SEPARATORS.sub("", phone or "")


def is_dialable(phone: str) -> bool:
    """Digits only once separators are removed, with an optional leading "+"."""
    return _DIALABLE.fullmatch(strip_separators((phone or "").strip())) is not None


def validate_phone_number(phone: str, calling_code: str) -> PhoneCheck:
    """Check the characters and digit count of a phone number for the selected calling code.

    Calling codes outside the table are accepted without a length check.
    """
    if not is_dialable(phone):
        return PhoneCheck(valid=False, error=NOT_DIGITS_ERROR, reason="not_digits")

    country = find_country(calling_code)
    if country is None:
        return PhoneCheck(valid=True)

    digits = strip_separators(phone.strip())
    trunk_prefixed = country.calling_code == TRUNK_PREFIX_CALLING_CODE and digits.startswith("0")
    if trunk_prefixed:
        digits = digits[1:]

    if len(digits) < country.min_digits:
        expected = TRUNK_PREFIX_LOCAL_PATTERN if trunk_prefixed else f"{country.min_digits} digits"
        return PhoneCheck(
            valid=False,
            error=f"Phone number must be {expected} for {country.display_name}",
            reason="too_short",
        )
    if len(digits) > country.max_digits:
        expected = TRUNK_PREFIX_LOCAL_PATTERN if trunk_prefixed else f"{country.max_digits} digits"
        return PhoneCheck(
            valid=False,
            error=f"Phone number must be no more than {expected}",
            reason="too_long",
        )
    return PhoneCheck(valid=True)


def normalize_phone_number(phone: str, calling_code: str) -> str:
    number = strip_separators((phone or "").strip())
    if number.startswith("+"):
        return number
    if calling_code == TRUNK_PREFIX_CALLING_CODE and number.startswith("0"):
        return calling_code + number[1:]
    return calling_code + number
