from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from portal.core.onboarding import WizardStep, localized, validate_step
from portal.core.phone import DEFAULT_CALLING_CODE


class WizardStatus(str, Enum):
    active = "active"
    submitted = "submitted"
    skipped = "skipped"


class SubmissionError(RuntimeError):
    pass


# Receives every field shown in the plan, the form values and the calling code.
Submitter = Callable[[list[str], dict[str, Any], str], None]


@dataclass
class OnboardingWizard:
    steps: list[WizardStep]
    values: dict[str, Any] = field(default_factory=dict)
    phone_country_code: str = DEFAULT_CALLING_CODE
    language: str = "en"
    current_step: int = 0
    error: Optional[str] = None
    status: WizardStatus = WizardStatus.active
    submitting: bool = False

    def __post_init__(self) -> None:
        if not self.steps:
            self.status = WizardStatus.submitted
            self.current_step = 0
            return
        if not 0 <= self.current_step < len(self.steps):
            raise ValueError("current_step is outside the wizard plan")

    @property
    def is_last_step(self) -> bool:
        return self.current_step == len(self.steps) - 1

    @property
    def shown_fields(self) -> list[str]:
        return [name for step in self.steps for name in step.fields]

    @property
    def closed(self) -> bool:
        return self.status != WizardStatus.active

    def next(self, submit: Submitter) -> WizardStatus:
        if self.closed or self.submitting:
            return self.status
        step = self.steps[self.current_step]
        error = validate_step(step.fields, self.values, self.phone_country_code, self.language)
        if error:
            self.error = error
            return self.status
        self.error = None

        if not self.is_last_step:
            self.current_step += 1
            return self.status

        self.submitting = True
        try:
            submit(self.shown_fields, dict(self.values), self.phone_country_code)
        except SubmissionError:
            self.error = localized("save_failed", self.language)
            return self.status
        finally:
            self.submitting = False
        self.status = WizardStatus.submitted
        return self.status

    def back(self) -> WizardStatus:
        if not self.closed and self.current_step > 0:
            self.current_step -= 1
            self.error = None
        return self.status

    def skip(self) -> WizardStatus:
        if not self.closed and self.current_step == 0:
            self.status = WizardStatus.skipped
            self.error = None
        return self.status
