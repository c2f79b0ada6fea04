"""Request bodies accepted by the HTTP surface."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ageproof.models.consent import GuardianDecision
from ageproof.models.session import Provider


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InitiateVerificationBody(_Body):
    widget_id: str = Field(alias="widgetId", min_length=1, max_length=128)
    provider: Provider = Provider.DIRECT


class ValidateTokenBody(_Body):
    token: str = Field(min_length=1)
    widget_id: str = Field(alias="widgetId", min_length=1, max_length=128)


class GuardianRequestBody(_Body):
    session_id: str = Field(alias="sessionId", min_length=1)
    guardian_contact: str = Field(alias="guardianContact", min_length=3, max_length=320)

    @field_validator("guardian_contact")
    @classmethod
    def strip_contact(cls, v: str) -> str:
        return v.strip()


class GuardianVerificationBody(_Body):
    provider: Provider = Provider.DIRECT


class GuardianDecisionBody(_Body):
    guardian_token: str = Field(alias="guardianToken", min_length=1)
    decision: GuardianDecision
