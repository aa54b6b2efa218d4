"""Pydantic models for the assistant gateway."""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RuntimeMode(str, Enum):
    """Runtime modes; only production fails open on limiter outage."""
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


class CostAlertPolicy(str, Enum):
    """How the AI spend threshold is compared."""
    PER_CALL = "per_call"        # incremental cost of a single call
    DAILY_TOTAL = "daily_total"  # running total for the current UTC day


class RateLimitConfig(BaseModel):
    """Token bucket parameters shared by every caller."""
    capacity: int = Field(default=60, gt=0, description="Maximum bucket capacity")
    refill_per_second: float = Field(default=1.0, gt=0, description="Token refill rate")


# Request bodies. Required fields must be non-empty; their content reaches
# the backend untouched, surrounding whitespace included.

class _RequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AnalyzeRequest(_RequestBody):
    html: str = Field(min_length=1)


class TranslateRequest(_RequestBody):
    text: str = Field(min_length=1)
    target_lang: str = Field(alias="targetLang", min_length=1)
    source_lang: Optional[str] = Field(default=None, alias="sourceLang")


class VoiceCommandRequest(_RequestBody):
    command: str = Field(min_length=1)
    page_context: str = Field(default="", alias="pageContext")

    @field_validator("page_context", mode="before")
    @classmethod
    def _null_context(cls, v):
        return "" if v is None else v


class FormHelpRequest(_RequestBody):
    field_name: str = Field(alias="fieldName", min_length=1)
    field_type: str = Field(alias="fieldType", min_length=1)
    context: str = ""

    @field_validator("context", mode="before")
    @classmethod
    def _null_context(cls, v):
        return "" if v is None else v


# Schemas applied to AI backend output. Strict mode rejects wrong-typed
# fields instead of coercing them; unknown fields are ignored.

class _ModelOutput(BaseModel):
    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class PageElement(_ModelOutput):
    type: str
    selector: str
    purpose: str = ""
    help_text: str = Field(default="", alias="helpText")


class FormField(_ModelOutput):
    name: str
    type: str
    required: bool = False
    validation: str = ""
    help_text: str = Field(default="", alias="helpText")


class PageAnalysis(_ModelOutput):
    elements: list[PageElement]
    form_fields: list[FormField] = Field(alias="formFields")


VoiceAction = Literal["click", "fill", "navigate", "explain", "read"]


class VoiceCommandResult(_ModelOutput):
    action: VoiceAction
    target: Optional[str] = None
    response: str


class TranslationResult(BaseModel):
    text: str

    def to_wire(self) -> dict:
        return {"translatedText": self.text}


class FormHelp(BaseModel):
    text: str

    def to_wire(self) -> dict:
        return {"helpText": self.text}


class RateLimitStatus(BaseModel):
    """Read-only view of a caller's bucket."""
    key: str
    tokens: float
    capacity: int
    refill_per_second: float


class HealthStatus(BaseModel):
    """Health status of the gateway."""
    status: str
    uptime_seconds: float
    environment: str
    backend_configured: bool
