"""Schema validation for AI backend output."""

import logging
import re
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ResponseMalformed
from .models import FormHelp, PageAnalysis, TranslationResult, VoiceCommandResult

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# First "{" through last "}" in the text.
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

LOG_PREVIEW_CHARS = 200

DEFAULT_HELP_RESPONSE = (
    "I can help you navigate this page. Try asking me to fill a form or click a button."
)
DEFAULT_FORM_HELP = "Enter the information this field asks for."


def default_page_analysis() -> PageAnalysis:
    return PageAnalysis(elements=[], form_fields=[])


def default_voice_command() -> VoiceCommandResult:
    return VoiceCommandResult(action="explain", response=DEFAULT_HELP_RESPONSE)


def _preview(text: str) -> str:
    return text[:LOG_PREVIEW_CHARS]


def extract_json_object(text: str) -> Optional[str]:
    """Return the outermost {...} span of ``text``, or None."""
    match = _JSON_OBJECT.search(text or "")
    return match.group(0) if match else None


def parse_model_output(text: str, schema: type[T]) -> T:
    """
    Parse the object embedded in model output into ``schema``.

    Raises:
        ResponseMalformed: If no object is found or it violates the schema
    """
    span = extract_json_object(text)
    if span is None:
        raise ResponseMalformed("no JSON object in model output", text)
    try:
        return schema.model_validate_json(span)
    except ValidationError as e:
        raise ResponseMalformed(f"{e.error_count()} schema error(s): {e.errors()[0]['msg']}", text) from e


def validate_model_output(text: str, schema: type[T], *, endpoint: str, default: T) -> T:
    """Parse model output, falling back to ``default`` on any mismatch."""
    try:
        return parse_model_output(text, schema)
    except ResponseMalformed as e:
        logger.warning(
            "Falling back to default response",
            extra={"endpoint": endpoint, "reason": e.reason, "output": _preview(text or "")},
        )
        return default


def validate_page_analysis(text: str) -> PageAnalysis:
    return validate_model_output(
        text, PageAnalysis, endpoint="analyze", default=default_page_analysis()
    )


def validate_voice_command(text: str) -> VoiceCommandResult:
    return validate_model_output(
        text, VoiceCommandResult, endpoint="voice-command", default=default_voice_command()
    )


def validate_translation(text: str, source_text: str) -> TranslationResult:
    """Trimmed translation; the untranslated text when the model returned nothing."""
    translated = (text or "").strip()
    if not translated:
        logger.warning(
            "Empty translation, returning source text",
            extra={"endpoint": "translate", "output": _preview(text or "")},
        )
        return TranslationResult(text=source_text)
    return TranslationResult(text=translated)


def validate_form_help(text: str) -> FormHelp:
    help_text = (text or "").strip()
    if not help_text:
        logger.warning("Empty form help, using generic text", extra={"endpoint": "form-help"})
        return FormHelp(text=DEFAULT_FORM_HELP)
    return FormHelp(text=help_text)
