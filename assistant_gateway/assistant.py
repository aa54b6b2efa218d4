"""Assistant operations built on the AI backend."""

from typing import Optional

from .backend import AIBackend, Generation
from .metrics import MetricsCollector
from .models import FormHelp, PageAnalysis, TranslationResult, VoiceCommandResult
from .validation import (
    validate_form_help,
    validate_page_analysis,
    validate_translation,
    validate_voice_command,
)

MAX_HTML_CHARS = 5000
MAX_PAGE_CONTEXT_CHARS = 1000

ANALYZE_PROMPT = """Analyze this HTML and identify all interactive elements, forms, and their purposes. Return JSON with elements and formFields arrays.

HTML:
{html}

Return format:
{{
  "elements": [{{"type": "button", "selector": "#submit", "purpose": "Submit form", "helpText": "Click to submit"}}],
  "formFields": [{{"name": "email", "type": "email", "required": true, "validation": "Valid email required", "helpText": "Enter your email address"}}]
}}"""

TRANSLATE_PROMPT = """Translate the following text{source} to {target}. Return only the translation, no explanations:

{text}"""

VOICE_PROMPT = """User voice command: "{command}"
Page context: {context}

Determine the action to take. Return JSON:
{{
  "action": "click|fill|navigate|explain|read",
  "target": "selector or element description",
  "response": "Natural language response to user"
}}"""

FORM_HELP_PROMPT = """Generate helpful guidance for a form field:
Field name: {field_name}
Field type: {field_type}
Context: {context}

Provide a brief, helpful explanation (1-2 sentences) about what to enter."""


class AssistantService:
    """
    Prompts the AI backend for each assistant operation.

    Every call records its spend and passes the raw output through the
    response validator; malformed output becomes a safe default here and
    never reaches the caller as an error.
    """

    def __init__(self, backend: AIBackend, metrics: MetricsCollector):
        self._backend = backend
        self._metrics = metrics

    async def _generate(self, prompt: str) -> Generation:
        generation = await self._backend.generate(prompt)
        self._metrics.record_cost(generation.model, generation.total_tokens)
        return generation

    async def analyze_page_structure(self, html: str) -> PageAnalysis:
        generation = await self._generate(ANALYZE_PROMPT.format(html=html[:MAX_HTML_CHARS]))
        return validate_page_analysis(generation.text)

    async def translate_text(
        self, text: str, target_lang: str, source_lang: Optional[str] = None
    ) -> TranslationResult:
        source = f" from {source_lang}" if source_lang else ""
        generation = await self._generate(
            TRANSLATE_PROMPT.format(text=text, target=target_lang, source=source)
        )
        return validate_translation(generation.text, source_text=text)

    async def process_voice_command(self, command: str, page_context: str = "") -> VoiceCommandResult:
        generation = await self._generate(
            VOICE_PROMPT.format(command=command, context=page_context[:MAX_PAGE_CONTEXT_CHARS])
        )
        return validate_voice_command(generation.text)

    async def generate_form_help(self, field_name: str, field_type: str, context: str = "") -> FormHelp:
        generation = await self._generate(
            FORM_HELP_PROMPT.format(field_name=field_name, field_type=field_type, context=context)
        )
        return validate_form_help(generation.text)
