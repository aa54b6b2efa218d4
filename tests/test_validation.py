"""Tests for AI output validation."""

import logging

import pytest

from assistant_gateway.errors import ResponseMalformed
from assistant_gateway.models import PageAnalysis, VoiceCommandResult
from assistant_gateway.validation import (
    DEFAULT_FORM_HELP,
    DEFAULT_HELP_RESPONSE,
    extract_json_object,
    parse_model_output,
    validate_form_help,
    validate_page_analysis,
    validate_translation,
    validate_voice_command,
)

PAGE_ANALYSIS_OUTPUT = """Here is the analysis:
```json
{
  "elements": [{"type": "button", "selector": "#submit", "purpose": "Submit form", "helpText": "Click to submit"}],
  "formFields": [{"name": "email", "type": "email", "required": true, "validation": "Valid email required", "helpText": "Enter your email address"}]
}
```"""


class TestExtractJsonObject:

    def test_outermost_span(self):
        text = 'prefix {"a": {"b": 1}} suffix'
        assert extract_json_object(text) == '{"a": {"b": 1}}'

    def test_no_braces(self):
        assert extract_json_object("I cannot help with that.") is None
        assert extract_json_object("") is None

    def test_spans_lines(self):
        assert extract_json_object('x\n{\n"k": 1\n}\ny') == '{\n"k": 1\n}'


class TestPageAnalysis:

    def test_well_formed_output(self):
        analysis = validate_page_analysis(PAGE_ANALYSIS_OUTPUT)

        assert analysis.to_wire() == {
            "elements": [
                {"type": "button", "selector": "#submit", "purpose": "Submit form", "helpText": "Click to submit"}
            ],
            "formFields": [
                {
                    "name": "email",
                    "type": "email",
                    "required": True,
                    "validation": "Valid email required",
                    "helpText": "Enter your email address",
                }
            ],
        }

    def test_extra_fields_ignored(self):
        text = '{"elements": [], "formFields": [], "confidence": 0.9}'
        analysis = parse_model_output(text, PageAnalysis)
        assert analysis.to_wire() == {"elements": [], "formFields": []}

    def test_missing_required_field_falls_back(self):
        assert validate_page_analysis('{"elements": []}').to_wire() == {"elements": [], "formFields": []}

    def test_wrong_type_falls_back(self):
        text = '{"elements": [], "formFields": [{"name": "email", "type": "email", "required": "yes"}]}'
        assert validate_page_analysis(text).to_wire() == {"elements": [], "formFields": []}

    def test_no_json_falls_back(self, caplog):
        with caplog.at_level(logging.WARNING, logger="assistant_gateway.validation"):
            analysis = validate_page_analysis("Sorry, I could not read that page.")

        assert analysis.to_wire() == {"elements": [], "formFields": []}
        record = next(r for r in caplog.records if r.getMessage() == "Falling back to default response")
        assert record.endpoint == "analyze"
        assert record.output.startswith("Sorry")

    def test_invalid_json_falls_back(self):
        assert validate_page_analysis("{elements: [}").to_wire() == {"elements": [], "formFields": []}

    def test_logged_output_truncated(self, caplog):
        with caplog.at_level(logging.WARNING, logger="assistant_gateway.validation"):
            validate_page_analysis("x" * 5000)

        assert len(caplog.records[-1].output) == 200

    def test_parse_raises_malformed(self):
        with pytest.raises(ResponseMalformed):
            parse_model_output("no object here", PageAnalysis)


class TestVoiceCommand:

    def test_well_formed_output(self):
        text = '{"action": "click", "target": "#submit", "response": "Clicking submit"}'
        result = validate_voice_command(text)
        assert result.to_wire() == {"action": "click", "target": "#submit", "response": "Clicking submit"}

    def test_target_optional(self):
        result = parse_model_output('{"action": "read", "response": "Reading the page"}', VoiceCommandResult)
        assert result.to_wire() == {"action": "read", "response": "Reading the page"}

    def test_unknown_action_falls_back(self):
        result = validate_voice_command('{"action": "delete", "response": "Deleting"}')
        assert result.to_wire() == {"action": "explain", "response": DEFAULT_HELP_RESPONSE}

    def test_missing_response_falls_back(self):
        result = validate_voice_command('{"action": "click", "target": "#go"}')
        assert result.action == "explain"

    def test_no_json_falls_back(self):
        result = validate_voice_command("Sure! I'll click it.")
        assert result.to_wire() == {"action": "explain", "response": DEFAULT_HELP_RESPONSE}


class TestPlainText:

    def test_translation_trimmed(self):
        assert validate_translation("  Hola  \n", source_text="Hello").to_wire() == {"translatedText": "Hola"}

    def test_empty_translation_returns_source(self):
        assert validate_translation("   ", source_text="Hello").text == "Hello"

    def test_form_help(self):
        assert validate_form_help("Enter your work email.").to_wire() == {"helpText": "Enter your work email."}

    def test_empty_form_help(self):
        assert validate_form_help("").text == DEFAULT_FORM_HELP
