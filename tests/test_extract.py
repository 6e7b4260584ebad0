"""
Tests for JSON extraction and strict schema validation of model output.
"""

import pytest

from inbox_triage.agent.extract import (
    ExtractionFailure,
    ExtractionFailureKind,
    SchemaViolation,
    extract_json,
    parse_model_output,
    validate,
)
from inbox_triage.agent.schemas import Category, SummaryOutput, TaskKind, TriageOutput, Urgency


def triage_json(**overrides) -> dict:
    base = {
        "category": "BILLING_INVOICE",
        "urgency": "HIGH",
        "confidence": 0.8,
        "reply_draft": "Hi there, we'll look into the double charge.",
    }
    base.update(overrides)
    return base


class TestExtractJson:
    def test_tolerates_surrounding_commentary(self):
        raw = (
            'Sure, here you go:\n{"category":"SPAM_OTHER","urgency":"LOW",'
            '"confidence":0.9,"reply_draft":"No thanks."}\nHope that helps!'
        )
        assert extract_json(raw) == {
            "category": "SPAM_OTHER",
            "urgency": "LOW",
            "confidence": 0.9,
            "reply_draft": "No thanks.",
        }

    def test_no_braces(self):
        result = extract_json("I could not classify this email.")
        assert isinstance(result, ExtractionFailure)
        assert result.kind is ExtractionFailureKind.NO_JSON_FOUND

    def test_only_opening_brace(self):
        result = extract_json("{ unfinished")
        assert isinstance(result, ExtractionFailure)
        assert result.kind is ExtractionFailureKind.NO_JSON_FOUND

    def test_malformed(self):
        result = extract_json('{"category": "COMPLAINT",}')
        assert isinstance(result, ExtractionFailure)
        assert result.kind is ExtractionFailureKind.MALFORMED_JSON

    def test_two_objects_span_is_malformed(self):
        result = extract_json('{"a": 1} and also {"b": 2}')
        assert isinstance(result, ExtractionFailure)
        assert result.kind is ExtractionFailureKind.MALFORMED_JSON

    def test_nested_object(self):
        assert extract_json('x {"a": {"b": 1}} y') == {"a": {"b": 1}}


class TestValidateTriage:
    def test_valid(self):
        result = validate(triage_json(), TaskKind.TRIAGE)
        assert isinstance(result, TriageOutput)
        assert result.category is Category.BILLING_INVOICE
        assert result.urgency is Urgency.HIGH

    def test_confidence_bounds_inclusive(self):
        assert isinstance(validate(triage_json(confidence=0), TaskKind.TRIAGE), TriageOutput)
        assert isinstance(validate(triage_json(confidence=1), TaskKind.TRIAGE), TriageOutput)

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"category": "REFUND"}, "category"),
            ({"category": "complaint"}, "category"),
            ({"urgency": "CRITICAL"}, "urgency"),
            ({"confidence": 1.5}, "confidence"),
            ({"confidence": -0.1}, "confidence"),
            ({"confidence": "0.9"}, "confidence"),
            ({"confidence": True}, "confidence"),
            ({"reply_draft": ""}, "reply_draft"),
            ({"reply_draft": "   "}, "reply_draft"),
            ({"reply_draft": 42}, "reply_draft"),
        ],
    )
    def test_rejects_out_of_schema(self, overrides, field):
        result = validate(triage_json(**overrides), TaskKind.TRIAGE)
        assert isinstance(result, SchemaViolation)
        assert result.field == field

    def test_missing_reply_draft(self):
        data = triage_json()
        del data["reply_draft"]
        result = validate(data, TaskKind.TRIAGE)
        assert isinstance(result, SchemaViolation)
        assert result.field == "reply_draft"

    def test_non_object(self):
        result = validate(["not", "an", "object"], TaskKind.TRIAGE)
        assert isinstance(result, SchemaViolation)
        assert result.field == "$"

    def test_extra_fields_ignored(self):
        result = validate(triage_json(error="injected"), TaskKind.TRIAGE)
        assert isinstance(result, TriageOutput)
        assert not hasattr(result, "error")


class TestValidateSummary:
    def test_valid_with_everything(self):
        data = {"title": "Freeze request now please", "summary": "Member wants a freeze.", "key_points": ["2 months"]}
        result = validate(data, TaskKind.SUMMARIZE)
        assert isinstance(result, SummaryOutput)
        # Title is advisory; truncation is the consumer's job.
        assert result.title == "Freeze request now please"

    def test_key_points_optional(self):
        result = validate({"summary": "Short."}, TaskKind.SUMMARIZE)
        assert isinstance(result, SummaryOutput)
        assert result.key_points is None

    def test_too_many_key_points(self):
        result = validate({"summary": "s", "key_points": ["a", "b", "c", "d", "e", "f"]}, TaskKind.SUMMARIZE)
        assert isinstance(result, SchemaViolation)
        assert result.field == "key_points"

    def test_blank_key_point(self):
        result = validate({"summary": "s", "key_points": ["ok", " "]}, TaskKind.SUMMARIZE)
        assert isinstance(result, SchemaViolation)

    def test_missing_summary(self):
        result = validate({"title": "Hello"}, TaskKind.SUMMARIZE)
        assert isinstance(result, SchemaViolation)
        assert result.field == "summary"


class TestParseModelOutput:
    def test_extraction_failure_passes_through(self):
        assert isinstance(parse_model_output("nothing here", TaskKind.TRIAGE), ExtractionFailure)

    def test_end_to_end(self):
        raw = 'Result: {"category": "CANCELLATION", "urgency": "MEDIUM", "confidence": 0.7, "reply_draft": "Hi"}'
        result = parse_model_output(raw, TaskKind.TRIAGE)
        assert isinstance(result, TriageOutput)
        assert result.category is Category.CANCELLATION
