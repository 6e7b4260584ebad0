"""
Two-stage gate between free-form model output and stored results.

1. extract_json: pull the JSON object out of whatever the model wrapped
   around it ("Sure, here you go: {...} Hope that helps!").
2. validate: check that object against the strict schema for the task.

Both stages return failure values instead of raising, so the orchestrator
can switch on the outcome.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from inbox_triage.agent.schemas import SummaryOutput, TaskKind, TriageOutput


class ExtractionFailureKind(str, Enum):
    NO_JSON_FOUND = "no_json_found"
    MALFORMED_JSON = "malformed_json"


@dataclass
class ExtractionFailure:
    kind: ExtractionFailureKind
    detail: str = ""

    def __str__(self) -> str:
        if self.kind is ExtractionFailureKind.NO_JSON_FOUND:
            return "Model did not return JSON (no braces found)"
        return f"Model returned malformed JSON: {self.detail}"


@dataclass
class SchemaViolation:
    field: str
    reason: str

    def __str__(self) -> str:
        return f"Model JSON failed schema validation: {self.field}: {self.reason}"


SCHEMAS: dict[TaskKind, type[BaseModel]] = {
    TaskKind.TRIAGE: TriageOutput,
    TaskKind.SUMMARIZE: SummaryOutput,
}


def extract_json(raw_text: str) -> Union[Any, ExtractionFailure]:
    """Parse the text between the first '{' and the last '}' inclusive."""
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start == -1 or end == -1:
        return ExtractionFailure(kind=ExtractionFailureKind.NO_JSON_FOUND)

    try:
        return json.loads(raw_text[start : end + 1])
    except ValueError as e:
        return ExtractionFailure(kind=ExtractionFailureKind.MALFORMED_JSON, detail=str(e))


def validate(value: Any, task: TaskKind) -> Union[TriageOutput, SummaryOutput, SchemaViolation]:
    """
    Validate extracted JSON against the schema for `task`.

    Missing fields, wrong types and out-of-set enum values all fail; nothing
    is coerced or defaulted. Only the first problem is reported.
    """
    if not isinstance(value, dict):
        return SchemaViolation(field="$", reason=f"expected a JSON object, got {type(value).__name__}")

    try:
        return SCHEMAS[task].model_validate(value)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "$"
        return SchemaViolation(field=field, reason=first["msg"])


def parse_model_output(raw_text: str, task: TaskKind) -> Union[TriageOutput, SummaryOutput, ExtractionFailure, SchemaViolation]:
    """extract_json followed by validate."""
    value = extract_json(raw_text)
    if isinstance(value, ExtractionFailure):
        return value
    return validate(value, task)
