"""
Tests for prompt construction and the YAML template contract.
"""

import textwrap

import pytest

from inbox_triage.agent.prompts import PromptBuilder, pick_body
from inbox_triage.agent.schemas import Category, StoredMessage, TaskKind, Urgency
from inbox_triage.logging.config import setup_logging


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def prompts() -> PromptBuilder:
    """The real template file shipped with the service."""
    return PromptBuilder()


@pytest.fixture
def small_prompts(tmp_path) -> PromptBuilder:
    yaml_file = tmp_path / "prompts.yaml"
    yaml_file.write_text(textwrap.dedent("""\
        version: "test-1"
        templates:
          triage: "T[{categories}][{urgencies}] {from_address} / {subject} :: {body}"
          summarize: "S {{shape}} :: {body}"
    """))
    return PromptBuilder(str(yaml_file))


def make_message(**overrides) -> StoredMessage:
    defaults = {
        "external_id": "m-1",
        "subject": "Freeze request",
        "from_address": "Sam <sam@example.com>",
        "snippet": "snippet text",
        "raw_body": "raw body text",
        "clean_body": "clean body text",
    }
    defaults.update(overrides)
    return StoredMessage(**defaults)


class TestPickBody:
    def test_prefers_clean_body(self):
        assert pick_body(make_message()) == "clean body text"

    def test_falls_back_to_raw_body(self):
        assert pick_body(make_message(clean_body="   ")) == "raw body text"

    def test_falls_back_to_snippet(self):
        assert pick_body(make_message(clean_body="", raw_body="")) == "snippet text"

    def test_empty_everywhere(self):
        assert pick_body(make_message(clean_body="", raw_body="", snippet="")) == ""


class TestBuild:
    def test_interpolates_fields(self, small_prompts):
        prompt = small_prompts.build(TaskKind.TRIAGE, make_message())
        assert prompt == (
            "T[CANCELLATION | FREEZE_REQUEST | BOOKING_CHANGE | BILLING_INVOICE | "
            "COMPLAINT | GENERAL_QUESTION | SPAM_OTHER][LOW | MEDIUM | HIGH] "
            "Sam <sam@example.com> / Freeze request :: clean body text"
        )

    def test_literal_braces_survive(self, small_prompts):
        prompt = small_prompts.build(TaskKind.SUMMARIZE, make_message())
        assert prompt == "S {shape} :: clean body text"

    def test_truncates_body_to_budget(self, small_prompts):
        message = make_message(clean_body="x" * 50)
        prompt = small_prompts.build(TaskKind.SUMMARIZE, message, max_chars=10)
        assert prompt.endswith(":: " + "x" * 10)

    def test_body_with_braces_is_not_a_template(self, small_prompts):
        message = make_message(clean_body="price is {amount} {0}")
        prompt = small_prompts.build(TaskKind.SUMMARIZE, message)
        assert prompt.endswith("price is {amount} {0}")

    def test_version_exposed(self, small_prompts):
        assert small_prompts.version == "test-1"


class TestShippedTemplates:
    def test_triage_embeds_every_enum_value(self, prompts):
        prompt = prompts.build(TaskKind.TRIAGE, make_message())
        for value in [c.value for c in Category] + [u.value for u in Urgency]:
            assert value in prompt
        assert '"reply_draft"' in prompt
        assert "clean body text" in prompt

    def test_summarize_asks_for_json_shape(self, prompts):
        prompt = prompts.build(TaskKind.SUMMARIZE, make_message())
        assert '"key_points"' in prompt
        assert '"summary"' in prompt
        assert prompt.endswith("clean body text")

    def test_default_triage_budget(self, prompts):
        prompt = prompts.build(TaskKind.TRIAGE, make_message(clean_body="y" * 10_000))
        assert "y" * 2000 in prompt
        assert "y" * 2001 not in prompt


class TestConfigErrors:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PromptBuilder(str(tmp_path / "nope.yaml"))

    def test_missing_template(self, tmp_path):
        yaml_file = tmp_path / "prompts.yaml"
        yaml_file.write_text("version: 1\ntemplates:\n  triage: 'only triage'\n")
        with pytest.raises(ValueError, match="summarize"):
            PromptBuilder(str(yaml_file))
