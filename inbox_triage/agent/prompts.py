"""
Prompt construction for the generation engine.

The template text lives in config/prompts.yaml, not in code: it is a
versioned contract with the model. This module only picks the message body,
truncates it to the task's character budget and fills in the placeholders.

Usage:
    from inbox_triage.agent.prompts import PromptBuilder

    prompts = PromptBuilder("config/prompts.yaml")
    prompt = prompts.build(TaskKind.TRIAGE, message)
"""

import logging
from pathlib import Path
from typing import Optional

import yaml

from inbox_triage.agent.schemas import Category, StoredMessage, TaskKind, Urgency
from inbox_triage.config import settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = {
    TaskKind.TRIAGE: settings.triage_max_chars,
    TaskKind.SUMMARIZE: settings.summary_max_chars,
}


def pick_body(message: StoredMessage) -> str:
    """Prefer the cleaned body, then the raw body, then the source snippet."""
    for candidate in (message.clean_body, message.raw_body, message.snippet):
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


def enum_choices(enum_cls) -> str:
    return " | ".join(member.value for member in enum_cls)


class PromptBuilder:
    """
    Loads prompt templates from YAML and renders them per task.

    A missing file or a missing task template is a configuration error and
    fails at construction, not at the first sync.
    """

    def __init__(self, yaml_path: Optional[str] = None, max_chars: Optional[dict[TaskKind, int]] = None):
        path = Path(yaml_path or settings.prompt_config_path)
        if not path.exists():
            raise FileNotFoundError(f"Prompt config not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        templates = data.get("templates") or {}
        missing = [task.value for task in TaskKind if not isinstance(templates.get(task.value), str)]
        if missing:
            raise ValueError(f"Prompt config {path} is missing templates for: {', '.join(missing)}")

        self.version: str = str(data.get("version", "unversioned"))
        self._templates: dict[TaskKind, str] = {task: templates[task.value] for task in TaskKind}
        self._max_chars = {**DEFAULT_MAX_CHARS, **(max_chars or {})}

        logger.info(
            "prompts.loaded",
            extra={
                "action": "prompts.loaded",
                "prompt_version": self.version,
                "tasks": [task.value for task in TaskKind],
            },
        )

    def build(self, task: TaskKind, message: StoredMessage, max_chars: Optional[int] = None) -> str:
        """Render the prompt for `task` with the message body cut to the budget."""
        budget = max_chars if max_chars is not None else self._max_chars[task]
        body = pick_body(message)[: max(budget, 0)]

        return self._templates[task].format(
            categories=enum_choices(Category),
            urgencies=enum_choices(Urgency),
            from_address=message.from_address,
            subject=message.subject,
            body=body,
        ).strip()
