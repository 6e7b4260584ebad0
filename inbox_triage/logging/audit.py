"""
Audit trail for sync and triage actions.

Only metadata goes here: message ids, counts, categories, latencies.
Message bodies, subjects, prompts and model output are never logged.

Field names that collide with LogRecord attributes (`created`, `name`,
`module`, ...) are written with a `field_` prefix, since logging refuses
to overwrite them.

Usage:
    from inbox_triage.logging.audit import audit
    audit.info("message.triaged", external_id="18c2...", category="COMPLAINT")
"""

import logging
from typing import Any

RESERVED_FIELDS = frozenset(
    logging.LogRecord("audit", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def _extra(action: str, fields: dict[str, Any]) -> dict[str, Any]:
    extra = {"action": action}
    for key, value in fields.items():
        extra[f"field_{key}" if key in RESERVED_FIELDS else key] = value
    return extra


class AuditLogger:
    """Thin wrapper around logging that enforces structured action fields."""

    def __init__(self, name: str = "audit"):
        self._logger = logging.getLogger(name)

    def info(self, action: str, **fields: Any) -> None:
        self._logger.info(action, extra=_extra(action, fields))

    def warning(self, action: str, **fields: Any) -> None:
        self._logger.warning(action, extra=_extra(action, fields))

    def error(self, action: str, **fields: Any) -> None:
        self._logger.error(action, extra=_extra(action, fields))


audit = AuditLogger()
