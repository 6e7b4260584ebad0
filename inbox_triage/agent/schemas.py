"""
Data models for the triage pipeline.

These Pydantic models define the shape of everything flowing between the
mail source, the generation engine and the document store. Model output is
validated against TriageOutput / SummaryOutput before it is ever turned into
a stored TriageResult / SummaryResult.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, Enum):
    """Closed set of triage categories the model may choose from."""
    CANCELLATION = "CANCELLATION"
    FREEZE_REQUEST = "FREEZE_REQUEST"
    BOOKING_CHANGE = "BOOKING_CHANGE"
    BILLING_INVOICE = "BILLING_INVOICE"
    COMPLAINT = "COMPLAINT"
    GENERAL_QUESTION = "GENERAL_QUESTION"
    SPAM_OTHER = "SPAM_OTHER"


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TaskKind(str, Enum):
    """What a prompt asks the model to do."""
    TRIAGE = "triage"
    SUMMARIZE = "summarize"


# =============================================================================
# MAIL SOURCE SHAPES
# =============================================================================

class MimePart(BaseModel):
    """One node of a multipart message tree."""
    mime_type: str = Field(default="")
    data: Optional[str] = Field(default=None, description="Base64 (URL-safe or standard) payload")
    parts: list["MimePart"] = Field(default_factory=list)

    @classmethod
    def from_gmail(cls, payload: Optional[dict[str, Any]]) -> "MimePart":
        """Build a part tree from a Gmail API `payload` object."""
        if not isinstance(payload, dict):
            return cls()
        body = payload.get("body") or {}
        return cls(
            mime_type=str(payload.get("mimeType") or "").lower(),
            data=body.get("data") if isinstance(body, dict) else None,
            parts=[cls.from_gmail(p) for p in payload.get("parts") or [] if isinstance(p, dict)],
        )


class FetchedMessage(BaseModel):
    """A message as returned by the mail source, before any processing."""
    external_id: str
    thread_id: Optional[str] = None
    from_address: str = Field(default="")
    subject: str = Field(default="")
    received_at: Optional[datetime] = None
    snippet: str = Field(default="")
    payload: MimePart = Field(default_factory=MimePart)
    labels: list[str] = Field(default_factory=list)
    is_unread: bool = True


# =============================================================================
# MODEL OUTPUT SCHEMAS (strict: nothing is coerced or defaulted)
# =============================================================================

class TriageOutput(BaseModel):
    """The JSON object the model must return for a triage prompt."""
    model_config = ConfigDict(extra="ignore")

    category: Category
    urgency: Urgency
    confidence: float = Field(strict=True, ge=0.0, le=1.0)
    reply_draft: str = Field(strict=True, min_length=1)

    @field_validator("reply_draft")
    @classmethod
    def reply_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class SummaryOutput(BaseModel):
    """The JSON object the model must return for a summarize prompt."""
    model_config = ConfigDict(extra="ignore")

    summary: str = Field(strict=True, min_length=1)
    title: Optional[str] = Field(default=None, strict=True)
    key_points: Optional[list[str]] = Field(default=None, max_length=5)

    @field_validator("summary")
    @classmethod
    def summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("key_points")
    @classmethod
    def check_key_points(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return value
        for point in value:
            if not isinstance(point, str) or not point.strip():
                raise ValueError("key points must be non-blank strings")
        return value


# =============================================================================
# STORED RESULTS
# =============================================================================

class TriageResult(BaseModel):
    """Triage attached 1:1 to a stored message. `error` marks a fallback."""
    category: Category
    urgency: Urgency
    confidence: float = Field(ge=0.0, le=1.0)
    reply_draft: str = Field(min_length=1)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_fallback(self) -> bool:
        return self.error is not None


class SummaryResult(BaseModel):
    title: Optional[str] = None
    summary: str = Field(default="")
    key_points: list[str] = Field(default_factory=list, max_length=5)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StoredMessage(BaseModel):
    """A message document as persisted in the per-user collection."""
    schema_version: int = Field(default=SCHEMA_VERSION)

    # --- Identity ---
    external_id: str = Field(min_length=1)
    thread_id: Optional[str] = None

    # --- Content ---
    subject: str = Field(default="")
    from_address: str = Field(default="")
    received_at: Optional[datetime] = None
    snippet: str = Field(default="")
    raw_body: str = Field(default="")
    clean_body: str = Field(default="")

    # --- Status ---
    is_unread: bool = True
    labels: list[str] = Field(default_factory=list)

    # --- Bookkeeping ---
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # --- Enriched by the pipeline ---
    triage: Optional[TriageResult] = None
    summary: Optional[SummaryResult] = None

    @field_validator("labels")
    @classmethod
    def labels_as_set(cls, value: list[str]) -> list[str]:
        return sorted(set(value))

    @field_validator("schema_version")
    @classmethod
    def known_version(cls, value: int) -> int:
        if value > SCHEMA_VERSION:
            raise ValueError(f"unsupported schema_version {value}")
        return value

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# Fields a later sync may refresh in place. Everything else is write-once.
MUTABLE_FIELDS = ("is_unread", "labels", "clean_body", "snippet")


class SyncResult(BaseModel):
    """Aggregate counters for one sync invocation."""
    fetched: int = 0
    created: int = 0
    triaged: int = 0
    summarized: int = 0
    errors: int = 0
    elapsed_ms: int = 0
