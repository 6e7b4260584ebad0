"""
Sync orchestrator: the control point of the triage pipeline.

For each fetched message:

    NEW ──upsert──▶ STORED ──triage──▶ TRIAGED
                      │          └───▶ TRIAGE_FAILED_FALLBACK
                      └──summarize (long bodies only)──▶ SUMMARIZED

- Upsert is idempotent by external_id; later syncs refresh only the
  mutable fields (unread flag, labels, clean body, snippet).
- A stored triage is never regenerated by a sync unless it is a fallback
  and the caller asked for retry_failed. retriage() is the explicit way
  to replace a good one.
- Any failure on one message is counted and logged; it never aborts the
  rest of the batch. Only the health probe and the mailbox listing can
  abort a sync.

The engine does not own its collaborators. The mail source, document
store, generation client and prompt builder are all passed in.

Usage:
    engine = SyncOrchestrator(store=store, llm=llm, prompts=prompts)
    result = await engine.sync(user_id, mail_source=gmail)
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from inbox_triage.agent.extract import ExtractionFailure, SchemaViolation, parse_model_output
from inbox_triage.agent.prompts import PromptBuilder
from inbox_triage.agent.schemas import (
    Category,
    FetchedMessage,
    MUTABLE_FIELDS,
    StoredMessage,
    SummaryResult,
    SyncResult,
    TaskKind,
    TriageResult,
    Urgency,
    utcnow,
)
from inbox_triage.config import settings
from inbox_triage.llm.client import GenerationClient, GenerationFailure
from inbox_triage.logging.audit import audit
from inbox_triage.logging.config import sync_id_var
from inbox_triage.mail.body import extract_body
from inbox_triage.mail.cleaner import clean_body
from inbox_triage.storage.locks import KeyedLocks
from inbox_triage.storage.store import DocumentStore

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.2
FALLBACK_REPLY = (
    "Hi there,\n\n"
    "Thanks for getting in touch. We've received your message and a member of "
    "the team will review it and get back to you shortly.\n\n"
    "Kind regards,\n"
    "Management Team"
)
SUMMARY_TITLE_MAX_WORDS = 3


class MailSource(Protocol):
    async def list_unread(self, max_results: Optional[int] = None) -> list[FetchedMessage]: ...


class SyncAbortedError(Exception):
    """A sync could not start or could not fetch; `reason` is machine-readable."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


@dataclass
class MessageOutcome:
    """Per-message counters, combined once the whole batch is done."""
    created: bool = False
    triaged: bool = False
    summarized: bool = False
    errors: int = 0


def fallback_triage(error: str) -> TriageResult:
    """The low-confidence result stored when any triage stage fails."""
    return TriageResult(
        category=Category.GENERAL_QUESTION,
        urgency=Urgency.LOW,
        confidence=FALLBACK_CONFIDENCE,
        reply_draft=FALLBACK_REPLY,
        error=error,
    )


def truncate_title(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    return " ".join(title.split()[:SUMMARY_TITLE_MAX_WORDS]) or None


def build_message(fetched: FetchedMessage) -> StoredMessage:
    """Run body extraction and cleaning for a freshly fetched message."""
    raw_body = extract_body(fetched.payload)
    return StoredMessage(
        external_id=fetched.external_id,
        thread_id=fetched.thread_id,
        subject=fetched.subject,
        from_address=fetched.from_address,
        received_at=fetched.received_at,
        snippet=fetched.snippet,
        raw_body=raw_body,
        clean_body=clean_body(raw_body or fetched.snippet),
        is_unread=fetched.is_unread,
        labels=fetched.labels,
    )


class SyncOrchestrator:
    """Reconciles fetched messages into the store and enriches them with AI results."""

    def __init__(
        self,
        store: DocumentStore,
        llm: GenerationClient,
        prompts: PromptBuilder,
        max_workers: Optional[int] = None,
        triage_timeout: Optional[float] = None,
        summary_timeout: Optional[float] = None,
        summary_threshold: Optional[int] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self._store = store
        self._llm = llm
        self._prompts = prompts
        self._max_workers = max(1, max_workers or settings.sync_max_workers)
        self._triage_timeout = triage_timeout or settings.triage_timeout_seconds
        self._summary_timeout = summary_timeout or settings.summary_timeout_seconds
        self._summary_threshold = settings.summary_threshold_chars if summary_threshold is None else summary_threshold
        self._locks = locks or KeyedLocks()

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync(
        self,
        user_id: str,
        mail_source: MailSource,
        max_results: Optional[int] = None,
        retry_failed: bool = False,
    ) -> SyncResult:
        """
        Fetch unread messages and reconcile each one into the store.

        Raises:
            SyncAbortedError: the generation engine is unreachable or the
                mailbox could not be listed. Nothing has been written.
        """
        start = time.monotonic()
        token = sync_id_var.set(uuid.uuid4().hex[:8])
        try:
            if not await self._llm.health():
                audit.error("sync.aborted", reason="generation_unavailable")
                raise SyncAbortedError("generation_unavailable", "generation engine health probe failed")

            try:
                fetched = await mail_source.list_unread(max_results)
            except Exception as e:
                audit.error("sync.aborted", reason="mail_source_unavailable", error=str(e))
                raise SyncAbortedError("mail_source_unavailable", str(e)) from e

            semaphore = asyncio.Semaphore(self._max_workers)

            async def bounded(message: FetchedMessage) -> MessageOutcome:
                async with semaphore:
                    return await self._process_safely(user_id, message, retry_failed)

            outcomes = await asyncio.gather(*(bounded(m) for m in fetched))

            result = SyncResult(
                fetched=len(fetched),
                created=sum(o.created for o in outcomes),
                triaged=sum(o.triaged for o in outcomes),
                summarized=sum(o.summarized for o in outcomes),
                errors=sum(o.errors for o in outcomes),
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
            audit.info(
                "sync.completed",
                fetched=result.fetched,
                created_count=result.created,
                triaged=result.triaged,
                summarized=result.summarized,
                errors=result.errors,
                elapsed_ms=result.elapsed_ms,
            )
            return result
        finally:
            sync_id_var.reset(token)

    async def _process_safely(self, user_id: str, fetched: FetchedMessage, retry_failed: bool) -> MessageOutcome:
        outcome = MessageOutcome()
        try:
            await self.process_message(user_id, fetched, retry_failed, outcome)
        except Exception as e:
            outcome.errors += 1
            logger.error(
                "sync.message.failed",
                extra={
                    "action": "sync.message.failed",
                    "external_id": fetched.external_id,
                    "error": str(e),
                },
                exc_info=True,
            )
        return outcome

    async def process_message(
        self,
        user_id: str,
        fetched: FetchedMessage,
        retry_failed: bool = False,
        outcome: Optional[MessageOutcome] = None,
    ) -> MessageOutcome:
        """
        Upsert one message, then triage and summarize it if needed.

        Holds the per-document lock for the whole sequence, so the upsert
        happens-before any AI write and two syncs never interleave writes
        to the same document. `outcome` is filled in as steps complete.
        """
        outcome = outcome or MessageOutcome()
        async with self._locks.hold((user_id, fetched.external_id)):
            message = await self._upsert(user_id, fetched, outcome)

            needs_triage = message.triage is None or (retry_failed and message.triage.is_fallback)
            if needs_triage:
                message.triage = await self._triage(user_id, message, outcome)

            if message.summary is None and len(message.clean_body) > self._summary_threshold:
                message.summary = await self._summarize(user_id, message, outcome)

        return outcome

    async def _upsert(self, user_id: str, fetched: FetchedMessage, outcome: MessageOutcome) -> StoredMessage:
        existing = await self._store.get(user_id, fetched.external_id)
        fresh = build_message(fetched)

        if existing is None:
            await self._store.set(user_id, fresh)
            outcome.created = True
            audit.info("message.created", external_id=fresh.external_id)
            return fresh

        refreshed = {field: getattr(fresh, field) for field in MUTABLE_FIELDS}
        refreshed["updated_at"] = utcnow()
        await self._store.update(user_id, fetched.external_id, _jsonable(refreshed))
        return existing.model_copy(update=refreshed)

    # =========================================================================
    # TRIAGE
    # =========================================================================

    async def _triage(self, user_id: str, message: StoredMessage, outcome: MessageOutcome) -> TriageResult:
        result = await self.triage_message(message)
        await self._store.update(user_id, message.external_id, {"triage": result.model_dump(mode="json")})

        outcome.triaged = True
        if result.is_fallback:
            outcome.errors += 1
        return result

    async def triage_message(self, message: StoredMessage) -> TriageResult:
        """
        Classify a message and draft a reply.

        Never raises for model problems: any generation, extraction or
        validation failure, returned or raised, yields the fallback result
        with `error` set.
        """
        prompt = self._prompts.build(TaskKind.TRIAGE, message)
        try:
            generated = await self._llm.generate(prompt, timeout=self._triage_timeout, purpose="triage")
            if isinstance(generated, GenerationFailure):
                return self._fallback(message, str(generated), stage="generation")
            parsed = parse_model_output(generated.text, TaskKind.TRIAGE)
        except Exception as e:
            _log_unexpected("triage", message, e)
            return self._fallback(message, _describe(e), stage="unexpected")

        if isinstance(parsed, (ExtractionFailure, SchemaViolation)):
            return self._fallback(message, str(parsed), stage="validation")

        result = TriageResult(
            category=parsed.category,
            urgency=parsed.urgency,
            confidence=parsed.confidence,
            reply_draft=parsed.reply_draft.strip(),
        )
        audit.info(
            "message.triaged",
            external_id=message.external_id,
            category=result.category.value,
            urgency=result.urgency.value,
            confidence=result.confidence,
            prompt_version=self._prompts.version,
            latency_ms=generated.latency_ms,
        )
        return result

    def _fallback(self, message: StoredMessage, error: str, stage: str) -> TriageResult:
        audit.warning(
            "message.triage_failed",
            external_id=message.external_id,
            stage=stage,
            error=error,
            prompt_version=self._prompts.version,
        )
        return fallback_triage(error)

    # =========================================================================
    # SUMMARY (long bodies only, no retry)
    # =========================================================================

    async def _summarize(self, user_id: str, message: StoredMessage, outcome: MessageOutcome) -> SummaryResult:
        result = await self.summarize_message(message)
        await self._store.update(user_id, message.external_id, {"summary": result.model_dump(mode="json")})

        if result.error is None:
            outcome.summarized = True
        else:
            outcome.errors += 1
        return result

    async def summarize_message(self, message: StoredMessage) -> SummaryResult:
        prompt = self._prompts.build(TaskKind.SUMMARIZE, message)
        try:
            generated = await self._llm.generate(prompt, timeout=self._summary_timeout, purpose="summarize")
            if isinstance(generated, GenerationFailure):
                return self._summary_failed(message, str(generated))
            parsed = parse_model_output(generated.text, TaskKind.SUMMARIZE)
        except Exception as e:
            _log_unexpected("summarize", message, e)
            return self._summary_failed(message, _describe(e))

        if isinstance(parsed, (ExtractionFailure, SchemaViolation)):
            return self._summary_failed(message, str(parsed))

        audit.info(
            "message.summarized",
            external_id=message.external_id,
            key_point_count=len(parsed.key_points or []),
            prompt_version=self._prompts.version,
            latency_ms=generated.latency_ms,
        )
        return SummaryResult(
            title=truncate_title(parsed.title),
            summary=parsed.summary.strip(),
            key_points=[p.strip() for p in parsed.key_points or []],
        )

    def _summary_failed(self, message: StoredMessage, error: str) -> SummaryResult:
        audit.warning(
            "message.summarize_failed",
            external_id=message.external_id,
            error=error,
            prompt_version=self._prompts.version,
        )
        return SummaryResult(error=error)

    # =========================================================================
    # READ / MAINTENANCE
    # =========================================================================

    async def list_messages(self, user_id: str, limit: int = 50, unread_only: bool = False) -> list[StoredMessage]:
        """Latest stored messages, newest first. `unread_only` filters on the stored unread flag."""
        if unread_only:
            return await self._store.query(user_id, "is_unread", True, limit=limit)
        return await self._store.list_recent(user_id, limit=limit)

    async def get_message(self, user_id: str, external_id: str) -> Optional[StoredMessage]:
        return await self._store.get(user_id, external_id)

    async def retriage(self, user_id: str, external_id: str) -> Optional[StoredMessage]:
        """
        Explicitly clear and regenerate one message's triage.

        Returns None if the message is not stored.
        """
        async with self._locks.hold((user_id, external_id)):
            message = await self._store.get(user_id, external_id)
            if message is None:
                return None

            await self._store.update(user_id, external_id, {"triage": None})
            audit.info("message.triage_cleared", external_id=external_id)

            message.triage = await self._triage(user_id, message, MessageOutcome())
            return message

    async def prune_read(self, user_id: str, batch_size: Optional[int] = None) -> int:
        """Delete stored messages that are no longer unread, in batches."""
        deleted = await self._store.delete_where(user_id, "is_unread", False, batch_size=batch_size)
        audit.info("messages.pruned", deleted=deleted)
        return deleted


def _jsonable(fields: dict) -> dict:
    """Field-level updates go to the store in the same JSON shape as documents."""
    return {
        key: value.isoformat() if hasattr(value, "isoformat") else value
        for key, value in fields.items()
    }


def _describe(error: Exception) -> str:
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__


def _log_unexpected(stage: str, message: StoredMessage, error: Exception) -> None:
    logger.error(
        f"{stage}.unexpected_error",
        extra={
            "action": f"{stage}.unexpected_error",
            "external_id": message.external_id,
            "error": _describe(error),
        },
        exc_info=True,
    )
