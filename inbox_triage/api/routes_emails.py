"""
Email API routes.

These endpoints handle:
- Syncing unread mail into the store (fetch, upsert, triage, summarize)
- Listing and reading stored messages
- Explicitly re-triaging one message
- Pruning messages that are no longer unread
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from inbox_triage.agent.engine import SyncAbortedError, SyncOrchestrator
from inbox_triage.agent.schemas import StoredMessage, SyncResult
from inbox_triage.api.dependencies import Mailbox, get_engine, require_mailbox
from inbox_triage.config import settings
from inbox_triage.logging.audit import audit
from inbox_triage.storage.store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emails", tags=["emails"])


def _store_unavailable(action: str, e: StoreError) -> HTTPException:
    logger.error(action, extra={"action": action, "error": str(e)}, exc_info=True)
    return HTTPException(status_code=503, detail={"error": "store_unavailable", "reason": str(e)})


@router.post("/sync", response_model=SyncResult)
async def sync_inbox(
    request: Request,
    mailbox: Mailbox = Depends(require_mailbox),
    engine: SyncOrchestrator = Depends(get_engine),
    max_results: int = Query(default=settings.sync_max_results, ge=1, le=100),
    retry_failed: bool = Query(default=False, description="Re-triage messages whose stored triage is a fallback"),
):
    """
    Fetch unread mail and reconcile it into the store.

    Per-message failures are counted in `errors`; the response always
    carries the counters. Only an unreachable generation engine or mailbox
    fails the request (503 with a machine-readable reason).
    """
    # One sync per user at a time avoids paying twice for the same
    # not-yet-triaged message.
    async with request.app.state.sync_locks.hold(mailbox.user_id):
        try:
            return await engine.sync(
                mailbox.user_id,
                mail_source=mailbox.client,
                max_results=max_results,
                retry_failed=retry_failed,
            )
        except SyncAbortedError as e:
            raise HTTPException(
                status_code=503,
                detail={"error": "sync_failed", "reason": e.reason, "message": e.detail},
            ) from e


@router.get("")
async def list_emails(
    mailbox: Mailbox = Depends(require_mailbox),
    engine: SyncOrchestrator = Depends(get_engine),
    limit: int = Query(default=50, ge=1, le=200),
    unread: bool = Query(default=False, description="Only messages still unread at the last sync"),
):
    """Latest stored messages, newest first."""
    try:
        messages = await engine.list_messages(mailbox.user_id, limit=limit, unread_only=unread)
    except StoreError as e:
        raise _store_unavailable("emails.list_failed", e) from e
    return {"emails": [m.model_dump(mode="json") for m in messages]}


@router.delete("/read")
async def prune_read_emails(
    mailbox: Mailbox = Depends(require_mailbox),
    engine: SyncOrchestrator = Depends(get_engine),
):
    """Delete stored messages that are no longer unread."""
    try:
        deleted = await engine.prune_read(mailbox.user_id)
    except StoreError as e:
        raise _store_unavailable("emails.prune_failed", e) from e
    return {"deleted": deleted}


@router.get("/{external_id}")
async def get_email(
    external_id: str,
    mailbox: Mailbox = Depends(require_mailbox),
    engine: SyncOrchestrator = Depends(get_engine),
):
    try:
        message: Optional[StoredMessage] = await engine.get_message(mailbox.user_id, external_id)
    except StoreError as e:
        raise _store_unavailable("emails.get_failed", e) from e
    if message is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"email": message.model_dump(mode="json")}


@router.post("/{external_id}/retriage")
async def retriage_email(
    external_id: str,
    mailbox: Mailbox = Depends(require_mailbox),
    engine: SyncOrchestrator = Depends(get_engine),
):
    """Throw away the stored triage for one message and generate a new one."""
    try:
        message = await engine.retriage(mailbox.user_id, external_id)
    except StoreError as e:
        raise _store_unavailable("emails.retriage_failed", e) from e
    if message is None:
        raise HTTPException(status_code=404, detail="Not found")

    audit.info("email.retriaged", external_id=external_id, fallback=message.triage.is_fallback)
    return {"email": message.model_dump(mode="json")}
