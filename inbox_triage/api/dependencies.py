"""
FastAPI dependencies.

The mailbox dependency identifies the caller from a Gmail OAuth bearer
token. Obtaining and refreshing that token happens outside this service.
Collaborators (store, generation client, prompts) are built once in the
app lifespan and handed to routes from app.state.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator

from fastapi import HTTPException, Request

from inbox_triage.agent.engine import SyncOrchestrator
from inbox_triage.logging.config import current_user_var
from inbox_triage.mail.client import GmailClient, MailSourceError

logger = logging.getLogger(__name__)


@dataclass
class Mailbox:
    """The authenticated caller: a user id plus a mail source bound to their token."""
    user_id: str
    client: GmailClient


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return token.strip()


async def require_mailbox(request: Request) -> AsyncIterator[Mailbox]:
    """
    Resolve the caller's mailbox from the Authorization header.

    The Gmail profile's email address is the user id that scopes every
    document-store collection.
    """
    client = GmailClient(access_token=_bearer_token(request))
    try:
        try:
            profile = await client.get_profile()
        except MailSourceError as e:
            logger.warning(
                "auth.profile_failed",
                extra={"action": "auth.profile_failed", "status_code": e.status_code},
            )
            raise HTTPException(status_code=401, detail="Mailbox token rejected") from e

        user_id = str(profile.get("emailAddress") or "").strip().lower()
        if not user_id:
            raise HTTPException(status_code=401, detail="Mailbox profile has no address")

        current_user_var.set(user_id)
        yield Mailbox(user_id=user_id, client=client)
    finally:
        await client.aclose()


def get_engine(request: Request) -> SyncOrchestrator:
    state = request.app.state
    return SyncOrchestrator(store=state.store, llm=state.llm, prompts=state.prompts, locks=state.document_locks)
