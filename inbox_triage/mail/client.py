"""
Gmail REST API client for the mail source side of a sync.

Expects a valid OAuth access token. Acquiring and refreshing that token is
the caller's job; this client only turns Gmail's message resources into
FetchedMessage objects.

Usage:
    from inbox_triage.mail.client import GmailClient

    gmail = GmailClient(access_token="ya29...")
    profile = await gmail.get_profile()
    messages = await gmail.list_unread(max_results=10)
    await gmail.aclose()
"""

import logging
import time
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from inbox_triage.agent.schemas import FetchedMessage, MimePart
from inbox_triage.config import settings
from inbox_triage.logging.audit import audit

logger = logging.getLogger(__name__)

UNREAD_LABEL = "UNREAD"


class MailSourceError(Exception):
    """Raised when the mailbox cannot be listed or read."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GmailClient:
    """Thin async wrapper over the Gmail v1 users.messages endpoints."""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._base = (base_url or settings.gmail_base_url).rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=settings.gmail_timeout_seconds)
        self._headers = {"Authorization": f"Bearer {access_token}"}

    async def aclose(self) -> None:
        """Close the HTTP client. Call when done."""
        await self._http.aclose()

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            resp = await self._http.get(f"{self._base}{path}", params=params, headers=self._headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "gmail.request.error",
                extra={
                    "action": "gmail.request.error",
                    "path": path,
                    "status_code": e.response.status_code,
                    "response_body": e.response.text[:500],
                },
            )
            raise MailSourceError(
                f"Gmail API returned HTTP {e.response.status_code} for {path}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "gmail.request.error",
                extra={"action": "gmail.request.error", "path": path, "error": str(e)},
            )
            raise MailSourceError(f"Gmail API request failed for {path}: {e}") from e

    # =========================================================================
    # PROFILE
    # =========================================================================

    async def get_profile(self) -> dict[str, Any]:
        """Return the authenticated mailbox profile (emailAddress, messagesTotal, ...)."""
        return await self._get("/users/me/profile")

    # =========================================================================
    # UNREAD MESSAGES
    # =========================================================================

    async def list_unread(self, max_results: Optional[int] = None) -> list[FetchedMessage]:
        """
        List unread inbox messages, newest first, and fetch each in full.

        One list call, then one call per message. Any failure aborts the
        whole listing with MailSourceError.
        """
        start = time.monotonic()
        limit = max_results or settings.sync_max_results

        listing = await self._get(
            "/users/me/messages",
            params={"labelIds": "INBOX", "q": "is:unread", "maxResults": limit},
        )
        ids = [m["id"] for m in listing.get("messages") or [] if m.get("id")][:limit]

        messages = []
        for message_id in ids:
            full = await self._get(f"/users/me/messages/{message_id}", params={"format": "full"})
            messages.append(self.parse_message(full))

        audit.info(
            "gmail.unread.fetched",
            requested=limit,
            fetched=len(messages),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return messages

    # =========================================================================
    # PARSING
    # =========================================================================

    @staticmethod
    def _parse_date(value: str) -> Optional[datetime]:
        if not value:
            return None
        try:
            return parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None

    @staticmethod
    def parse_message(msg: dict[str, Any]) -> FetchedMessage:
        """Convert a Gmail `format=full` message resource into a FetchedMessage."""
        payload = msg.get("payload") or {}
        headers = {
            str(h.get("name", "")).lower(): str(h.get("value") or "")
            for h in payload.get("headers") or []
            if isinstance(h, dict)
        }
        labels = [str(label) for label in msg.get("labelIds") or []]

        return FetchedMessage(
            external_id=str(msg["id"]),
            thread_id=msg.get("threadId") or None,
            from_address=headers.get("from", ""),
            subject=headers.get("subject", ""),
            received_at=GmailClient._parse_date(headers.get("date", "")),
            snippet=str(msg.get("snippet") or ""),
            payload=MimePart.from_gmail(payload),
            labels=labels,
            is_unread=UNREAD_LABEL in labels,
        )
