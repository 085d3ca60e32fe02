# =============================================================================
# Gmail REST Client — Read-Only Inbox Access
# =============================================================================
#
# Talks to the Gmail v1 REST API with an OAuth access token supplied by the
# caller (the frontend owns the Google sign-in; this service never sees a
# refresh token). Only reads: listing threads, fetching thread details and
# a few cheap mailbox checks (new mail since a timestamp, last contact with
# an address, message count).
#
# The JSON returned by `threads.get` is shaped into EmailMessage objects
# here, without any MIME library: Gmail already splits the message into a
# tree of parts whose bodies are base64url strings.
#
# BODY SELECTION (extract_body):
#   1. A body attached directly to the part
#   2. Among its children: the first text/html part with data
#   3. Among its children: the first text/plain part with data
#   4. Depth-first search of the children
#
# Thread reads are fanned out through services/batching.py to stay under
# Gmail's per-user quota.
# =============================================================================

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

import httpx

from dispute_center.config import settings
from dispute_center.services.batching import BatchResult, run_in_batches, with_backoff
from dispute_center.services.text import is_large_content

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "No Subject"
DEFAULT_SENDER = "Unknown Sender"


class GmailApiError(Exception):
    """Gmail answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ThreadMessage:
    """One message of a thread, reduced to what the UI shows."""

    id: str
    sender: str
    received_at: datetime
    content: str
    content_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "received_at": self.received_at.isoformat(),
            "content": self.content,
            "content_type": self.content_type,
        }


@dataclass
class EmailMessage:
    """A Gmail thread represented by its latest message."""

    id: str
    thread_id: str
    subject: str
    sender: str
    received_at: datetime
    content: str
    content_type: str | None = None
    is_large_content: bool = False
    thread_messages: list[ThreadMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "subject": self.subject,
            "sender": self.sender,
            "received_at": self.received_at.isoformat(),
            "content": self.content,
            "content_type": self.content_type,
            "is_large_content": self.is_large_content,
            "thread_messages": [m.to_dict() for m in self.thread_messages],
        }


# ---------------------------------------------------------------------------
# JSON shaping helpers
# ---------------------------------------------------------------------------


def header_value(message: dict[str, Any], name: str) -> str:
    """Value of the first header called `name` (case-insensitive), or ""."""
    headers = (message.get("payload") or {}).get("headers") or []
    wanted = name.lower()
    for header in headers:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value") or ""
    return ""


def decode_body_data(data: str) -> str:
    """Decode a Gmail base64url body (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("Undecodable message body (%d chars)", len(data))
        return ""


def _part_data(part: dict[str, Any]) -> str | None:
    return (part.get("body") or {}).get("data") or None


def extract_body(payload: dict[str, Any] | None) -> tuple[str | None, str | None]:
    """
    Find the displayable body of a message payload.

    Returns:
        (content, mime_type), or (None, None) when nothing has data.
    """
    if not payload:
        return None, None

    data = _part_data(payload)
    if data:
        return decode_body_data(data), payload.get("mimeType")

    parts = payload.get("parts") or []
    for wanted in ("text/html", "text/plain"):
        for part in parts:
            if part.get("mimeType") == wanted and _part_data(part):
                return decode_body_data(_part_data(part)), wanted

    for part in parts:
        content, mime_type = extract_body(part)
        if content:
            return content, mime_type

    return None, None


def parse_gmail_date(value: str | None) -> datetime:
    """Parse an RFC 2822 Date header; fall back to now (UTC)."""
    if value:
        try:
            parsed = parsedate_to_datetime(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (TypeError, ValueError, IndexError):
            logger.debug("Unparseable Date header: %r", value)
    return datetime.now(timezone.utc)


def _message_date(message: dict[str, Any]) -> datetime:
    date_header = header_value(message, "date")
    if date_header:
        return parse_gmail_date(date_header)
    internal = message.get("internalDate")
    if internal:
        return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)


def message_to_thread_message(message: dict[str, Any]) -> ThreadMessage:
    content, content_type = extract_body(message.get("payload"))
    return ThreadMessage(
        id=message.get("id", ""),
        sender=header_value(message, "from") or DEFAULT_SENDER,
        received_at=_message_date(message),
        content=content or message.get("snippet") or "",
        content_type=content_type,
    )


def thread_to_email(thread: dict[str, Any]) -> EmailMessage | None:
    """
    Represent a thread by its latest message.

    Returns None for a thread without messages.
    """
    messages = thread.get("messages") or []
    if not messages:
        return None

    latest = messages[-1]
    content, content_type = extract_body(latest.get("payload"))
    content = content or latest.get("snippet") or ""

    return EmailMessage(
        id=latest.get("id", ""),
        thread_id=thread.get("id") or latest.get("threadId", ""),
        subject=header_value(latest, "subject") or DEFAULT_SUBJECT,
        sender=header_value(latest, "from") or DEFAULT_SENDER,
        received_at=_message_date(latest),
        content=content,
        content_type=content_type,
        is_large_content=is_large_content(content),
        thread_messages=[message_to_thread_message(m) for m in messages],
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GmailClient:
    """
    Minimal async Gmail client bound to one user's access token.

    Usage:
        async with GmailClient(access_token) as gmail:
            page = await gmail.list_threads(max_results=10)
    """

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.gmail_api_base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> GmailClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise GmailApiError(503, f"Gmail request failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message") or response.text
            except ValueError:
                message = response.text
            raise GmailApiError(response.status_code, message or "Gmail API error")
        return response.json()

    async def list_threads(
        self,
        max_results: int = 10,
        page_token: str | None = None,
        query: str | None = None,
        label_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        """GET users/me/threads. Returns {"threads": [...], "nextPageToken": ...}."""
        params: dict[str, Any] = {"maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        if query:
            params["q"] = query
        if label_ids:
            params["labelIds"] = label_ids
        return await self._get("/users/me/threads", params=params)

    async def get_thread(self, thread_id: str, format: str = "full") -> dict[str, Any]:
        """GET users/me/threads/{id}."""
        return await self._get(f"/users/me/threads/{thread_id}", params={"format": format})

    async def list_messages(
        self,
        max_results: int = 1,
        query: str | None = None,
    ) -> dict[str, Any]:
        """GET users/me/messages. Returns {"messages": [...], "resultSizeEstimate": n}."""
        params: dict[str, Any] = {"maxResults": max_results}
        if query:
            params["q"] = query
        return await self._get("/users/me/messages", params=params)

    async def get_message(
        self,
        message_id: str,
        format: str = "metadata",
        metadata_headers: list[str] | None = None,
    ) -> dict[str, Any]:
        """GET users/me/messages/{id}."""
        params: dict[str, Any] = {"format": format}
        if metadata_headers:
            params["metadataHeaders"] = metadata_headers
        return await self._get(f"/users/me/messages/{message_id}", params=params)


# ---------------------------------------------------------------------------
# Batched reads
# ---------------------------------------------------------------------------


async def list_threads_with_retry(
    client: GmailClient,
    max_results: int,
    page_token: str | None = None,
    query: str | None = None,
) -> dict[str, Any]:
    """list_threads with exponential backoff on Gmail errors."""
    return await with_backoff(
        lambda: client.list_threads(
            max_results=max_results, page_token=page_token, query=query,
        ),
        max_retries=settings.gmail_max_retries,
        base_delay=settings.gmail_retry_base_delay,
        max_delay=settings.gmail_retry_max_delay,
        retry_on=(GmailApiError,),
    )


async def fetch_threads(
    client: GmailClient,
    thread_ids: list[str],
    batch_size: int | None = None,
    delay_seconds: float | None = None,
) -> BatchResult[str, dict[str, Any]]:
    """Fetch thread details in throttled batches. Failed ids are reported, not raised."""
    return await run_in_batches(
        thread_ids,
        client.get_thread,
        batch_size=batch_size or settings.gmail_batch_size,
        delay_seconds=settings.batch_delay_seconds if delay_seconds is None else delay_seconds,
    )


async def fetch_emails(
    client: GmailClient,
    thread_ids: list[str],
    batch_size: int | None = None,
    delay_seconds: float | None = None,
) -> tuple[list[EmailMessage], list[tuple[str, str]]]:
    """Fetch threads and shape them into emails, preserving input order."""
    batch = await fetch_threads(client, thread_ids, batch_size, delay_seconds)
    emails = [
        email
        for email in (thread_to_email(t) for t in batch.succeeded)
        if email is not None
    ]
    return emails, batch.failures


# ---------------------------------------------------------------------------
# Mailbox checks
# ---------------------------------------------------------------------------


@dataclass
class NewThreadsCheck:
    """Threads with mail after a timestamp that the caller does not hold yet."""

    new_thread_ids: list[str]
    total_found: int
    has_more: bool

    @property
    def new_emails_count(self) -> int:
        return len(self.new_thread_ids)


@dataclass
class LastContact:
    """The newest message exchanged with one address."""

    last_email_time: datetime | None
    is_from_customer: bool | None = None


async def check_new_threads(
    client: GmailClient,
    since: datetime,
    known_thread_ids: Iterable[str],
    max_results: int | None = None,
) -> NewThreadsCheck:
    """List threads with mail after `since`, minus the ones already known."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    page = await client.list_threads(
        max_results=max_results or settings.new_mail_check_max_results,
        query=f"after:{int(since.timestamp())}",
    )
    threads = page.get("threads") or []
    known = set(known_thread_ids)
    return NewThreadsCheck(
        new_thread_ids=[t["id"] for t in threads if t.get("id") and t["id"] not in known],
        total_found=len(threads),
        has_more=bool(page.get("nextPageToken")),
    )


async def last_email_time(client: GmailClient, address: str) -> LastContact:
    """
    When mail was last exchanged with `address`, and whether it sent it.

    The sender check is a case-insensitive substring match on the From
    address, so display names do not matter.
    """
    page = await client.list_messages(
        max_results=1, query=f"to:{address} OR from:{address}",
    )
    messages = page.get("messages") or []
    if not messages:
        return LastContact(last_email_time=None)

    message = await client.get_message(
        messages[0]["id"], format="metadata", metadata_headers=["From"],
    )
    from_header = header_value(message, "From")
    sender = parseaddr(from_header)[1] or from_header
    internal_date = message.get("internalDate")
    return LastContact(
        last_email_time=(
            datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
            if internal_date else None
        ),
        is_from_customer=address.lower() in sender.lower(),
    )


async def count_emails(client: GmailClient) -> int:
    """Gmail's estimate of the number of messages in the mailbox."""
    page = await with_backoff(
        lambda: client.list_messages(max_results=1),
        max_retries=settings.gmail_max_retries,
        base_delay=settings.gmail_retry_base_delay,
        max_delay=settings.gmail_retry_max_delay,
        retry_on=(GmailApiError,),
    )
    return int(page.get("resultSizeEstimate") or 0)
