"""Discord REST API client wrapper"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from forumsync.errors import RemoteAPIError

logger = logging.getLogger(__name__)

# Discord rejects message content longer than this.
MAX_MESSAGE_LENGTH = 2000


@dataclass
class ChatAttachment:
    url: str
    filename: str


@dataclass
class ChatMessage:
    id: str
    content: str
    attachments: List[ChatAttachment] = field(default_factory=list)


@dataclass
class ChatThread:
    """A forum thread as seen by the sync engine."""

    id: str
    parent_id: Optional[str]
    name: str
    applied_tags: List[str] = field(default_factory=list)

    @property
    def order_key(self) -> int:
        # Snowflakes increase monotonically with creation time.
        return int(self.id)


def truncate_message(content: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(content) <= limit:
        return content
    return content[: limit - 1] + "…"


class DiscordClient:
    """Wrapper for Discord REST operations used by the sync engine"""

    def __init__(
        self,
        token: str,
        api_url: str = "https://discord.com/api/v10",
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Authorization": f"Bot {token}"}
        self._session = session
        if session is not None:
            session.headers.update(self._headers)
        # The gateway workers and the poll job call in from different threads.
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self._headers)
            self._local.session = session
        return session

    def _request(
        self, method: str, path: str, *, max_attempts: int = 3, idempotent: bool = True, **kwargs
    ) -> requests.Response:
        """Send a request, retrying on rate limits and transient failures.

        Non-idempotent requests are only replayed when Discord cannot have acted
        on them: a 429, or a connect timeout before anything was sent.
        """
        url = f"{self.api_url}{path}"
        attempt = 1
        while True:
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                replayable = idempotent or isinstance(e, requests.ConnectTimeout)
                if attempt >= max_attempts or not replayable:
                    raise RemoteAPIError("Discord", f"{method} {path}: {e}") from e
                time.sleep(0.5 * (2 ** (attempt - 1)))
                attempt += 1
                continue

            if response.status_code == 429 and attempt < max_attempts:
                retry_after = 1.0
                try:
                    retry_after = float(response.json().get("retry_after", retry_after))
                except ValueError:
                    pass
                logger.warning(f"Discord rate limited on {method} {path}; retrying in {retry_after}s")
                time.sleep(retry_after)
                attempt += 1
                continue
            if idempotent and response.status_code in (500, 502, 503, 504) and attempt < max_attempts:
                time.sleep(0.5 * (2 ** (attempt - 1)))
                attempt += 1
                continue
            return response

    @staticmethod
    def _raise_for_status(response: requests.Response, what: str):
        if response.status_code >= 400:
            raise RemoteAPIError("Discord", f"{what}: {response.text[:500]}", status_code=response.status_code)

    def get_first_message(self, thread_id: Any) -> Optional[ChatMessage]:
        """Get a forum thread's starter message, or None if it is not available yet.

        The starter message of a forum post shares the thread's snowflake.
        """
        response = self._request("GET", f"/channels/{thread_id}/messages/{thread_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"fetch starter message of thread {thread_id}")
        data = response.json()
        return ChatMessage(
            id=str(data.get("id", thread_id)),
            content=data.get("content") or "",
            attachments=[
                ChatAttachment(url=a["url"], filename=a.get("filename") or "attachment")
                for a in data.get("attachments") or []
                if a.get("url")
            ],
        )

    def create_message(self, channel_id: Any, content: str) -> str:
        """Post a message into a channel or thread; returns the message id"""
        response = self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            json={"content": truncate_message(content), "allowed_mentions": {"parse": []}},
            idempotent=False,
        )
        self._raise_for_status(response, f"post message to {channel_id}")
        message_id = str(response.json()["id"])
        logger.debug(f"Posted message {message_id} to channel {channel_id}")
        return message_id

    def get_active_threads(self, guild_id: Any) -> List[ChatThread]:
        """List all active (non-archived) threads in a guild"""
        response = self._request("GET", f"/guilds/{guild_id}/threads/active")
        self._raise_for_status(response, f"list active threads in guild {guild_id}")
        threads: List[ChatThread] = []
        for t in response.json().get("threads") or []:
            parent_id = t.get("parent_id")
            threads.append(
                ChatThread(
                    id=str(t["id"]),
                    parent_id=str(parent_id) if parent_id is not None else None,
                    name=t.get("name") or "",
                    applied_tags=[str(tag) for tag in t.get("applied_tags") or []],
                )
            )
        return threads
