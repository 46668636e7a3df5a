# workshop/feed.py
"""Live activity for one job card: comments plus remote job updates.

``PushChannel`` fans events out to subscribers by topic.  The underlying
transport is connected when the first subscriber arrives and disconnected
when the last one leaves, so several feeds in one process share it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from workshop.api.client import ApiError, AuthError
from workshop.engine import Notice, ref_id
from workshop.optimistic import run_optimistic

COMMENT_ADDED = "commentAdded"
JOB_UPDATED = "jobUpdated"


class LocalTransport:
    """In-process transport; events only come from ``PushChannel.publish``."""

    def __init__(self) -> None:
        self.connected = False
        self.connects = 0

    def connect(self, deliver: Callable[[str, Any], None]) -> None:
        self.connected = True
        self.connects += 1

    def disconnect(self) -> None:
        self.connected = False


class PushChannel:
    def __init__(self, transport=None) -> None:
        self.transport = transport or LocalTransport()
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._subscribers.values())

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``callback`` for ``topic``; returns the unsubscribe function."""
        with self._lock:
            if not any(self._subscribers.values()):
                logging.info("push channel connecting")
                self.transport.connect(self.publish)
            self._subscribers.setdefault(topic, []).append(callback)

        done = []

        def unsubscribe() -> None:
            with self._lock:
                if done:
                    return
                done.append(True)
                callbacks = self._subscribers.get(topic, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(topic, None)
                if not any(self._subscribers.values()):
                    logging.info("push channel disconnecting")
                    self.transport.disconnect()

        return unsubscribe

    def publish(self, topic: str, payload: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(topic, []))
        for callback in callbacks:
            callback(payload)


@dataclass
class Attachment:
    url: str
    name: str = ""
    type: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Attachment":
        return cls(
            url=str(raw.get("url") or ""),
            name=str(raw.get("name") or raw.get("filename") or ""),
            type=str(raw.get("type") or raw.get("mimeType") or ""),
        )

    @property
    def kind(self) -> str:
        return "image" if self.type.lower().startswith("image/") else "file"

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "name": self.name, "type": self.type, "kind": self.kind}


@dataclass
class FeedEntry:
    id: str
    text: str = ""
    author: str = ""
    role: str = ""
    created_at: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    pending: bool = False

    @classmethod
    def from_comment(cls, raw: Mapping[str, Any]) -> "FeedEntry":
        author = raw.get("author") or raw.get("user") or raw.get("authorName") or ""
        if isinstance(author, Mapping):
            author = author.get("name") or author.get("email") or ""
        return cls(
            id=ref_id(raw),
            text=str(raw.get("text") or raw.get("content") or ""),
            author=str(author),
            role=str(raw.get("role") or ""),
            created_at=raw.get("createdAt"),
            attachments=[Attachment.from_dict(a) for a in raw.get("attachments") or []
                         if isinstance(a, Mapping)],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "role": self.role,
            "createdAt": self.created_at,
            "attachments": [a.to_dict() for a in self.attachments],
            "pending": self.pending,
        }


def _initials(name: str) -> str:
    return "".join(part[0] for part in name.split() if part)[:2].upper()


class ActivityFeed:
    """Comments for one job, de-duplicated by comment id."""

    def __init__(
        self,
        job_id: str,
        comments,
        channel: PushChannel,
        on_job_updated: Optional[Callable[[Mapping[str, Any]], None]] = None,
        author: str = "",
        role: str = "",
        login_url: str = "/login",
        redirect_delay: float = 2.0,
    ) -> None:
        self.job_id = job_id
        self.comments = comments
        self.channel = channel
        self.on_job_updated = on_job_updated
        self.author = author
        self.role = role
        self.login_url = login_url
        self.redirect_delay = redirect_delay
        self.entries: List[FeedEntry] = []
        self.notices: List[Notice] = []
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def ids(self) -> set:
        return {e.id for e in self.entries}

    def _matches(self, payload: Any) -> bool:
        return isinstance(payload, Mapping) and ref_id(payload.get("job")) == self.job_id

    def open(self) -> bool:
        """Subscribe, then merge the stored comments in front of anything pushed meanwhile."""
        if not self.job_id:
            return False
        if not self._unsubscribers:
            self._unsubscribers = [
                self.channel.subscribe(COMMENT_ADDED, self._on_comment),
                self.channel.subscribe(JOB_UPDATED, self._on_job_updated),
            ]
        try:
            fetched = [FeedEntry.from_comment(c) for c in self.comments.list_by_job(self.job_id)]
        except ApiError as e:
            self._report(e, "Failed to load comments")
            return False

        merged, seen = [], set()
        for entry in fetched + self.entries:
            if entry.id and entry.id not in seen:
                seen.add(entry.id)
                merged.append(entry)
        self.entries = merged
        return True

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_comment(self, payload: Any) -> None:
        if not self._matches(payload):
            return
        entry = FeedEntry.from_comment(payload)
        if entry.id and entry.id not in self.ids:
            self.entries.append(entry)

    def _on_job_updated(self, payload: Any) -> None:
        if self._matches(payload) and self.on_job_updated:
            job = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload.get("job")
            if isinstance(job, Mapping):
                self.on_job_updated(job)
            else:
                self.on_job_updated({"_id": self.job_id, **{k: v for k, v in payload.items() if k != "job"}})

    def add_comment(self, text: str, attachments=None) -> bool:
        """Show the comment at once; drop it again if the store refuses it."""
        if not self.job_id:
            return self._reject("Cannot add comment to a new job. Please save the job first.")
        text = (text or "").strip()
        attachments = [a if isinstance(a, Attachment) else Attachment.from_dict(a)
                       for a in attachments or []]
        if not text:
            return self._reject("Comment cannot be empty")

        pending = FeedEntry(id=f"local-{uuid.uuid4().hex}", text=text, author=self.author,
                            role=self.role, attachments=attachments, pending=True)

        def snapshot():
            return list(self.entries)

        def restore(saved):
            self.entries = saved

        def apply():
            self.entries.append(pending)

        def remote():
            return self.comments.create({
                "job": self.job_id,
                "text": text,
                "author": self.author,
                "authorInitials": _initials(self.author),
                "role": self.role,
                "attachments": [a.to_dict() for a in attachments],
            })

        ok, result = run_optimistic(snapshot, restore, apply, remote)
        if not ok:
            self._report(result, "Failed to add comment")
            return False

        server_id = ref_id(result) if isinstance(result, Mapping) else ""
        if server_id and any(e.id == server_id for e in self.entries if e is not pending):
            # the push event got here first
            self.entries = [e for e in self.entries if e is not pending]
        else:
            pending.id = server_id or pending.id
            pending.pending = False
            if isinstance(result, Mapping) and result.get("createdAt"):
                pending.created_at = result["createdAt"]
        return True

    def _reject(self, message: str) -> bool:
        self.notices.append(Notice("error", message))
        return False

    def _report(self, error: ApiError, fallback: str) -> None:
        logging.error("%s: %s", fallback, error)
        if isinstance(error, AuthError):
            self.notices.append(Notice("error", str(error), redirect=self.login_url, delay=self.redirect_delay))
        else:
            self.notices.append(Notice("error", str(error) or fallback))
