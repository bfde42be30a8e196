"""
TestMaster AI
Review Workflow — per-item state machine for batch-generated content.

Lifecycle of a GeneratedItem:
    pending ──approve──▶ approved
    pending ──reject───▶ rejected
    pending ──regenerate──▶ regenerating ──(success or failure)──▶ pending

approve / reject / regenerate are only valid from pending. Approved items
are written to storage by the explicit persist_approved() follow-up, at
most once each.

Sessions are held in process memory by ReviewSessionStore and expire after
an idle TTL; they are not shared between worker processes.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from testmaster.ai.records import handler_for, normalize_content
from testmaster.core.exceptions import (
    GenerationError,
    InvalidTransition,
    NotFoundError,
    PersistenceError,
)
from testmaster.models.ai import TASK_FOR_KIND, ItemStatus, RecordKind

logger = logging.getLogger(__name__)


def new_item_id() -> str:
    return uuid.uuid4().hex


@dataclass
class GeneratedItem:
    """Transient generation output awaiting review."""

    kind: RecordKind
    content: dict
    id: str = field(default_factory=new_item_id)
    status: ItemStatus = ItemStatus.PENDING
    feedback: list[str] = field(default_factory=list)
    regeneration_count: int = 0
    last_error: str | None = None
    record_id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def title(self) -> str:
        return self.content.get("title") or self.content.get("status") or self.id

    def to_dict(self, include_content: bool = True) -> dict:
        result = {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "title": self.title,
            "regeneration_count": self.regeneration_count,
            "feedback": list(self.feedback),
            "last_error": self.last_error,
            "record_id": self.record_id,
            "created_at": self.created_at.isoformat(),
        }
        if include_content:
            result["content"] = dict(self.content)
        return result


class ReviewSession:
    """The items of one batch generation plus the context needed to regenerate them."""

    def __init__(self, items: list[GeneratedItem], owner_id: str, kind: RecordKind,
                 plan_id: int | None = None, document: str = "", context: str = "",
                 plan: dict | None = None, model_id: str | None = None):
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.kind = RecordKind(kind)
        self.plan_id = plan_id
        self.document = document
        self.context = context
        self.plan = plan
        # Regeneration reuses the model the batch was produced with
        self.model_id = model_id
        self.items: dict[str, GeneratedItem] = {item.id: item for item in items}
        self.created_at = datetime.now(timezone.utc)
        self.touched = time.monotonic()

    # ── Lookup ────────────────────────────────────────────────────────────

    def get_item(self, item_id: str) -> GeneratedItem:
        item = self.items.get(item_id)
        if item is None:
            raise NotFoundError("GeneratedItem", item_id)
        return item

    def view_details(self, item_id: str) -> dict:
        """Full read of one item; no state change."""
        return self.get_item(item_id).to_dict()

    @staticmethod
    def _require_pending(item: GeneratedItem, action: str):
        if item.status != ItemStatus.PENDING:
            raise InvalidTransition(item.id, item.status.value, action)

    # ── Transitions ───────────────────────────────────────────────────────

    def approve(self, item_id: str) -> GeneratedItem:
        item = self.get_item(item_id)
        self._require_pending(item, "approve")
        item.status = ItemStatus.APPROVED
        logger.info("Review %s: item %s approved", self.id, item_id)
        return item

    def reject(self, item_id: str) -> GeneratedItem:
        item = self.get_item(item_id)
        self._require_pending(item, "reject")
        item.status = ItemStatus.REJECTED
        logger.info("Review %s: item %s rejected", self.id, item_id)
        return item

    def regenerate(self, item_id: str, feedback: str, executor) -> GeneratedItem:
        """
        Replace one item's content with a fresh generation.

        The item is always back in pending when this returns or raises. On
        failure its previous content is kept and the error is re-raised.
        """
        item = self.get_item(item_id)
        self._require_pending(item, "regenerate")
        item.status = ItemStatus.REGENERATING
        try:
            result = executor.execute(
                TASK_FOR_KIND[self.kind].value,
                {
                    "current": item.content,
                    "feedback": feedback or "",
                    "document": self.document,
                    "context": self.context,
                    "plan": self.plan,
                },
                model_id=self.model_id,
                variant="regenerate",
            )
            content = normalize_content(self.kind, result.data)
            if not content.get("title"):
                content["title"] = item.content.get("title", "")
            item.content = content
            item.regeneration_count += 1
            item.last_error = None
            if feedback:
                item.feedback.append(feedback)
            logger.info("Review %s: item %s regenerated (#%d)", self.id, item_id, item.regeneration_count)
        except GenerationError as exc:
            item.last_error = exc.user_message
            logger.warning("Review %s: regeneration of %s failed: %s", self.id, item_id, exc)
            raise
        finally:
            item.status = ItemStatus.PENDING
        return item

    # ── Results ───────────────────────────────────────────────────────────

    def approved_items(self) -> list[GeneratedItem]:
        """Approved items not yet written to storage."""
        return [i for i in self.items.values()
                if i.status == ItemStatus.APPROVED and i.record_id is None]

    def persist_approved(self, storage) -> list:
        """Write every approved, unpersisted item. Returns the created records."""
        handler = handler_for(self.kind)
        records = []
        for item in self.approved_items():
            try:
                record = handler.persist(storage, item.content, self.owner_id, plan_id=self.plan_id)
            except PersistenceError as exc:
                raise PersistenceError(str(exc), generated=item.to_dict()) from exc
            item.record_id = record.id
            records.append(record)
        logger.info("Review %s: %d approved items saved", self.id, len(records))
        return records

    def summary(self) -> dict:
        counts = {status.value: 0 for status in ItemStatus}
        for item in self.items.values():
            counts[item.status.value] += 1
        return {
            "total": len(self.items),
            "counts": counts,
            "unsaved_approved": len(self.approved_items()),
            "complete": counts[ItemStatus.PENDING.value] == 0
                        and counts[ItemStatus.REGENERATING.value] == 0,
        }

    def to_dict(self, include_content: bool = True) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "plan_id": self.plan_id,
            "model_id": self.model_id,
            "created_at": self.created_at.isoformat(),
            "summary": self.summary(),
            "items": [i.to_dict(include_content) for i in self.items.values()],
        }


class ReviewSessionStore:
    """Process-wide map of review sessions with an idle TTL."""

    def __init__(self, ttl_seconds: int = 3600):
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, ReviewSession] = {}
        self._lock = threading.Lock()

    def _expired(self, session: ReviewSession, now: float) -> bool:
        return self.ttl_seconds > 0 and now - session.touched > self.ttl_seconds

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info("Expired %d review sessions", len(stale))
        return len(stale)

    def add(self, session: ReviewSession) -> ReviewSession:
        self.purge_expired()
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, review_id: str, owner_id: str) -> ReviewSession:
        """Return the owner's session or raise NotFoundError (also when expired)."""
        now = time.monotonic()
        with self._lock:
            session = self._sessions.get(review_id)
            if session is not None and self._expired(session, now):
                del self._sessions[review_id]
                session = None
            if session is None or session.owner_id != owner_id:
                raise NotFoundError("ReviewSession", review_id)
            session.touched = now
            return session

    def discard(self, review_id: str, owner_id: str) -> dict:
        """Drop a session; returns its final summary."""
        session = self.get(review_id, owner_id)
        with self._lock:
            self._sessions.pop(review_id, None)
        return session.summary()

    def list_for_owner(self, owner_id: str) -> list[ReviewSession]:
        self.purge_expired()
        with self._lock:
            return [s for s in self._sessions.values() if s.owner_id == owner_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
