"""
Two-step delete confirmation.

Each (user, resource, id) target is either Idle or AwaitingConfirmation:

    Idle ──request()──▶ AwaitingConfirmation(token, expires_at)
    AwaitingConfirmation ──confirm(token)──▶ Idle   (caller performs the delete)
    AwaitingConfirmation ──cancel() / TTL──▶ Idle

A second request() while awaiting returns the same token and does not
extend the deadline. Pending confirmations are kept in process memory.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class PendingDelete:
    token: str
    user_id: str
    resource: str
    resource_id: int
    expires_at: float

    def seconds_left(self, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        return max(0, int(round(self.expires_at - now)))

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "expires_in": self.seconds_left(),
        }


class DeleteConfirmationService:

    def __init__(self, ttl_seconds: int = 120):
        self.ttl_seconds = ttl_seconds
        self._pending: dict[tuple[str, str, int], PendingDelete] = {}
        self._lock = threading.Lock()

    def _live(self, key, now) -> PendingDelete | None:
        pending = self._pending.get(key)
        if pending is not None and pending.expires_at <= now:
            del self._pending[key]
            logger.debug("Delete confirmation for %s #%s expired", key[1], key[2])
            return None
        return pending

    def _purge_expired(self, now):
        stale = [key for key, p in self._pending.items() if p.expires_at <= now]
        for key in stale:
            del self._pending[key]
        if stale:
            logger.debug("Dropped %d expired delete confirmations", len(stale))

    def state(self, user_id: str, resource: str, resource_id: int) -> str:
        with self._lock:
            pending = self._live((user_id, resource, resource_id), time.monotonic())
        return "awaiting_confirmation" if pending else "idle"

    def request(self, user_id: str, resource: str, resource_id: int) -> PendingDelete:
        """Enter AwaitingConfirmation (or return the live request)."""
        key = (user_id, resource, resource_id)
        now = time.monotonic()
        with self._lock:
            pending = self._live(key, now)
            self._purge_expired(now)
            if pending is None:
                pending = PendingDelete(
                    token=secrets.token_urlsafe(16),
                    user_id=user_id,
                    resource=resource,
                    resource_id=resource_id,
                    expires_at=now + self.ttl_seconds,
                )
                self._pending[key] = pending
                logger.info("Delete of %s #%s awaiting confirmation by %s", resource, resource_id, user_id)
            return pending

    def confirm(self, user_id: str, resource: str, resource_id: int, token: str) -> bool:
        """Consume a matching live token. False when idle, expired or mismatched."""
        key = (user_id, resource, resource_id)
        with self._lock:
            pending = self._live(key, time.monotonic())
            if pending is None or not secrets.compare_digest(pending.token, token or ""):
                return False
            del self._pending[key]
        return True

    def cancel(self, user_id: str, token: str) -> bool:
        """Back to Idle for whichever target the token belongs to."""
        with self._lock:
            for key, pending in list(self._pending.items()):
                if key[0] == user_id and secrets.compare_digest(pending.token, token or ""):
                    del self._pending[key]
                    logger.info("Delete of %s #%s cancelled by %s", key[1], key[2], user_id)
                    return True
        return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
