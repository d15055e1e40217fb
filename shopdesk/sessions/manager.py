"""Session store: keyed, TTL-bounded conversation state.

Concurrency contract:
- At most one lock exists per client id at any time; ``lock(client_id)``
  hands it out so a whole dispatch can run as one critical section for
  that client.  Locks are held weakly: once no caller holds a client's lock
  it is dropped, so the lock table never outgrows the live work.
- Read-modify-write through ``update()`` is atomic per id.  Different ids
  never contend beyond the short store-wide guard used to look up locks.
- A periodic sweep evicts sessions idle longer than ``timeout``.

Persistence is best-effort: when a data-service provider is configured,
``save()`` also writes the session document to the active storage backend,
and a storage failure is logged while the in-memory copy stays
authoritative.  With ``flush_interval=0`` every save writes through at once.
With a positive interval saves only mark the session dirty and a flush task
writes each dirty session once per interval, so a busy client costs one
backend write per interval rather than one per message (the flat-file
backend rewrites its whole document on every write).  ``stop()`` flushes.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from typing import Callable

from shopdesk.sessions.models import Session, create_session
from shopdesk.storage.base import DataService
from shopdesk.timers import PeriodicTask

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

_DEFAULT_TIMEOUT_SECONDS = 2 * 3600
_DEFAULT_SWEEP_INTERVAL_SECONDS = 300
_DEFAULT_FLUSH_INTERVAL_SECONDS = 0.0


class SessionStore:
    """In-memory session store with per-id locking and idle eviction."""

    def __init__(
        self,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        sweep_interval: float = _DEFAULT_SWEEP_INTERVAL_SECONDS,
        data_service: Callable[[], DataService] | None = None,
        flush_interval: float = _DEFAULT_FLUSH_INTERVAL_SECONDS,
    ):
        self.timeout = timeout
        self._sessions: dict[str, Session] = {}
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()
        self._guard = threading.Lock()
        self._data_service = data_service
        self._sweeper = PeriodicTask("session-sweep", sweep_interval, self.cleanup)
        self._dirty: set[str] = set()
        self._flusher = PeriodicTask("session-flush", flush_interval, self.flush) if flush_interval > 0 else None

    # ── Locking ──────────────────────────────────────────────────────────

    def lock(self, client_id: str) -> threading.RLock:
        """The lock serializing all work for ``client_id``."""
        with self._guard:
            lk = self._locks.get(client_id)
            if lk is None:
                lk = threading.RLock()
                self._locks[client_id] = lk
            return lk

    # ── CRUD ─────────────────────────────────────────────────────────────

    def get(self, client_id: str) -> Session | None:
        with self._guard:
            return self._sessions.get(client_id)

    def get_or_create(self, client_id: str) -> tuple[Session, bool]:
        """Return the live session for ``client_id``, creating it if needed."""
        if not client_id:
            raise ValueError("client_id is required")
        with self.lock(client_id):
            with self._guard:
                session = self._sessions.get(client_id)
                if session is not None:
                    return session, False
            session = self._restore(client_id) or create_session(client_id)
            with self._guard:
                self._sessions[client_id] = session
            logger.debug("Session created: %s", client_id[:12])
            return session, True

    def update(self, client_id: str, fn: Callable[[Session], None]) -> Session:
        """Apply ``fn`` to the session atomically and save it."""
        with self.lock(client_id):
            session, _ = self.get_or_create(client_id)
            fn(session)
            self.save(session)
            return session

    def save(self, session: Session) -> None:
        with self._guard:
            self._sessions[session.id] = session
            if self._data_service is not None and self._flusher is not None:
                self._dirty.add(session.id)
                return
        self._write(session)

    def flush(self) -> int:
        """Write every dirty session to storage. Returns how many were written."""
        with self._guard:
            dirty, self._dirty = self._dirty, set()
        written = 0
        for sid in sorted(dirty):
            with self.lock(sid):
                session = self.get(sid)
                if session is None:
                    continue
                ok = self._write(session)
            if ok:
                written += 1
            else:
                with self._guard:
                    self._dirty.add(sid)
        if written:
            logger.debug("Flushed %d sessions to storage", written)
        return written

    def _write(self, session: Session) -> bool:
        if self._data_service is None:
            return False
        with self.lock(session.id):
            try:
                self._data_service().save_session(session.to_dict())
            except Exception:
                logger.warning("Session %s write-through failed", session.id[:12], exc_info=True)
                return False
        return True

    def delete(self, client_id: str) -> bool:
        with self.lock(client_id):
            with self._guard:
                removed = self._sessions.pop(client_id, None)
                self._dirty.discard(client_id)
        if removed is None:
            return False
        if self._data_service is not None:
            try:
                self._data_service().delete_session(client_id)
            except Exception:
                logger.warning("Session %s delete failed in storage", client_id[:12], exc_info=True)
        return True

    def all(self) -> list[Session]:
        with self._guard:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)

    def __contains__(self, client_id: object) -> bool:
        with self._guard:
            return client_id in self._sessions

    # ── Lifecycle ────────────────────────────────────────────────────────

    def cleanup(self, max_age: float | None = None) -> int:
        """Remove sessions idle longer than ``max_age`` (default: timeout)."""
        max_age = self.timeout if max_age is None else max_age
        now = time.time()
        expired = [s.id for s in self.all() if s.idle_for(now) > max_age]
        removed = 0
        for sid in expired:
            if self.delete(sid):
                removed += 1
        if removed:
            logger.info("Cleaned up %d idle sessions (max_age=%.0fs)", removed, max_age)
        return removed

    def start(self) -> None:
        self._sweeper.start()
        if self._flusher is not None:
            self._flusher.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._sweeper.stop(timeout)
        if self._flusher is not None:
            self._flusher.stop(timeout)
        self.flush()

    def _restore(self, client_id: str) -> Session | None:
        if self._data_service is None:
            return None
        try:
            record = self._data_service().get_session(client_id)
        except Exception:
            logger.warning("Session %s restore failed", client_id[:12], exc_info=True)
            return None
        if not record:
            return None
        session = Session.from_dict(record)
        if session.idle_for() > self.timeout:
            return None
        return session
