"""
Billing-key deduplication.

The same API call shows up once per conversation branch that contains it, so
naive summing overcounts. Each Event gets a prefixed billing key:

  message id + request id  -> "req:<M>:<R>"
  message id + session id  -> "session:<M>:<S>"
  anything else            -> None (non-dedupable, always emitted)

The first occurrence of a key in discovery order wins.
"""

from typing import Iterable, Iterator, List, Optional, Protocol, Set

from ccost.transcripts import Event


class SeenStore(Protocol):
    def is_seen(self, key: str) -> bool: ...

    def mark_seen(self, key: str, project: str, session_id: Optional[str]) -> None: ...


def _present(value: Optional[str]) -> bool:
    return bool(value)


def billing_key(message_id: Optional[str], request_id: Optional[str], session_id: Optional[str]) -> Optional[str]:
    if not _present(message_id):
        return None
    if _present(request_id):
        return f"req:{message_id}:{request_id}"
    if _present(session_id):
        return f"session:{message_id}:{session_id}"
    return None


def event_billing_key(ev: Event) -> Optional[str]:
    return billing_key(ev.message_id, ev.request_id, ev.session_id)


class Deduplicator:
    """Stateful first-occurrence filter over Events.

    With a store (e.g. the SQLite database) keys already marked seen in a
    previous run are also dropped. Store failures never drop an event; they
    are counted in store_errors and kept in store_warnings.
    """

    def __init__(self, store: Optional[SeenStore] = None):
        self.store = store
        self._seen: Set[str] = set()
        self.duplicates = 0
        self.missing_ids = 0
        self.emitted = 0
        self.store_errors = 0
        self.store_warnings: List[str] = []

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def accept(self, ev: Event) -> bool:
        """Return True when ev should be folded, recording its key."""
        key = event_billing_key(ev)
        if key is None:
            self.missing_ids += 1
            self.emitted += 1
            return True
        if key in self._seen or self._store_has(key):
            self.duplicates += 1
            return False
        self._seen.add(key)
        self._store_mark(key, ev)
        self.emitted += 1
        return True

    def filter(self, events: Iterable[Event]) -> Iterator[Event]:
        for ev in events:
            if self.accept(ev):
                yield ev

    def reset(self) -> None:
        self._seen.clear()
        self.duplicates = 0
        self.missing_ids = 0
        self.emitted = 0
        self.store_errors = 0
        self.store_warnings = []

    def _store_has(self, key: str) -> bool:
        if self.store is None:
            return False
        try:
            return self.store.is_seen(key)
        except Exception as e:
            self._store_failed(e)
            return False

    def _store_mark(self, key: str, ev: Event) -> None:
        if self.store is None:
            return
        try:
            self.store.mark_seen(key, ev.project, ev.session_id)
        except Exception as e:
            self._store_failed(e)

    def _store_failed(self, e: Exception) -> None:
        self.store_errors += 1
        self.store_warnings.append(f"Failed to record processed message: {e}")
