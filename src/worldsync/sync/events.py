"""Sync event delivery: in-process subscribers plus an append-only journal."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from worldsync.core.fileio import append_jsonl, read_jsonl
from worldsync.sync.models import SyncEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[SyncEvent], None]


class EventBus:
    """
    Deliver SyncEvents to subscribers and, when configured, to a JSONL journal.

    A failing subscriber is logged and skipped; it never affects the
    operation that emitted the event.
    """

    def __init__(self, journal_path: Path | None = None) -> None:
        self.journal_path = journal_path
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: SyncEvent) -> None:
        logger.debug("Event %s (%s)", event.kind.value, event.session_key)
        if self.journal_path is not None:
            try:
                append_jsonl(self.journal_path, event.to_dict())
            except OSError as exc:
                logger.warning("Could not append event to %s: %s", self.journal_path, exc)

        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.kind.value)

    def read_journal(self, limit: int | None = None) -> list[SyncEvent]:
        """Journal entries oldest first; unparsable entries are skipped."""
        if self.journal_path is None:
            return []
        events: list[SyncEvent] = []
        for record in read_jsonl(self.journal_path):
            try:
                events.append(SyncEvent.from_dict(record))
            except (KeyError, ValueError):
                continue
        if limit is not None:
            events = events[-limit:]
        return events


__all__ = ["EventBus", "Subscriber"]
