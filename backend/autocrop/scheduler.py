# backend/autocrop/scheduler.py
"""Deferred cleanup actions.

Every action is keyed; scheduling under an existing key replaces the pending
action. shutdown() either runs the pending actions right away or drops them.
"""
import logging
import threading
from typing import Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


class CleanupScheduler:
    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, Tuple[threading.Timer, Callable[[], None]]] = {}
        self._closed = False

    def schedule(self, key: str, delay: float, action: Callable[[], None]) -> bool:
        with self._lock:
            if self._closed:
                logger.debug("scheduler closed, not scheduling %s", key)
                return False
            previous = self._pending.pop(key, None)
            if previous:
                previous[0].cancel()
            timer = threading.Timer(max(0.0, delay), self._fire, args=(key,))
            timer.daemon = True
            self._pending[key] = (timer, action)
            timer.start()
        return True

    def cancel(self, key: str) -> bool:
        with self._lock:
            entry = self._pending.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def shutdown(self, flush: bool = False):
        with self._lock:
            self._closed = True
            entries = list(self._pending.items())
            self._pending.clear()
        for key, (timer, action) in entries:
            timer.cancel()
            if flush:
                self._run(key, action)
        logger.info("cleanup scheduler stopped (%d pending, flushed=%s)", len(entries), flush)

    def _fire(self, key: str):
        with self._lock:
            entry = self._pending.get(key)
            # a replaced timer can still fire if it was already running
            if entry is None or entry[0] is not threading.current_thread():
                return
            del self._pending[key]
        self._run(key, entry[1])

    def _run(self, key: str, action: Callable[[], None]):
        try:
            action()
        except Exception:
            logger.warning("cleanup %s failed", key, exc_info=True)
