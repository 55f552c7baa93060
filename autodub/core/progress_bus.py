"""
In-process publish/subscribe for job progress.

One registry keyed by (job_id, kind). Nothing is buffered: a subscriber
only sees events published after it subscribed.
"""

import logging
import threading
from typing import Callable, Optional

from autodub.core.constants import EventKind, LogLevel
from autodub.core.models_sqlite import LogEntry, ProgressEvent, utc_now

logger = logging.getLogger(__name__)

Handler = Callable[[ProgressEvent], None]


class ProgressBus:
    """Fan-out of ProgressEvents to per-job handlers."""

    def __init__(self):
        self._handlers: dict[tuple[str, str], list[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        job_id: str,
        on_progress: Optional[Handler] = None,
        on_log: Optional[Handler] = None,
        on_complete: Optional[Handler] = None,
        on_error: Optional[Handler] = None,
    ) -> Callable[[], None]:
        """
        Register handlers for one job. Returns a callable that removes
        exactly the handlers registered here.
        """
        wanted = {
            EventKind.PROGRESS: on_progress,
            EventKind.LOG: on_log,
            EventKind.COMPLETE: on_complete,
            EventKind.ERROR: on_error,
        }
        added = [((job_id, kind), fn) for kind, fn in wanted.items() if fn is not None]
        with self._lock:
            for key, fn in added:
                self._handlers.setdefault(key, []).append(fn)

        def unsubscribe():
            with self._lock:
                for key, fn in added:
                    handlers = self._handlers.get(key)
                    if not handlers:
                        continue
                    try:
                        handlers.remove(fn)
                    except ValueError:
                        pass
                    if not handlers:
                        del self._handlers[key]

        return unsubscribe

    def publish(self, event: ProgressEvent):
        with self._lock:
            handlers = list(self._handlers.get((event.job_id, event.kind), ()))
        for fn in handlers:
            try:
                fn(event)
            except Exception as e:
                logger.warning("Progress handler for job %s (%s) raised: %s",
                               event.job_id, event.kind, e, exc_info=True)

    def publish_progress(self, job_id: str, progress: dict):
        self.publish(ProgressEvent(job_id, EventKind.PROGRESS, progress))

    def publish_log(self, job_id: str, entry: LogEntry):
        self.publish(ProgressEvent(job_id, EventKind.LOG, entry))

    def publish_complete(self, job_id: str, result: dict):
        self.publish(ProgressEvent(job_id, EventKind.COMPLETE, result))

    def publish_error(self, job_id: str, error: dict):
        self.publish(ProgressEvent(job_id, EventKind.ERROR, error))

    def unsubscribe_all(self, job_id: str):
        with self._lock:
            for key in [k for k in self._handlers if k[0] == job_id]:
                del self._handlers[key]

    def listener_count(self, job_id: str) -> int:
        with self._lock:
            return sum(len(h) for k, h in self._handlers.items() if k[0] == job_id)

    def has_listeners(self, job_id: str) -> bool:
        return self.listener_count(job_id) > 0


def create_log_entry(stage: str | None, level: str, message: str,
                     metadata: dict | None = None) -> LogEntry:
    if level not in (LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR):
        level = LogLevel.INFO
    return LogEntry(timestamp=utc_now(), level=level, stage=stage,
                    message=message, metadata=metadata)
