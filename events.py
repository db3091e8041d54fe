"""
In-process publish/subscribe channel for job updates.

The webhook receiver and the reconciliation poller both publish here, so any
presentation layer reacts the same way regardless of which path resolved a job.
"""

import threading
from typing import Any, Callable, Dict, List

from logger import log_event

JOB_UPDATED = 'transcription.updated'

Handler = Callable[[Dict[str, Any]], None]


def job_event_payload(job) -> Dict[str, Any]:
    """Payload published on JOB_UPDATED."""
    return {
        'jobId': job.id,
        'status': job.status,
        'output': job.output,
        'error': job.error_detail,
    }


class EventBus:
    """Topic-based event bus with multiple subscribers per topic."""

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for a topic.

        Returns:
            A callable that removes the subscription
        """
        with self._lock:
            self._subscribers.setdefault(topic, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._subscribers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """
        Deliver payload to every subscriber of topic.

        A failing subscriber is logged and skipped; it never affects the
        publisher or the other subscribers.

        Returns:
            Number of handlers that ran without error
        """
        with self._lock:
            handlers = list(self._subscribers.get(topic, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                log_event('error', 'event_handler_failed',
                          topic=topic, jobId=payload.get('jobId'), error=str(e)[:200])
        return delivered
