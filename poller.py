"""
Reconciliation poller.

Webhook delivery is not guaranteed, so every `interval` seconds the poller
asks Replicate for the state of each job that is still starting/processing
and has not been confirmed by a webhook. Results go through the same
JobStore.upsert as webhooks, without setting webhookConfirmed.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Any, Optional

from errors import (
    ConfigurationError,
    ProviderError,
    StateConflictError,
    TranscriberError,
    TransientNetworkError,
)
from events import EventBus, JOB_UPDATED, job_event_payload
from job_store import JobStore
from jobs import Job
from logger import log_event, with_timer
from replicate_client import PredictionClient


class ReconciliationPoller:
    """Periodically refreshes unconfirmed jobs from the provider."""

    def __init__(self, client: PredictionClient, store: JobStore, bus: EventBus,
                 interval: float = 10, max_workers: int = 4):
        self.client = client
        self.store = store
        self.bus = bus
        self.interval = interval
        self.max_workers = max(1, max_workers)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Single tick
    # -------------------------------------------------------------------------

    def _refresh(self, job: Job) -> str:
        """Refresh one job. Returns an outcome name."""
        try:
            updated = self.client.get_status(job.id)
        except StateConflictError as e:
            log_event('info', 'poll_stale_result_ignored',
                      jobId=job.id, currentStatus=e.current, candidateStatus=e.candidate)
            return 'conflict'
        except TransientNetworkError as e:
            log_event('warning', 'poll_transient_error', jobId=job.id, error=str(e)[:200])
            return 'transient'
        except ProviderError as e:
            log_event('error', 'poll_provider_error',
                      jobId=job.id, statusCode=e.http_status, detail=e.detail)
            return 'error'
        except ConfigurationError as e:
            log_event('error', 'poll_not_configured', jobId=job.id, error=str(e))
            return 'error'
        except (TranscriberError, OSError, ValueError) as e:
            log_event('error', 'poll_failed', jobId=job.id, error=str(e)[:200])
            return 'error'

        if updated.status != job.status:
            self.bus.publish(JOB_UPDATED, job_event_payload(updated))
            return 'updated'
        return 'unchanged'

    def tick(self) -> Dict[str, Any]:
        """
        Run one reconciliation pass.

        Returns:
            Dict with counts per outcome ('checked', 'updated', 'unchanged',
            'conflict', 'transient', 'error')
        """
        summary = {'checked': 0, 'updated': 0, 'unchanged': 0,
                   'conflict': 0, 'transient': 0, 'error': 0}

        # Overlapping ticks would only duplicate provider calls
        if not self._tick_lock.acquire(blocking=False):
            log_event('debug', 'poll_tick_skipped', reason='previous tick still running')
            return summary

        try:
            pending = self.store.pending(unconfirmed_only=True)
            summary['checked'] = len(pending)
            if not pending:
                return summary

            with with_timer('poll_tick', pending=len(pending)):
                workers = min(self.max_workers, len(pending))
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    for outcome in executor.map(self._refresh, pending):
                        summary[outcome] += 1
        finally:
            self._tick_lock.release()

        log_event('info', 'poll_tick_summary', **summary)
        return summary

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                # Keep the loop alive; the next tick retries
                log_event('error', 'poll_tick_crashed', error=str(e)[:200])

    def start(self) -> None:
        """Start ticking every `interval` seconds on a daemon thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='reconciliation-poller',
                                        daemon=True)
        self._thread.start()
        log_event('info', 'poller_started', intervalSeconds=self.interval,
                  maxWorkers=self.max_workers)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the background loop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            log_event('info', 'poller_stopped')

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
