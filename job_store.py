"""
Durable job store for transcription predictions.

Each job lives in its own JSON file under <root>/jobs/<id>.json so that every
write is atomic per key. All mutations go through JobStore.upsert, which
serializes writers per job id and enforces the status state machine no matter
whether the update came from a webhook, the poller or a cancel request.
"""

import os
import re
import json
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from errors import StateConflictError
from jobs import Job, SUCCEEDED, FAILED, is_valid_transition, is_terminal, utc_now_iso
from logger import log_event


_SAFE_JOB_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,128}$')


def data_root() -> str:
    """Get the data root directory from environment. Default: '/data'."""
    return os.environ.get('DATA_ROOT', '/data')


# =============================================================================
# File Operations
# =============================================================================

def atomic_write_json(path: str, obj: Any) -> None:
    """
    Write JSON atomically using temp file + rename.
    This prevents partial reads during concurrent access.
    """
    dir_path = os.path.dirname(path)
    os.makedirs(dir_path, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=dir_path, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(obj, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: str) -> Optional[Dict[str, Any]]:
    """Read JSON file, return None if not found or invalid."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        return None


def _parse_iso(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    try:
        parsed = datetime.fromisoformat(ts.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _comparable(job: Job) -> Dict[str, Any]:
    data = job.to_dict()
    data.pop('updatedAt', None)
    return data


class JobStore:
    """Key-value store of Job records, one JSON file per job id."""

    def __init__(self, root_dir: Optional[str] = None, retention: Optional[timedelta] = None):
        self.root_dir = root_dir or data_root()
        self.jobs_dir = os.path.join(self.root_dir, 'jobs')
        os.makedirs(self.jobs_dir, exist_ok=True)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        # Opportunistic sweep on load
        if retention is not None:
            self.prune(retention)

    # -------------------------------------------------------------------------
    # Paths and locks
    # -------------------------------------------------------------------------

    def _path(self, job_id: str) -> str:
        if not job_id or not _SAFE_JOB_ID_PATTERN.match(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return os.path.join(self.jobs_dir, f'{job_id}.json')

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[job_id] = lock
            return lock

    def _read(self, job_id: str) -> Optional[Job]:
        data = read_json(self._path(job_id))
        if not data or 'id' not in data:
            return None
        return Job.from_dict(data)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        """Get a job by id, or None if it is unknown."""
        return self._read(job_id)

    def list(self) -> List[Job]:
        """List all jobs, most recently created first."""
        jobs = []
        for filename in os.listdir(self.jobs_dir):
            if not filename.endswith('.json'):
                continue
            data = read_json(os.path.join(self.jobs_dir, filename))
            if data and 'id' in data:
                jobs.append(Job.from_dict(data))

        jobs.sort(key=lambda j: j.created_at or '', reverse=True)
        return jobs

    def pending(self, unconfirmed_only: bool = True) -> List[Job]:
        """Jobs still starting/processing, optionally only those no webhook has confirmed."""
        return [
            job for job in self.list()
            if not is_terminal(job.status)
            and not (unconfirmed_only and job.webhook_confirmed)
        ]

    def upsert(self, candidate: Job, webhook_confirmed: bool = False,
               creating: bool = False) -> Job:
        """
        Merge `candidate` into the stored record for the same id.

        Rules:
        - createdAt, inputRef, model and options keep their first value
        - webhookConfirmed only ever goes from False to True
        - output is kept only while succeeded, errorDetail only while failed
        - a merge that changes nothing is not written (updatedAt unchanged)

        With creating=True the candidate is the create response: its options,
        inputRef and model replace whatever a webhook that arrived first
        recorded, and a stored status that is already ahead is kept instead
        of raising.

        Raises:
            StateConflictError: if the candidate status would move the job
                backwards or out of a terminal state. Nothing is written.
        """
        path = self._path(candidate.id)

        with self._lock_for(candidate.id):
            existing = self._read(candidate.id)

            if existing is None:
                merged = replace(
                    candidate,
                    webhook_confirmed=candidate.webhook_confirmed or webhook_confirmed,
                )
            elif not is_valid_transition(existing.status, candidate.status):
                if not creating:
                    raise StateConflictError(candidate.id, existing.status, candidate.status)
                merged = existing
            else:
                merged = replace(
                    existing,
                    status=candidate.status or existing.status,
                    output=candidate.output if candidate.output is not None else existing.output,
                    error_detail=(candidate.error_detail if candidate.error_detail is not None
                                  else existing.error_detail),
                    logs=candidate.logs if candidate.logs is not None else existing.logs,
                    input_ref=existing.input_ref or candidate.input_ref,
                    model=existing.model or candidate.model,
                    webhook_confirmed=(existing.webhook_confirmed
                                       or candidate.webhook_confirmed
                                       or webhook_confirmed),
                )

            if creating and existing is not None:
                merged = replace(
                    merged,
                    options=candidate.options,
                    input_ref=candidate.input_ref or merged.input_ref,
                    model=candidate.model or merged.model,
                )

            if merged.status != SUCCEEDED:
                merged = replace(merged, output=None)
            if merged.status != FAILED:
                merged = replace(merged, error_detail=None)

            if existing is not None and _comparable(merged) == _comparable(existing):
                return existing

            merged = replace(merged, updated_at=utc_now_iso())
            atomic_write_json(path, merged.to_dict())

        if existing is None or existing.status != merged.status:
            log_event('info', 'job_status_changed',
                      jobId=merged.id,
                      fromStatus=existing.status if existing else None,
                      toStatus=merged.status,
                      webhookConfirmed=merged.webhook_confirmed)
        return merged

    def remove(self, job_id: str) -> bool:
        """Delete a job. Returns False if it did not exist."""
        path = self._path(job_id)
        with self._lock_for(job_id):
            if not os.path.exists(path):
                return False
            # The lock entry stays: a writer may already be waiting on it
            os.unlink(path)

        log_event('info', 'job_removed', jobId=job_id)
        return True

    def prune(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete terminal jobs created before now - older_than.

        Returns:
            Number of jobs deleted
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - older_than
        deleted = 0

        for job in self.list():
            if not is_terminal(job.status):
                continue
            created = _parse_iso(job.created_at)
            if created is not None and created < cutoff:
                if self.remove(job.id):
                    deleted += 1

        if deleted:
            log_event('info', 'jobs_pruned', deleted=deleted,
                      retentionDays=older_than.days)
        return deleted
