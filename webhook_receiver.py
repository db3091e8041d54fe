"""
Inbound Replicate webhook handling.

Order of operations for each delivery:
1. require webhook-id / webhook-timestamp / webhook-signature (400)
2. verify signature and replay window (401)
3. parse the prediction envelope (500 on malformed JSON, nothing stored)
4. upsert with webhookConfirmed=True; backwards transitions are ignored
5. publish JOB_UPDATED and acknowledge with 200
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Union

from config_store import TranscriberConfig
from errors import AuthenticationError, StateConflictError
from events import EventBus, JOB_UPDATED, job_event_payload
from job_store import JobStore
from jobs import Job, ALL_STATUSES
from logger import log_event
from transcript_output import status_label
from webhook_signature import verify


WEBHOOK_ID_HEADER = 'webhook-id'
WEBHOOK_TIMESTAMP_HEADER = 'webhook-timestamp'
WEBHOOK_SIGNATURE_HEADER = 'webhook-signature'


@dataclass
class HandlerResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup for plain dicts and werkzeug Headers."""
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    return (value or '').strip()


class WebhookReceiver:
    """Authenticates Replicate webhooks and applies them to the JobStore."""

    def __init__(self, config: TranscriberConfig, store: JobStore, bus: EventBus):
        self.config = config
        self.store = store
        self.bus = bus

    def _authenticate(self, raw_body: Union[str, bytes], webhook_id: str,
                      webhook_timestamp: str, webhook_signature: str) -> str:
        """Return the body as text, or raise AuthenticationError."""
        if isinstance(raw_body, bytes):
            try:
                raw_body = raw_body.decode('utf-8')
            except UnicodeDecodeError as e:
                raise AuthenticationError('body is not valid UTF-8') from e

        if not self.config.webhook_secret:
            raise AuthenticationError('no signing key configured')

        if not verify(raw_body, webhook_id, webhook_timestamp,
                      webhook_signature, self.config.webhook_secret):
            raise AuthenticationError('signature mismatch or timestamp outside window')
        return raw_body

    def handle(self, raw_body: Union[str, bytes], headers: Mapping[str, str]) -> HandlerResult:
        webhook_id = _header(headers, WEBHOOK_ID_HEADER)
        webhook_timestamp = _header(headers, WEBHOOK_TIMESTAMP_HEADER)
        webhook_signature = _header(headers, WEBHOOK_SIGNATURE_HEADER)

        if not (webhook_id and webhook_timestamp and webhook_signature):
            present = [name for name, value in (
                (WEBHOOK_ID_HEADER, webhook_id),
                (WEBHOOK_TIMESTAMP_HEADER, webhook_timestamp),
                (WEBHOOK_SIGNATURE_HEADER, webhook_signature),
            ) if value]
            log_event('warning', 'webhook_missing_headers', headersPresent=present)
            return HandlerResult(400, {'error': 'Missing webhook headers',
                                       'code': 'WEBHOOK_HEADERS_MISSING'})

        try:
            raw_body = self._authenticate(raw_body, webhook_id,
                                          webhook_timestamp, webhook_signature)
        except AuthenticationError as e:
            log_event('warning', 'webhook_rejected',
                      webhookId=webhook_id,
                      webhookTimestamp=webhook_timestamp,
                      keyConfigured=bool(self.config.webhook_secret),
                      reason=str(e))
            return HandlerResult(401, {'error': 'Invalid webhook', 'code': e.code})

        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict) or not payload.get('id'):
                raise ValueError('payload has no prediction id')
            if payload.get('status') not in ALL_STATUSES:
                raise ValueError(f"unknown status {payload.get('status')!r}")
            candidate = Job.from_prediction(payload)
        except (ValueError, KeyError, TypeError) as e:
            log_event('error', 'webhook_payload_invalid',
                      webhookId=webhook_id, error=str(e)[:200])
            return HandlerResult(500, {'error': 'Could not process webhook',
                                       'code': 'WEBHOOK_PAYLOAD_INVALID'})

        try:
            job = self.store.upsert(candidate, webhook_confirmed=True)
        except StateConflictError as e:
            log_event('warning', 'webhook_stale_update_ignored',
                      jobId=e.job_id, currentStatus=e.current,
                      candidateStatus=e.candidate, webhookId=webhook_id)
            return HandlerResult(200, {
                'success': True,
                'jobId': e.job_id,
                'status': e.current,
                'message': status_label(e.current),
                'ignored': True,
            })
        except (OSError, ValueError) as e:
            log_event('error', 'webhook_store_failed',
                      jobId=candidate.id, webhookId=webhook_id, error=str(e)[:200])
            return HandlerResult(500, {'error': 'Could not process webhook',
                                       'code': 'WEBHOOK_STORE_FAILED'})

        self.bus.publish(JOB_UPDATED, job_event_payload(job))

        log_event('info', 'webhook_processed',
                  jobId=job.id, status=job.status, webhookId=webhook_id)

        return HandlerResult(200, {
            'success': True,
            'jobId': job.id,
            'status': job.status,
            'message': status_label(job.status),
        })
