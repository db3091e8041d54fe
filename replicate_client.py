"""
Replicate prediction client.

Creates, queries and cancels asynchronous Whisper predictions on Replicate.
Every successful call upserts the returned prediction into the JobStore, so
callers never merge provider state by hand.

Configuration comes from TranscriberConfig (see config_store):
- api_token: Replicate API token (Bearer auth)
- webhook_url: public URL of our /api/webhooks/replicate endpoint
- model: "owner/name:version" identifier of the Whisper model
- create_timeout_seconds / request_timeout_seconds: per-call read timeouts
"""

import os
from typing import Dict, Any, Optional

import requests

from config_store import TranscriberConfig
from errors import ConfigurationError, ProviderError, TransientNetworkError
from job_store import JobStore
from jobs import Job, TranscriptionOptions
from logger import log_event


# Replicate sends a webhook for each of these events
WEBHOOK_EVENTS_FILTER = ['start', 'output', 'logs', 'completed']

_CONNECT_TIMEOUT_SECONDS = 10


def _get_build_commit() -> str:
    """Get build commit for User-Agent header."""
    return os.environ.get('BUILD_COMMIT', 'unknown')


def _get_default_headers(token: str) -> Dict[str, str]:
    """Get default headers for all Replicate requests."""
    return {
        'Authorization': f'Bearer {token}',
        'User-Agent': f'transkipta/{_get_build_commit()}',
        'Accept': 'application/json',
        'Content-Type': 'application/json',
    }


def _format_request_error(e: Exception, response: requests.Response = None) -> str:
    """
    Format request error for logging (without exposing token).

    Includes status code and first 300 chars of body if available.
    """
    if response is not None:
        body_preview = response.text[:300] if response.text else ''
        return f"HTTP {response.status_code}: {body_preview}"
    return str(e)[:300]


def _error_detail(response: requests.Response) -> str:
    """Extract Replicate's `detail` message, falling back to the raw body."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get('detail'):
        return str(data['detail'])[:200]
    return (response.text or response.reason or '')[:200]


def model_version(model: str) -> str:
    """Version id of an "owner/name:version" model identifier."""
    if ':' in model:
        return model.split(':', 1)[1]
    return model


class PredictionClient:
    """Client for Replicate's predictions API."""

    def __init__(self, config: TranscriberConfig, store: JobStore,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.store = store
        self.base_url = config.base_url.rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update(_get_default_headers(config.api_token))

    def is_configured(self) -> bool:
        return not self.config.missing_provider_settings()

    def _require_configured(self) -> None:
        missing = self.config.missing_provider_settings()
        if missing:
            raise ConfigurationError(
                f"Replicate is not configured; missing {', '.join(missing)}"
            )

    def _request(self, method: str, path: str, timeout: float, **kwargs) -> Dict[str, Any]:
        """
        Make an authenticated request and return the decoded JSON body.

        Raises:
            ProviderError: on a non-2xx response
            TransientNetworkError: on timeout or connection failure
        """
        url = f"{self.base_url}{path}"
        kwargs.setdefault('timeout', (_CONNECT_TIMEOUT_SECONDS, timeout))

        try:
            response = self.session.request(method, url, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            log_event('warning', 'replicate_request_failed',
                      method=method, path=path, error=_format_request_error(e))
            raise TransientNetworkError(f"Replicate unreachable during {method} {path}") from e
        except requests.exceptions.RequestException as e:
            log_event('warning', 'replicate_request_failed',
                      method=method, path=path,
                      error=_format_request_error(e, getattr(e, 'response', None)))
            raise TransientNetworkError(str(e)[:200]) from e

        if not 200 <= response.status_code < 300:
            detail = _error_detail(response)
            log_event('error', 'replicate_http_error',
                      method=method, path=path,
                      statusCode=response.status_code, detail=detail)
            raise ProviderError(response.status_code, detail)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(response.status_code, 'Response was not valid JSON') from e
        if not isinstance(data, dict):
            raise ProviderError(response.status_code, 'Response was not a JSON object')
        return data

    def create(self, audio_url: str, options: Optional[TranscriptionOptions] = None) -> Job:
        """
        Create a prediction for audio_url.

        Returns:
            The stored Job (normally in `starting` state)
        """
        self._require_configured()
        options = options or TranscriptionOptions()

        payload = {
            'version': model_version(self.config.model),
            'input': options.to_replicate_input(audio_url),
            'webhook': self.config.webhook_url,
            'webhook_events_filter': WEBHOOK_EVENTS_FILTER,
        }

        prediction = self._request('POST', '/predictions',
                                   timeout=self.config.create_timeout_seconds,
                                   json=payload)
        if not prediction.get('id'):
            raise ProviderError(200, 'Replicate did not return a prediction id')

        job = Job.from_prediction(
            prediction,
            input_ref=audio_url,
            model=self.config.model,
            options=options,
        )
        # The start webhook may already have stored this prediction
        stored = self.store.upsert(job, creating=True)

        log_event('info', 'prediction_created',
                  jobId=stored.id, status=stored.status,
                  model=self.config.model, outputFormat=options.output_format,
                  language=options.language or 'auto')
        return stored

    def get_status(self, job_id: str) -> Job:
        """Fetch the current prediction state and store it."""
        self._require_configured()
        prediction = self._request('GET', f'/predictions/{job_id}',
                                   timeout=self.config.request_timeout_seconds)
        if not prediction.get('id'):
            raise ProviderError(200, 'Replicate did not return a prediction id')
        return self.store.upsert(Job.from_prediction(prediction))

    def cancel(self, job_id: str) -> Job:
        """
        Ask Replicate to cancel a prediction.

        The store only moves to `canceled` once the provider's response says
        so; the job may still finish successfully in the meantime.
        """
        self._require_configured()
        prediction = self._request('POST', f'/predictions/{job_id}/cancel',
                                   timeout=self.config.request_timeout_seconds)
        if not prediction.get('id'):
            prediction = dict(prediction, id=job_id)
        stored = self.store.upsert(Job.from_prediction(prediction))

        log_event('info', 'prediction_cancel_requested',
                  jobId=job_id, providerStatus=prediction.get('status'),
                  storedStatus=stored.status)
        return stored
