"""
Error taxonomy for the transcription job lifecycle.
"""

from typing import Optional


class TranscriberError(Exception):
    """Base class for every error raised by transkipta."""

    code = 'TRANSCRIBER_ERROR'


class ConfigurationError(TranscriberError):
    """A required token, URL or model identifier is missing."""

    code = 'CONFIGURATION_ERROR'


class AuthenticationError(TranscriberError):
    """An inbound webhook could not be authenticated."""

    code = 'WEBHOOK_UNAUTHORIZED'


class ProviderError(TranscriberError):
    """The provider answered with a non-2xx status."""

    code = 'PROVIDER_ERROR'

    def __init__(self, http_status: int, detail: str = ''):
        self.http_status = http_status
        self.detail = (detail or '')[:200]
        super().__init__(f"Provider returned HTTP {http_status}: {self.detail}")


class TransientNetworkError(TranscriberError):
    """Timeout or connection failure; retried on the next poll tick."""

    code = 'PROVIDER_UNREACHABLE'


class StateConflictError(TranscriberError):
    """An update would move a job backwards through its state machine."""

    code = 'STATE_CONFLICT'

    def __init__(self, job_id: str, current: str, candidate: Optional[str]):
        self.job_id = job_id
        self.current = current
        self.candidate = candidate
        super().__init__(f"Job {job_id}: refusing transition {current} -> {candidate}")
