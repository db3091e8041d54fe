"""
Job and option types for Replicate transcription predictions.

This module provides:
- TranscriptionOptions: explicit, validated Whisper input parameters
- Job: one prediction tracked from creation to a terminal state
- Status helpers for the starting -> processing -> terminal state machine
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any


STARTING = 'starting'
PROCESSING = 'processing'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
CANCELED = 'canceled'

ACTIVE_STATUSES = (STARTING, PROCESSING)
TERMINAL_STATUSES = (SUCCEEDED, FAILED, CANCELED)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

_STATUS_RANK = {
    STARTING: 0,
    PROCESSING: 1,
    SUCCEEDED: 2,
    FAILED: 2,
    CANCELED: 2,
}

OUTPUT_FORMATS = ('plain', 'srt', 'vtt')

# Replicate's openai/whisper `transcription` input
_REPLICATE_TRANSCRIPTION_FORMATS = {
    'plain': 'plain text',
    'srt': 'srt',
    'vtt': 'vtt',
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def is_valid_transition(current: Optional[str], candidate: Optional[str]) -> bool:
    """
    Check whether a job may move from `current` to `candidate`.

    Staying in the same status is always allowed. Terminal statuses never
    change, and non-terminal statuses never move backwards.
    """
    if current is None or candidate is None or current == candidate:
        return True
    if is_terminal(current):
        return False
    if candidate not in _STATUS_RANK:
        return False
    return _STATUS_RANK[candidate] >= _STATUS_RANK.get(current, 0)


@dataclass(frozen=True)
class TranscriptionOptions:
    """
    Whisper parameters sent to Replicate for one prediction.

    Defaults match what the web UI has always sent. Validation happens at
    construction so a bad option never reaches the provider.
    """

    language: Optional[str] = None  # None = auto-detect
    translate: bool = False
    output_format: str = 'plain'  # plain | srt | vtt
    whisper_model: str = 'large-v3'

    # Decoding parameters
    temperature: float = 0.0
    temperature_increment_on_fallback: float = 0.2
    suppress_tokens: str = '-1'
    logprob_threshold: float = -1.0
    no_speech_threshold: float = 0.6
    compression_ratio_threshold: float = 2.4
    condition_on_previous_text: bool = True

    def __post_init__(self):
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"Invalid output format '{self.output_format}'. "
                f"Supported formats: {', '.join(OUTPUT_FORMATS)}"
            )
        if self.language is not None and not str(self.language).strip():
            object.__setattr__(self, 'language', None)
        if not 0.0 <= float(self.temperature) <= 1.0:
            raise ValueError('temperature must be between 0 and 1')
        if not 0.0 <= float(self.no_speech_threshold) <= 1.0:
            raise ValueError('no_speech_threshold must be between 0 and 1')
        if float(self.compression_ratio_threshold) <= 0:
            raise ValueError('compression_ratio_threshold must be positive')

    def to_replicate_input(self, audio_url: str) -> Dict[str, Any]:
        """Build the `input` object of a Replicate prediction request."""
        return {
            'audio': audio_url,
            'model': self.whisper_model,
            'translate': self.translate,
            'language': self.language,
            'temperature': self.temperature,
            'transcription': _REPLICATE_TRANSCRIPTION_FORMATS[self.output_format],
            'suppress_tokens': self.suppress_tokens,
            'logprob_threshold': self.logprob_threshold,
            'no_speech_threshold': self.no_speech_threshold,
            'condition_on_previous_text': self.condition_on_previous_text,
            'compression_ratio_threshold': self.compression_ratio_threshold,
            'temperature_increment_on_fallback': self.temperature_increment_on_fallback,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TranscriptionOptions':
        """Build options from a stored dict, ignoring unknown keys."""
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_request(cls, data: Dict[str, Any]) -> 'TranscriptionOptions':
        """Build options from an API request body (camelCase keys)."""
        translate = data.get('translate', False)
        if translate is None:
            translate = False
        if not isinstance(translate, bool):
            raise ValueError('translate must be a boolean')
        return cls(
            language=data.get('language') or None,
            translate=translate,
            output_format=data.get('outputFormat') or 'plain',
        )


@dataclass
class Job:
    """A Replicate prediction as tracked locally."""

    id: str
    status: str = STARTING
    input_ref: Optional[str] = None
    output: Any = None
    error_detail: Any = None
    logs: Optional[str] = None
    model: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    webhook_confirmed: bool = False
    options: TranscriptionOptions = field(default_factory=TranscriptionOptions)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys used on disk and over HTTP."""
        return {
            'id': self.id,
            'status': self.status,
            'inputRef': self.input_ref,
            'output': self.output,
            'errorDetail': self.error_detail,
            'logs': self.logs,
            'model': self.model,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'webhookConfirmed': self.webhook_confirmed,
            'options': self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        return cls(
            id=data['id'],
            status=data.get('status', STARTING),
            input_ref=data.get('inputRef'),
            output=data.get('output'),
            error_detail=data.get('errorDetail'),
            logs=data.get('logs'),
            model=data.get('model'),
            created_at=data.get('createdAt') or utc_now_iso(),
            updated_at=data.get('updatedAt') or utc_now_iso(),
            webhook_confirmed=bool(data.get('webhookConfirmed', False)),
            options=TranscriptionOptions.from_dict(data.get('options')),
        )

    @classmethod
    def from_prediction(cls, prediction: Dict[str, Any], **extra) -> 'Job':
        """
        Build a job from a Replicate prediction object.

        Used for both API responses and webhook payloads, which share the
        same envelope: {id, status, output?, error?, logs?, input?, created_at?}.
        """
        prediction_input = prediction.get('input') or {}
        job = cls(
            id=prediction['id'],
            status=prediction.get('status', STARTING),
            input_ref=prediction_input.get('audio'),
            output=prediction.get('output'),
            error_detail=prediction.get('error'),
            logs=prediction.get('logs'),
            model=prediction.get('version'),
        )
        return replace(job, **extra) if extra else job

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)
