"""
User-facing projections of transcription jobs.

Replicate's Whisper output arrives in several shapes (a plain string,
{text}, {transcription} or {segments: [...]}). Everything here goes through
extract_text / transcription_details so the rest of the app only ever sees
the normalized TranscriptDetails record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable

from jobs import Job, SUCCEEDED, FAILED, ALL_STATUSES, TERMINAL_STATUSES


STATUS_LABELS = {
    'starting': 'Starting transcription...',
    'processing': 'Transcribing...',
    'succeeded': 'Transcription completed successfully!',
    'failed': 'Transcription failed',
    'canceled': 'Transcription canceled',
}


@dataclass
class TranscriptDetails:
    """Normalized transcript derived from any provider output shape."""

    text: str = ''
    segments: List[Dict[str, Any]] = field(default_factory=list)
    language: Optional[str] = None
    duration: Optional[float] = None
    word_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'segments': self.segments,
            'language': self.language,
            'duration': self.duration,
            'wordCount': self.word_count,
        }


def extract_text(output: Any) -> str:
    """
    Extract transcript text from a provider output payload.

    Handles a raw string, {text}, {transcription} and {segments:[{text}]}
    (joined by a single space; a segment without text contributes "").
    Anything else yields "".
    """
    if output is None:
        return ''
    if isinstance(output, str):
        return output
    if not isinstance(output, dict):
        return ''

    if output.get('text'):
        return str(output['text'])
    if output.get('transcription'):
        return str(output['transcription'])

    segments = output.get('segments')
    if isinstance(segments, list):
        return ' '.join(
            str(segment.get('text') or '') if isinstance(segment, dict) else ''
            for segment in segments
        )
    return ''


def _segments_duration(segments: List[Dict[str, Any]]) -> Optional[float]:
    ends = [s.get('end') for s in segments if isinstance(s.get('end'), (int, float))]
    return float(max(ends)) if ends else None


def transcription_details(output: Any) -> TranscriptDetails:
    """Normalize a provider output into TranscriptDetails."""
    text = extract_text(output)
    details = TranscriptDetails(text=text, word_count=len(text.split()))

    if isinstance(output, dict):
        segments = output.get('segments')
        if isinstance(segments, list):
            details.segments = [s for s in segments if isinstance(s, dict)]
        details.language = output.get('detected_language') or output.get('language')
        duration = output.get('duration')
        if isinstance(duration, (int, float)):
            details.duration = float(duration)
        else:
            details.duration = _segments_duration(details.segments)

    return details


def status_label(status: Optional[str]) -> str:
    """Human-readable label for a job status. Never raises."""
    return STATUS_LABELS.get(status, f"Status: {status}")


# =============================================================================
# Elapsed time
# =============================================================================

def _parse_iso(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    try:
        parsed = datetime.fromisoformat(ts.replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def elapsed_seconds(created_at: Optional[str], updated_at: Optional[str] = None,
                    now: Optional[datetime] = None) -> Optional[int]:
    """Whole seconds between creation and the last update (or now)."""
    start = _parse_iso(created_at)
    if start is None:
        return None
    end = _parse_iso(updated_at) or now or datetime.now(timezone.utc)
    return max(0, int((end - start).total_seconds()))


def format_duration(seconds: int) -> str:
    """Format seconds as Ns, Nm Ms or Nh Mm."""
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def format_elapsed(created_at: Optional[str], updated_at: Optional[str] = None,
                   now: Optional[datetime] = None) -> str:
    seconds = elapsed_seconds(created_at, updated_at, now)
    if seconds is None:
        return ''
    return format_duration(seconds)


# =============================================================================
# Subtitle rendering
# =============================================================================

def _format_timestamp(seconds: float, separator: str) -> str:
    """Convert seconds to HH:MM:SS<sep>mmm."""
    seconds = max(0.0, float(seconds or 0))
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    millis = int(round((seconds - int(seconds)) * 1000))
    if millis == 1000:
        millis = 999
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"


def _cues(segments: List[Dict[str, Any]], separator: str) -> List[str]:
    cues = []
    for index, segment in enumerate(segments, 1):
        start = _format_timestamp(segment.get('start', 0), separator)
        end = _format_timestamp(segment.get('end', 0), separator)
        text = str(segment.get('text') or '').strip()
        cues.append(f"{index}\n{start} --> {end}\n{text}\n")
    return cues


def to_srt(segments: List[Dict[str, Any]]) -> str:
    return '\n'.join(_cues(segments, ','))


def to_vtt(segments: List[Dict[str, Any]]) -> str:
    return 'WEBVTT\n\n' + '\n'.join(_cues(segments, '.'))


def render_transcript(output: Any, output_format: str = 'plain') -> str:
    """
    Render a transcript in the requested format.

    SRT/VTT need timed segments; when the output has none the plain text is
    returned, and when the provider already produced subtitle text (a string
    output or a {transcription} field) that text is returned as is.
    """
    details = transcription_details(output)
    if output_format == 'srt' and details.segments:
        return to_srt(details.segments)
    if output_format == 'vtt' and details.segments:
        return to_vtt(details.segments)
    return details.text


# =============================================================================
# Job views and usage metrics
# =============================================================================

def project_job(job: Job, now: Optional[datetime] = None) -> Dict[str, Any]:
    """User-facing view of a job."""
    terminal = job.status in TERMINAL_STATUSES
    view = {
        'jobId': job.id,
        'status': job.status,
        'statusLabel': status_label(job.status),
        'inputRef': job.input_ref,
        'createdAt': job.created_at,
        'updatedAt': job.updated_at,
        'elapsed': format_elapsed(job.created_at, job.updated_at if terminal else None, now),
        'webhookConfirmed': job.webhook_confirmed,
        'options': {
            'language': job.options.language,
            'translate': job.options.translate,
            'outputFormat': job.options.output_format,
        },
    }

    if job.status == SUCCEEDED:
        details = transcription_details(job.output)
        view['text'] = details.text
        view['details'] = details.to_dict()
    elif job.status == FAILED:
        view['errorDetail'] = job.error_detail

    return view


def usage_metrics(jobs: Iterable[Job], cost_per_minute: float = 0.0023) -> Dict[str, Any]:
    """
    Aggregate usage and estimated cost over jobs.

    Cost is estimated from transcribed audio duration of succeeded jobs.
    """
    by_status = {status: 0 for status in ALL_STATUSES}
    total = 0
    audio_seconds = 0.0
    words = 0
    webhook_confirmed = 0

    for job in jobs:
        total += 1
        by_status[job.status] = by_status.get(job.status, 0) + 1
        if job.webhook_confirmed:
            webhook_confirmed += 1
        if job.status == SUCCEEDED:
            details = transcription_details(job.output)
            audio_seconds += details.duration or 0.0
            words += details.word_count

    return {
        'totalJobs': total,
        'byStatus': by_status,
        'webhookConfirmed': webhook_confirmed,
        'totalAudioSeconds': round(audio_seconds, 2),
        'totalWords': words,
        'estimatedCostUsd': round((audio_seconds / 60.0) * cost_per_minute, 6),
        'costPerMinuteUsd': cost_per_minute,
    }
