"""
Tests for transcript projection, subtitle rendering and usage metrics.
"""

from datetime import datetime, timezone

import pytest

from jobs import Job, TranscriptionOptions
from transcript_output import (
    extract_text,
    format_duration,
    format_elapsed,
    project_job,
    render_transcript,
    status_label,
    to_srt,
    to_vtt,
    transcription_details,
    usage_metrics,
)

SEGMENTS = [
    {'start': 0.0, 'end': 2.5, 'text': ' Hello there.'},
    {'start': 2.5, 'end': 3661.25, 'text': ' General Kenobi.'},
]


class TestExtractText:

    @pytest.mark.parametrize('output,expected', [
        (None, ''),
        ('raw transcript', 'raw transcript'),
        ({'text': 'from text'}, 'from text'),
        ({'transcription': 'from transcription'}, 'from transcription'),
        ({'segments': [{'text': 'a'}, {'text': 'b'}]}, 'a b'),
        ({'segments': [{'text': 'a'}, {'start': 1}]}, 'a '),
        ({'unexpected': True}, ''),
        (42, ''),
    ])
    def test_shapes(self, output, expected):
        assert extract_text(output) == expected

    def test_text_preferred_over_segments(self):
        assert extract_text({'text': 'whole', 'segments': [{'text': 'part'}]}) == 'whole'


class TestDetails:

    def test_details_from_segments(self):
        details = transcription_details({'segments': SEGMENTS, 'detected_language': 'english'})
        assert details.language == 'english'
        assert details.duration == 3661.25
        assert details.word_count == 4
        assert len(details.segments) == 2

    def test_explicit_duration_wins(self):
        assert transcription_details({'text': 'hi', 'duration': 12}).duration == 12.0

    def test_string_output(self):
        details = transcription_details('one two three')
        assert details.word_count == 3
        assert details.segments == []
        assert details.duration is None


class TestLabels:

    def test_known_statuses(self):
        assert status_label('starting') == 'Starting transcription...'
        assert status_label('processing') == 'Transcribing...'
        assert status_label('succeeded') == 'Transcription completed successfully!'
        assert status_label('failed') == 'Transcription failed'
        assert status_label('canceled') == 'Transcription canceled'

    def test_unknown_status_falls_back(self):
        assert status_label('queued') == 'Status: queued'
        assert status_label(None) == 'Status: None'


class TestElapsed:

    @pytest.mark.parametrize('seconds,expected', [
        (0, '0s'),
        (59, '59s'),
        (60, '1m 0s'),
        (125, '2m 5s'),
        (3600, '1h 0m'),
        (3725, '1h 2m'),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_elapsed_until_now(self):
        now = datetime(2026, 1, 1, 0, 1, 30, tzinfo=timezone.utc)
        assert format_elapsed('2026-01-01T00:00:00+00:00', now=now) == '1m 30s'

    def test_elapsed_until_update(self):
        assert format_elapsed('2026-01-01T00:00:00Z', '2026-01-01T00:00:45Z') == '45s'

    def test_unparseable_created_at(self):
        assert format_elapsed('not a date') == ''


class TestSubtitles:

    def test_srt(self):
        assert to_srt(SEGMENTS) == (
            '1\n00:00:00,000 --> 00:00:02,500\nHello there.\n'
            '\n'
            '2\n00:00:02,500 --> 01:01:01,250\nGeneral Kenobi.\n'
        )

    def test_vtt(self):
        vtt = to_vtt(SEGMENTS)
        assert vtt.startswith('WEBVTT\n\n1\n00:00:00.000 --> 00:00:02.500\n')
        assert '01:01:01.250' in vtt

    def test_render_falls_back_to_text_without_segments(self):
        assert render_transcript({'text': 'no timing'}, 'srt') == 'no timing'

    def test_render_plain(self):
        assert render_transcript({'segments': SEGMENTS}, 'plain') == ' Hello there.  General Kenobi.'


class TestProjection:

    def test_succeeded_job_has_text_and_details(self):
        job = Job(id='p1', status='succeeded', output={'text': 'hi there'},
                  created_at='2026-01-01T00:00:00+00:00',
                  updated_at='2026-01-01T00:02:00+00:00',
                  options=TranscriptionOptions(language='en', output_format='srt'))

        view = project_job(job)

        assert view['jobId'] == 'p1'
        assert view['statusLabel'] == 'Transcription completed successfully!'
        assert view['text'] == 'hi there'
        assert view['details']['wordCount'] == 2
        assert view['elapsed'] == '2m 0s'
        assert view['options'] == {'language': 'en', 'translate': False, 'outputFormat': 'srt'}
        assert 'errorDetail' not in view

    def test_failed_job_has_error(self):
        view = project_job(Job(id='p1', status='failed', error_detail='bad audio'))
        assert view['errorDetail'] == 'bad audio'
        assert 'text' not in view

    def test_running_job_elapsed_uses_now(self):
        job = Job(id='p1', status='processing',
                  created_at='2026-01-01T00:00:00+00:00',
                  updated_at='2026-01-01T00:00:05+00:00')
        now = datetime(2026, 1, 1, 0, 0, 20, tzinfo=timezone.utc)
        assert project_job(job, now=now)['elapsed'] == '20s'


class TestMetrics:

    def test_usage_metrics(self):
        jobs = [
            Job(id='a', status='succeeded', output={'text': 'one two', 'duration': 120},
                webhook_confirmed=True),
            Job(id='b', status='succeeded', output={'segments': SEGMENTS[:1]}),
            Job(id='c', status='failed', error_detail='x'),
            Job(id='d', status='processing'),
        ]

        metrics = usage_metrics(jobs, cost_per_minute=0.01)

        assert metrics['totalJobs'] == 4
        assert metrics['byStatus']['succeeded'] == 2
        assert metrics['byStatus']['failed'] == 1
        assert metrics['byStatus']['processing'] == 1
        assert metrics['byStatus']['canceled'] == 0
        assert metrics['webhookConfirmed'] == 1
        assert metrics['totalAudioSeconds'] == 122.5
        assert metrics['totalWords'] == 4
        assert metrics['estimatedCostUsd'] == pytest.approx(122.5 / 60 * 0.01, abs=1e-6)

    def test_empty(self):
        metrics = usage_metrics([])
        assert metrics['totalJobs'] == 0
        assert metrics['estimatedCostUsd'] == 0


class TestRequestOptions:

    def test_translate_accepts_booleans_only(self):
        assert TranscriptionOptions.from_request({'translate': True}).translate is True
        assert TranscriptionOptions.from_request({}).translate is False
        with pytest.raises(ValueError):
            TranscriptionOptions.from_request({'translate': 'false'})
