"""
Tests for structured logging and secret redaction.
"""

import json
import logging

import pytest

from logger import hash_id, log_event, with_timer


def _entries(caplog):
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == 'transkipta']


class TestLogEvent:

    def test_json_line_with_fields(self, caplog):
        with caplog.at_level(logging.INFO, logger='transkipta'):
            log_event('info', 'job_status_changed', jobId='p1', toStatus='succeeded')

        entry = _entries(caplog)[-1]
        assert entry['event'] == 'job_status_changed'
        assert entry['level'] == 'info'
        assert entry['jobId'] == 'p1'

    def test_secrets_are_dropped(self, caplog):
        with caplog.at_level(logging.INFO, logger='transkipta'):
            log_event('warning', 'x', apiToken='r8_abc', webhookSecret='whsec_x',
                      webhookSignature='v1,sig', Authorization='Bearer r8_abc', model='m')

        entry = _entries(caplog)[-1]
        assert entry['model'] == 'm'
        assert 'r8_abc' not in json.dumps(entry)
        assert 'whsec_x' not in json.dumps(entry)
        assert 'v1,sig' not in json.dumps(entry)

    def test_webhook_id_is_hashed(self, caplog):
        with caplog.at_level(logging.INFO, logger='transkipta'):
            log_event('info', 'webhook_processed', webhookId='msg_123')

        entry = _entries(caplog)[-1]
        assert 'webhookId' not in entry
        assert entry['webhookHash'] == hash_id('msg_123')
        assert len(entry['webhookHash']) == 8


class TestTimer:

    def test_finished(self, caplog):
        with caplog.at_level(logging.DEBUG, logger='transkipta'):
            with with_timer('poll_tick', pending=2):
                pass

        events = [e['event'] for e in _entries(caplog)]
        assert events == ['poll_tick_started', 'poll_tick_finished']
        assert _entries(caplog)[-1]['durationMs'] >= 0

    def test_failed_reraises(self, caplog):
        with caplog.at_level(logging.DEBUG, logger='transkipta'):
            with pytest.raises(RuntimeError):
                with with_timer('poll_tick'):
                    raise RuntimeError('boom')

        entry = _entries(caplog)[-1]
        assert entry['event'] == 'poll_tick_failed'
        assert entry['errorType'] == 'RuntimeError'
