"""
Tests for Replicate webhook signature verification.
"""

import base64
import hashlib
import hmac

from conftest import TEST_SECRET
from webhook_signature import (
    REPLAY_TOLERANCE_SECONDS,
    compute_signature,
    parse_signature_header,
    sign,
    verify,
)

BODY = '{"id":"abc123","status":"succeeded","output":{"text":"hello"}}'
WEBHOOK_ID = 'msg_2Lh9KRb0pzN4LePd3XiA4ivdqiU'
NOW = 1_700_000_000
TS = str(NOW)


def _expected(body, webhook_id, ts, secret):
    key = base64.b64decode(secret[len('whsec_'):])
    digest = hmac.new(key, f'{webhook_id}.{ts}.{body}'.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class TestComputeSignature:

    def test_matches_hmac_over_id_timestamp_body(self):
        assert compute_signature(BODY, WEBHOOK_ID, TS, TEST_SECRET) == \
            _expected(BODY, WEBHOOK_ID, TS, TEST_SECRET)

    def test_prefix_is_optional(self):
        bare = TEST_SECRET[len('whsec_'):]
        assert compute_signature(BODY, WEBHOOK_ID, TS, bare) == \
            compute_signature(BODY, WEBHOOK_ID, TS, TEST_SECRET)

    def test_bytes_and_text_payloads_agree(self):
        assert compute_signature(BODY.encode('utf-8'), WEBHOOK_ID, TS, TEST_SECRET) == \
            compute_signature(BODY, WEBHOOK_ID, TS, TEST_SECRET)

    def test_sign_uses_v1_prefix(self):
        assert sign(BODY, WEBHOOK_ID, TS, TEST_SECRET).startswith('v1,')


class TestParseHeader:

    def test_multiple_tokens(self):
        assert parse_signature_header('v1,aaa v1,bbb') == ['aaa', 'bbb']

    def test_bare_signature_and_extra_spaces(self):
        assert parse_signature_header('  aaa  v1,bbb ') == ['aaa', 'bbb']

    def test_empty(self):
        assert parse_signature_header('') == []


class TestVerify:

    def _header(self, body=BODY, webhook_id=WEBHOOK_ID, ts=TS):
        return sign(body, webhook_id, ts, TEST_SECRET)

    def test_valid_signature(self):
        assert verify(BODY, WEBHOOK_ID, TS, self._header(), TEST_SECRET, now=NOW)

    def test_tampered_body_rejected(self):
        header = self._header()
        tampered = BODY.replace('hello', 'hellp')
        assert not verify(tampered, WEBHOOK_ID, TS, header, TEST_SECRET, now=NOW)

    def test_tampered_id_rejected(self):
        header = self._header()
        assert not verify(BODY, WEBHOOK_ID[:-1] + 'V', TS, header, TEST_SECRET, now=NOW)

    def test_tampered_timestamp_rejected(self):
        header = self._header()
        assert not verify(BODY, WEBHOOK_ID, str(NOW + 1), header, TEST_SECRET, now=NOW)

    def test_replay_window_edges(self):
        old = str(NOW - REPLAY_TOLERANCE_SECONDS - 1)
        recent = str(NOW - REPLAY_TOLERANCE_SECONDS + 1)
        assert not verify(BODY, WEBHOOK_ID, old, self._header(ts=old), TEST_SECRET, now=NOW)
        assert verify(BODY, WEBHOOK_ID, recent, self._header(ts=recent), TEST_SECRET, now=NOW)

    def test_replay_window_uses_fractional_clock(self):
        header = self._header()
        assert not verify(BODY, WEBHOOK_ID, TS, header, TEST_SECRET,
                          now=NOW + REPLAY_TOLERANCE_SECONDS + 0.9)
        assert verify(BODY, WEBHOOK_ID, TS, header, TEST_SECRET,
                      now=NOW + REPLAY_TOLERANCE_SECONDS - 0.5)

    def test_future_timestamp_outside_window_rejected(self):
        future = str(NOW + REPLAY_TOLERANCE_SECONDS + 1)
        assert not verify(BODY, WEBHOOK_ID, future, self._header(ts=future),
                          TEST_SECRET, now=NOW)

    def test_any_matching_signature_accepted(self):
        header = f'v1,bm90LWEtc2lnbmF0dXJl {self._header()}'
        assert verify(BODY, WEBHOOK_ID, TS, header, TEST_SECRET, now=NOW)

    def test_no_matching_signature_rejected(self):
        header = 'v1,bm90LWEtc2lnbmF0dXJl v1,YW5vdGhlcg=='
        assert not verify(BODY, WEBHOOK_ID, TS, header, TEST_SECRET, now=NOW)

    def test_missing_secret_rejects(self):
        assert not verify(BODY, WEBHOOK_ID, TS, self._header(), '', now=NOW)

    def test_wrong_secret_rejects(self):
        other = 'whsec_' + base64.b64encode(b'another-signing-key-0123').decode()
        assert not verify(BODY, WEBHOOK_ID, TS, self._header(), other, now=NOW)

    def test_malformed_secret_rejects(self):
        assert not verify(BODY, WEBHOOK_ID, TS, self._header(), 'whsec_!!!', now=NOW)

    def test_non_numeric_timestamp_rejects(self):
        assert not verify(BODY, WEBHOOK_ID, 'yesterday', self._header(), TEST_SECRET, now=NOW)
