"""
Shared fixtures: temp-dir job store, config and a fake HTTP session.
No test touches the network.
"""

import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_store import TranscriberConfig  # noqa: E402
from events import EventBus  # noqa: E402
from job_store import JobStore  # noqa: E402

TEST_SECRET = 'whsec_MfKQ9r8GKYqrTwjUPD8ILPZIo2LaLaSw'
TEST_MODEL = 'openai/whisper:8099696689d249cf8b122d833c36ac3f75505c666a395ca40ef26f68e7d3d16e'


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, reason='OK'):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ''
        self.text = text
        self.reason = reason

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON object could be decoded')
        return self._payload


class FakeSession:
    """
    Stand-in for requests.Session.

    `routes` maps (METHOD, path suffix) to a FakeResponse, an exception
    instance, or a callable returning either.
    """

    def __init__(self, routes=None):
        self.headers = {}
        self.routes = dict(routes or {})
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({'method': method, 'url': url, **kwargs})
        for (route_method, suffix), result in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if callable(result) and not isinstance(result, FakeResponse):
                    result = result()
                if isinstance(result, Exception):
                    raise result
                return result
        return FakeResponse(404, {'detail': 'Not found'}, reason='Not Found')


@pytest.fixture
def config(tmp_path):
    return TranscriberConfig(
        api_token='r8_test_token',
        webhook_secret=TEST_SECRET,
        webhook_url='https://transcribe.example.com/api/webhooks/replicate',
        model=TEST_MODEL,
        data_root=str(tmp_path),
        poll_interval_seconds=0.05,
        poll_max_workers=2,
    )


@pytest.fixture
def store(tmp_path):
    return JobStore(str(tmp_path))


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def session():
    return FakeSession()


def prediction(job_id, status, **fields):
    """A Replicate prediction envelope."""
    data = {'id': job_id, 'status': status}
    data.update(fields)
    return data
