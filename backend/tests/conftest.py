"""
Pytest Configuration and Fixtures

This module provides shared fixtures for all tests.
"""
import os
import sys
from concurrent.futures import Future
from unittest.mock import Mock

import pytest
from requests.structures import CaseInsensitiveDict

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from corpsync import create_app
from corpsync.extensions import db
from corpsync.config import TestingConfig
from corpsync.exceptions import EsiApiError
from corpsync.services.sync.executor import REQUIRED_SCOPES
from corpsync.services.sync.models import Credential, FetchPage

CORP_ID = 98000001

# 2024-01-01T00:00:00Z
START_MS = 1704067200000

ALL_SCOPES = frozenset().union(*REQUIRED_SCOPES.values())


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        app.extensions['sync_runtime'].stop()
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def runtime(app):
    """Sync runtime of the test application."""
    return app.extensions['sync_runtime']


@pytest.fixture
def admin_app():
    """Application with API keys configured."""
    class AdminConfig(TestingConfig):
        API_KEY = 'test-key'
        ADMIN_API_KEY = 'admin-key'

    app = create_app(AdminConfig)
    with app.app_context():
        db.create_all()
        yield app
        app.extensions['sync_runtime'].stop()
        db.session.remove()
        db.drop_all()


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start=START_MS):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


class ImmediatePool:
    """Executor stand-in that runs submitted work on the calling thread."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args):
        self.submitted.append((fn, args))
        future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def immediate_pool():
    return ImmediatePool()


@pytest.fixture
def make_response():
    """Build a requests-like response Mock."""
    def _make(status=200, body=None, headers=None, text=''):
        response = Mock()
        response.status_code = status
        response.headers = CaseInsensitiveDict(headers or {})
        response.text = text
        if body is None:
            response.json.side_effect = ValueError('No JSON object could be decoded')
        else:
            response.json.return_value = body
        return response
    return _make


@pytest.fixture
def make_credential():
    """Build a Credential valid for an hour with every sync scope."""
    def _make(corporation_id=CORP_ID, scopes=ALL_SCOPES, expires_at_ms=START_MS + 3600 * 1000,
              is_valid=True, access_token='access-token', refresh_token='refresh-token'):
        return Credential(
            corporation_id=corporation_id,
            character_id=2112000001,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_ms=expires_at_ms,
            granted_scopes=frozenset(scopes),
            is_valid=is_valid,
            corporation_name='Test Corp',
            character_name='Test Director',
        )
    return _make


class FakeFetchClient:
    """Fetch client answering from a URL -> body (or exception) table.

    Unknown URLs answer 404, which name lookups turn into placeholders.
    """

    BASE = 'https://esi.test'

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requested = []

    def url(self, path):
        return f"{self.BASE}/{path.lstrip('/')}"

    def _answer(self, url):
        self.requested.append(url)
        if url not in self.routes:
            raise EsiApiError(f'ESI request failed with status 404: {url}', status=404, url=url)
        body = self.routes[url]
        if isinstance(body, Exception):
            raise body
        return body

    def fetch(self, url, credential=None):
        return FetchPage(body=self._answer(url))

    def fetch_paginated(self, base_url, credential=None, max_pages=10):
        return self._answer(base_url)


@pytest.fixture
def fake_fetch():
    return FakeFetchClient()
