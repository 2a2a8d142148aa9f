"""
Test utilities and factories for creating test data
"""
import json
import random
import string
import uuid
from unittest import mock

import requests
from django.core.cache.backends.locmem import LocMemCache

from campus_founders.api import CampusFoundersAPI
from campus_founders.core.client import RemoteDataClient
from campus_founders.core.mutations import MutationController
from campus_founders.core.query_cache import QueryCache
from campus_founders.core.session import SessionStore

TEST_API_URL = 'http://testserver/api'


class TestDataFactory:
    """Factory class for creating backend payloads"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_letters + string.digits, k=length))

    @staticmethod
    def object_id():
        """24 hex characters, like the backend's ids"""
        return uuid.uuid4().hex[:24]

    @staticmethod
    def create_user(user_id=None, username=None, role='student', is_premium=False, **fields):
        """Create a user as the backend returns it (legacy profile field names)"""
        if not username:
            username = f'user_{TestDataFactory.random_string(6)}'
        user = {
            '_id': user_id or TestDataFactory.object_id(),
            'username': username,
            'fullName': username.title(),
            'email': f'{username}@test.com',
            'role': role,
            'isPremium': is_premium,
            'profilePic': '',
            'nativeLanguage': 'fintech',
            'learningLanguage': 'product',
            'friends': [],
        }
        user.update(fields)
        return user

    @staticmethod
    def create_startup(startup_id=None, owner=None, upvotes=None, upvote_count=None, **fields):
        """Create an approved startup"""
        upvotes = list(upvotes or [])
        startup = {
            '_id': startup_id or TestDataFactory.object_id(),
            'name': f'Startup {TestDataFactory.random_string(4)}',
            'tagline': 'Test tagline',
            'description': 'Test description',
            'category': 'fintech',
            'stage': 'mvp',
            'status': 'approved',
            'owner': owner,
            'upvotes': upvotes,
            'upvoteCount': len(upvotes) if upvote_count is None else upvote_count,
        }
        startup.update(fields)
        return startup

    @staticmethod
    def create_startup_detail(startup, reviews=None):
        """Detail payload for GET /startups/{id}"""
        return {
            'startup': startup,
            'reviews': reviews or [],
            'stats': {'upvotes': startup['upvoteCount'], 'reviews': len(reviews or []), 'avgRating': '0.0'},
        }

    @staticmethod
    def create_friend_request(sender, recipient, request_id=None, status='pending'):
        return {
            '_id': request_id or TestDataFactory.object_id(),
            'sender': sender,
            'recipient': recipient,
            'status': status,
        }

    @staticmethod
    def create_investment(startup, investor, amount=50000, status='pending', investment_id=None):
        return {
            '_id': investment_id or TestDataFactory.object_id(),
            'startup': startup,
            'investor': investor,
            'amount': amount,
            'status': status,
            'milestone': '',
            'message': '',
        }


def make_response(status_code=200, body=None, content=None):
    """A real ``requests.Response`` carrying ``body`` as JSON (or raw ``content``)"""
    response = requests.Response()
    response.status_code = status_code
    if content is not None:
        response._content = content.encode() if isinstance(content, str) else content
    elif body is not None:
        response._content = json.dumps(body).encode()
        response.headers['Content-Type'] = 'application/json'
    else:
        response._content = b''
    return response


class FakeBackend:
    """
    Routes requests made through a ``requests.Session`` to canned responses.

    Each route holds a queue of responses: ``(status, body)`` tuples, plain
    bodies (status 200), exceptions to raise, or callables taking the
    request kwargs. The last response of a queue is repeated.
    """

    def __init__(self, base_url=TEST_API_URL):
        self.base_url = base_url.rstrip('/')
        self.routes = {}
        self.calls = []

    def add(self, method, path, *responses):
        self.routes[(method.upper(), path)] = list(responses) or [(200, None)]
        return self

    def handle(self, method, url, json=None, params=None, headers=None, timeout=None, **kwargs):
        path = url[len(self.base_url):] if url.startswith(self.base_url) else url
        call = {'method': method, 'path': path, 'json': json, 'params': params, 'headers': headers or {}}
        self.calls.append(call)

        queue = self.routes.get((method.upper(), path))
        if not queue:
            return make_response(404, {'message': f'No route for {method} {path}'})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply):
            reply = reply(call)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, requests.Response):
            return reply
        if isinstance(reply, tuple):
            return make_response(*reply)
        return make_response(200, reply)

    def calls_to(self, method, path):
        return [c for c in self.calls if c['method'] == method.upper() and c['path'] == path]

    def install(self, session):
        """Patch ``session.request`` so nothing leaves the process"""
        session.request = mock.Mock(side_effect=self.handle)
        return session


class FakeClock:
    """Manually advanced clock for staleness checks"""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_cache_backend():
    """Isolated local-memory cache, one per test"""
    return LocMemCache(f'test-{uuid.uuid4()}', {})


def make_query_cache(clock=None, stale_time=0, gc_time=300):
    return QueryCache(make_cache_backend(), stale_time=stale_time, gc_time=gc_time, clock=clock or FakeClock())


def make_client(backend=None, token=None):
    backend = backend or FakeBackend()
    session_store = SessionStore(make_cache_backend())
    if token:
        session_store.set_token(token)
    http = backend.install(requests.Session())
    return RemoteDataClient(backend.base_url, session_store, http)


def make_api(backend=None, token='test-token', clock=None):
    """CampusFoundersAPI wired to ``backend`` with private caches"""
    client = make_client(backend, token)
    cache = make_query_cache(clock)
    return CampusFoundersAPI(client=client, cache=cache, mutations=MutationController(cache))


class NotificationRecorder:
    """Collects notifications sent while connected"""

    def __init__(self):
        self.received = []

    def __call__(self, sender, **kwargs):
        self.received.append(kwargs)

    @property
    def errors(self):
        return [n for n in self.received if n['level'] == 'error']

    @property
    def successes(self):
        return [n for n in self.received if n['level'] == 'success']
