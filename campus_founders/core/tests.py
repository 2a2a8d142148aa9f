"""
Test suite for the core client plumbing
Tests: error classification, token handling, query cache, optimistic mutations and their ordering
"""
import asyncio
import threading
from unittest import mock

import requests
from django.test import SimpleTestCase

from campus_founders.core.client import is_authentication_failure
from campus_founders.core.exceptions import (
    AuthenticationError,
    NetworkError,
    ServerError,
    ValidationError,
    get_error_message,
)
from campus_founders.core.mutations import MutationController
from campus_founders.core.normalizers import (
    clamp_decrement,
    contains_id,
    drop_missing,
    normalize_id,
    same_id,
)
from campus_founders.core.notifications import notification, notify_error
from campus_founders.core.query_cache import hash_query_key, make_query_key, matches_prefix
from campus_founders.core.serializers import first_error_message
from campus_founders.core.test_utils import (
    FakeBackend,
    FakeClock,
    NotificationRecorder,
    make_client,
    make_query_cache,
)

KEY = ('items',)


def append(value):
    return lambda items: (items or []) + [value]


class NormalizerTests(SimpleTestCase):
    """Test identifier normalization and entity filtering"""

    def test_normalize_id_shapes(self):
        """Test raw ids, populated objects and extended JSON resolve to the same string"""
        self.assertEqual(normalize_id('abc'), 'abc')
        self.assertEqual(normalize_id(42), '42')
        self.assertEqual(normalize_id({'_id': 'abc'}), 'abc')
        self.assertEqual(normalize_id({'id': 'abc'}), 'abc')
        self.assertEqual(normalize_id({'_id': {'$oid': 'abc'}}), 'abc')
        self.assertIsNone(normalize_id({}))
        self.assertIsNone(normalize_id(None))
        self.assertIsNone(normalize_id('  '))

    def test_membership_ignores_identifier_shape(self):
        """Test membership is the same for raw ids and objects carrying the id"""
        self.assertTrue(contains_id(['u1', 'u2'], 'u2'))
        self.assertTrue(contains_id([{'_id': 'u1'}, {'_id': 'u2'}], 'u2'))
        self.assertTrue(contains_id(['u1', 'u2'], {'_id': 'u2'}))
        self.assertFalse(contains_id([{'_id': 'u1'}], 'u2'))
        self.assertFalse(contains_id([None, {}], None))
        self.assertTrue(same_id(7, '7'))
        self.assertFalse(same_id(None, None))

    def test_drop_missing(self):
        """Test null entries and entries with deleted relations are dropped"""
        items = [
            {'_id': '1', 'sender': {'_id': 's1'}},
            None,
            {},
            {'_id': '2', 'sender': None},
            {'_id': '3', 'sender': {}},
        ]
        self.assertEqual(drop_missing(items, 'sender'), [items[0]])
        self.assertEqual(len(drop_missing(items)), 3)

    def test_clamp_decrement_never_negative(self):
        """Test counters stop at zero"""
        self.assertEqual(clamp_decrement(2), 1)
        self.assertEqual(clamp_decrement(0), 0)
        self.assertEqual(clamp_decrement(None), 0)
        count = 0
        for _ in range(5):
            count = clamp_decrement(count)
        self.assertEqual(count, 0)


class AuthenticationFailureTests(SimpleTestCase):
    """Test 401 classification"""

    def test_structured_code_wins(self):
        """Test the error code decides even when the message says otherwise"""
        self.assertTrue(is_authentication_failure('Something odd', 'TOKEN_EXPIRED'))
        self.assertFalse(is_authentication_failure('Invalid token size', 'TICKET_SIZE_INVALID'))

    def test_message_fallback(self):
        """Test message heuristics when no code is sent"""
        self.assertTrue(is_authentication_failure('Unauthorized: token expired'))
        self.assertTrue(is_authentication_failure('Unauthorized - No Token Provided'))
        self.assertTrue(is_authentication_failure('Invalid token'))
        self.assertTrue(is_authentication_failure('User not found'))
        self.assertFalse(is_authentication_failure('Invalid ticket size format'))
        self.assertFalse(is_authentication_failure('Rating must be between 1 and 5'))

    def test_bare_401(self):
        """Test a 401 with no body is treated as an authentication failure"""
        self.assertTrue(is_authentication_failure(None, None))


class RemoteDataClientTests(SimpleTestCase):
    """Test request handling, token storage and error classification"""

    def setUp(self):
        self.backend = FakeBackend()
        self.client = make_client(self.backend, token='session-token')

    def test_bearer_token_attached(self):
        """Test the stored token is sent as a bearer token"""
        self.backend.add('GET', '/users', [])
        self.client.get('/users')
        headers = self.backend.calls[0]['headers']
        self.assertEqual(headers['Authorization'], 'Bearer session-token')

    def test_no_authorization_header_without_token(self):
        """Test anonymous requests carry no Authorization header"""
        self.client.session_store.clear()
        self.backend.add('GET', '/startups', [])
        self.client.get('/startups')
        self.assertNotIn('Authorization', self.backend.calls[0]['headers'])

    def test_token_rotation(self):
        """Test a token in a response body replaces the stored one"""
        self.backend.add('POST', '/auth/login', {'success': True, 'token': 'rotated', 'user': {'_id': 'u1'}})
        self.client.post('/auth/login', {'email': 'a@b.c', 'password': 'secret1'})
        self.assertEqual(self.client.session_store.get_token(), 'rotated')

    def test_token_not_stored_when_disabled(self):
        """Test tokens meant for other services do not replace the session"""
        self.backend.add('GET', '/chat/token', {'token': 'chat-token'})
        self.client.get('/chat/token', store_token=False)
        self.assertEqual(self.client.session_store.get_token(), 'session-token')

    def test_401_validation_message_keeps_session(self):
        """Test a 401 with a validation message raises ValidationError and keeps the token"""
        self.backend.add('PUT', '/users/profile', (401, {'message': 'Invalid ticket size format'}))
        with self.assertRaises(ValidationError) as ctx:
            self.client.put('/users/profile', {'ticketSize': 'lots'})
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.message, 'Invalid ticket size format')
        self.assertEqual(self.client.session_store.get_token(), 'session-token')

    def test_401_expired_token_clears_session(self):
        """Test an expired session raises AuthenticationError and clears the token"""
        self.backend.add('GET', '/auth/me', (401, {'message': 'Unauthorized: token expired'}))
        with self.assertRaises(AuthenticationError):
            self.client.get('/auth/me')
        self.assertIsNone(self.client.session_store.get_token())

    def test_401_error_code_clears_session(self):
        """Test the structured code alone clears the session"""
        self.backend.add('GET', '/auth/me', (401, {'message': 'Please sign in', 'error': 'TOKEN_NOT_ACTIVE'}))
        with self.assertRaises(AuthenticationError) as ctx:
            self.client.get('/auth/me')
        self.assertEqual(ctx.exception.code, 'TOKEN_NOT_ACTIVE')
        self.assertFalse(self.client.session_store.has_token)

    def test_other_client_errors(self):
        """Test 4xx responses raise ValidationError with the status code"""
        self.backend.add('GET', '/startups/missing', (404, {'message': 'Startup not found'}))
        with self.assertRaises(ValidationError) as ctx:
            self.client.get('/startups/missing')
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertTrue(self.client.session_store.has_token)

    def test_server_error(self):
        """Test 5xx responses raise ServerError and keep the token"""
        self.backend.add('POST', '/startups/s1/upvote', (500, {'message': 'Internal server error'}))
        with self.assertRaises(ServerError) as ctx:
            self.client.post('/startups/s1/upvote')
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertTrue(self.client.session_store.has_token)

    def test_server_error_page_not_json(self):
        """Test an HTML error page is classified by status alone"""
        self.backend.add('GET', '/users', (502, None, '<html>Bad gateway</html>'))
        with self.assertRaises(ServerError) as ctx:
            self.client.get('/users')
        self.assertIsNone(ctx.exception.message)
        self.assertEqual(str(ctx.exception), ServerError.default_message)

    def test_transport_failure(self):
        """Test connection errors raise NetworkError"""
        self.backend.add('GET', '/users', requests.exceptions.ConnectionError('refused'))
        with self.assertRaises(NetworkError):
            self.client.get('/users')
        self.assertTrue(self.client.session_store.has_token)

    def test_undecodable_success_body(self):
        """Test a 200 that is not JSON raises NetworkError"""
        self.backend.add('GET', '/users', (200, None, 'not json'))
        with self.assertRaises(NetworkError):
            self.client.get('/users')

    def test_no_content(self):
        """Test 204 decodes to None"""
        self.backend.add('DELETE', '/users/u1', (204, None))
        self.assertIsNone(self.client.delete('/users/u1'))

    def test_normalize_applied(self):
        """Test the normalizer runs on successful payloads"""
        self.backend.add('GET', '/users', [{'_id': 'u1'}, None])
        data = self.client.get('/users', normalize=drop_missing)
        self.assertEqual(data, [{'_id': 'u1'}])


class ErrorMessageTests(SimpleTestCase):
    """Test user-facing messages and notifications"""

    def test_server_message_preferred(self):
        """Test the server's message is shown when present"""
        error = ValidationError('Startup not found', 404)
        self.assertEqual(get_error_message(error, 'Fallback'), 'Startup not found')

    def test_fallback_without_message(self):
        """Test the fallback is used when the server sent no message"""
        self.assertEqual(get_error_message(ServerError(), 'Fallback'), 'Fallback')
        self.assertEqual(get_error_message(KeyError('x'), 'Fallback'), 'Fallback')

    def test_notify_error_sends_signal(self):
        """Test error notifications reach signal receivers with the retry callable"""
        recorder = NotificationRecorder()
        notification.connect(recorder, weak=False)
        self.addCleanup(notification.disconnect, recorder)
        retry = mock.Mock()

        message = notify_error(NetworkError(), 'Could not connect', retry=retry)

        self.assertEqual(message, 'Could not connect')
        self.assertEqual(len(recorder.errors), 1)
        self.assertIs(recorder.errors[0]['retry'], retry)

    def test_first_error_message(self):
        """Test nested serializer errors flatten to one message"""
        self.assertEqual(first_error_message({'rating': ['Rating must be between 1 and 5']}),
                         'rating: Rating must be between 1 and 5')
        self.assertEqual(first_error_message({'non_field_errors': ['Bad dates']}), 'Bad dates')


class QueryCacheTests(SimpleTestCase):
    """Test the query cache service"""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = make_query_cache(self.clock, stale_time=30)

    def test_hash_query_key_stable(self):
        """Test dict parameter order does not change the backend key"""
        first = make_query_key('startups', {'search': 'ai', 'category': ''})
        second = make_query_key('startups', {'category': '', 'search': 'ai'})
        self.assertEqual(hash_query_key(first), hash_query_key(second))
        self.assertTrue(hash_query_key(first).startswith('query:startups:'))

    def test_prefix_matching(self):
        """Test entity prefixes and partial filters"""
        key = make_query_key('startups', {'search': 'ai', 'category': 'fintech'})
        self.assertTrue(matches_prefix(key, ('startups',)))
        self.assertTrue(matches_prefix(key, ('startups', {'category': 'fintech'})))
        self.assertFalse(matches_prefix(key, ('startups', {'category': 'edtech'})))
        self.assertFalse(matches_prefix(key, ('startup',)))

    def test_fetch_serves_fresh_data(self):
        """Test fresh entries are served without calling the fetcher"""
        fetcher = mock.Mock(return_value=['a'])
        self.assertEqual(self.cache.fetch(KEY, fetcher), ['a'])
        self.assertEqual(self.cache.fetch(KEY, fetcher), ['a'])
        self.assertEqual(fetcher.call_count, 1)

    def test_fetch_refetches_after_stale_time(self):
        """Test entries older than the stale time are refetched"""
        fetcher = mock.Mock(side_effect=[['a'], ['b']])
        self.cache.fetch(KEY, fetcher)
        self.clock.advance(31)
        self.assertEqual(self.cache.fetch(KEY, fetcher), ['b'])

    def test_invalidate_prefix(self):
        """Test invalidating an entity marks every filtered list stale"""
        fintech = make_query_key('startups', {'category': 'fintech', 'search': ''})
        edtech = make_query_key('startups', {'category': 'edtech', 'search': ''})
        detail = make_query_key('startup', 's1')
        for key in (fintech, edtech, detail):
            self.cache.set(key, [])

        invalidated = self.cache.invalidate(('startups',))

        self.assertCountEqual(invalidated, [fintech, edtech])
        self.assertTrue(self.cache.is_stale(fintech))
        self.assertTrue(self.cache.is_stale(edtech))
        self.assertFalse(self.cache.is_stale(detail))

    def test_invalidate_refetches_active_queries(self):
        """Test subscribed queries with a fetcher are refetched on invalidation"""
        fetcher = mock.Mock(side_effect=[['a'], ['b']])
        self.cache.fetch(KEY, fetcher)
        seen = []
        self.cache.subscribe(KEY, lambda key, data: seen.append(data))

        self.cache.invalidate(KEY)

        self.assertEqual(self.cache.get(KEY), ['b'])
        self.assertFalse(self.cache.is_stale(KEY))
        self.assertEqual(seen, [['b']])

    def test_failed_background_refetch_leaves_stale(self):
        """Test a failing reconciliation fetch is logged and the entry stays stale"""
        fetcher = mock.Mock(side_effect=[['a'], ServerError()])
        self.cache.fetch(KEY, fetcher)
        self.cache.subscribe(KEY, lambda key, data: None)

        self.cache.invalidate(KEY)

        self.assertEqual(self.cache.get(KEY), ['a'])
        self.assertTrue(self.cache.is_stale(KEY))

    def test_unsubscribe(self):
        """Test unsubscribed callbacks are not called and the query goes inactive"""
        self.cache.fetch(KEY, lambda: ['a'])
        callback = mock.Mock()
        unsubscribe = self.cache.subscribe(KEY, callback)
        self.assertTrue(self.cache.is_active(KEY))
        unsubscribe()
        self.cache.set(KEY, ['b'])
        callback.assert_not_called()
        self.assertFalse(self.cache.is_active(KEY))

    def test_remove_and_clear(self):
        """Test removal drops the entry and its fetcher"""
        self.cache.fetch(KEY, lambda: ['a'])
        self.cache.set(('other',), 1)
        self.cache.remove(KEY)
        self.assertIsNone(self.cache.get(KEY))
        with self.assertRaises(KeyError):
            self.cache.refetch(KEY)
        self.cache.clear()
        self.assertIsNone(self.cache.get(('other',)))

    def test_in_flight_fetch_discarded_when_cancelled(self):
        """Test a fetch that was cancelled while in flight does not overwrite the cache"""
        self.cache.set(KEY, ['cached'])
        self.clock.advance(31)

        def cancelled_midway():
            self.cache.cancel_fetches(KEY)
            return ['old server data']

        self.assertEqual(self.cache.fetch(KEY, cancelled_midway), ['cached'])
        self.assertEqual(self.cache.get(KEY), ['cached'])

    def test_gc_removes_entries(self):
        """Test entries expire after the inactivity window"""
        cache = make_query_cache(gc_time=1)
        with mock.patch('django.core.cache.backends.locmem.time.time', return_value=0):
            cache.fetch(KEY, lambda: ['a'])
        with mock.patch('django.core.cache.backends.locmem.time.time', return_value=10):
            self.assertIsNone(cache.get(KEY))
            self.assertEqual(cache.find_queries(KEY), [])
        # The fetcher goes with the entry
        with self.assertRaises(KeyError):
            cache.refetch(KEY)


class MutationControllerTests(SimpleTestCase):
    """Test the optimistic mutation protocol"""

    def setUp(self):
        self.cache = make_query_cache()
        self.notify = mock.Mock(side_effect=lambda error, fallback: get_error_message(error, fallback))
        self.controller = MutationController(self.cache, notify=self.notify)

    def test_success_marks_stale(self):
        """Test a successful mutation keeps the optimistic value and marks it stale"""
        self.cache.set(KEY, ['a'])
        result = self.controller.perform(KEY, append('b'), lambda: {'ok': True})
        self.assertTrue(result.ok)
        self.assertEqual(result.data, {'ok': True})
        self.assertEqual(self.cache.get(KEY), ['a', 'b'])
        self.assertTrue(self.cache.get_entry(KEY)['stale'])
        self.notify.assert_not_called()

    def test_success_reconciles_active_query(self):
        """Test an active query is refetched with authoritative data after success"""
        self.cache.fetch(KEY, mock.Mock(side_effect=[['a'], ['a', 'b', 'c']]))
        seen = []
        self.cache.subscribe(KEY, lambda key, data: seen.append(data))

        self.controller.perform(KEY, append('b'), lambda: None)

        self.assertEqual(seen, [['a', 'b'], ['a', 'b', 'c']])
        self.assertEqual(self.cache.get(KEY), ['a', 'b', 'c'])

    def test_failure_restores_snapshot_and_notifies(self):
        """Test a failed mutation restores the prior value and reports the error"""
        self.cache.set(KEY, ['a'])
        seen = []
        self.cache.subscribe(KEY, lambda key, data: seen.append(data))

        result = self.controller.perform(
            KEY, append('b'), mock.Mock(side_effect=ServerError('Internal server error', 500)),
            error_message='Failed to add',
        )

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, ServerError)
        self.assertEqual(result.message, 'Internal server error')
        self.assertEqual(self.cache.get(KEY), ['a'])
        self.assertEqual(seen, [['a', 'b'], ['a']])
        self.notify.assert_called_once_with(result.error, 'Failed to add')

    def test_all_or_nothing_rollback(self):
        """Test both keys are restored when a two-key mutation fails"""
        requests_key, friends_key = ('friendRequests',), ('friends',)
        self.cache.set(requests_key, {'incomingReqs': [{'_id': 'r1'}]})
        self.cache.set(friends_key, [{'_id': 'f1'}])

        result = self.controller.perform(
            [requests_key, friends_key],
            [lambda reqs: {'incomingReqs': []}, lambda friends: friends + [{'_id': 'f2'}]],
            mock.Mock(side_effect=ValidationError('Friend request not found', 404)),
        )

        self.assertFalse(result.ok)
        self.assertEqual(self.cache.get(requests_key), {'incomingReqs': [{'_id': 'r1'}]})
        self.assertEqual(self.cache.get(friends_key), [{'_id': 'f1'}])

    def test_uncached_key_left_alone(self):
        """Test an update that yields nothing for an uncached key writes nothing"""
        self.controller.perform(KEY, lambda items: None, mock.Mock(side_effect=ServerError()))
        self.assertIsNone(self.cache.get_entry(KEY))

    def test_failing_update_installs_nothing(self):
        """Test an exception while computing the optimistic value leaves the cache untouched"""
        self.cache.set(KEY, ['a'])
        remote_call = mock.Mock()
        with self.assertRaises(ZeroDivisionError):
            self.controller.perform(KEY, lambda items: 1 / 0, remote_call)
        remote_call.assert_not_called()
        self.assertFalse(self.cache.is_suspended(KEY))
        self.assertEqual(self.controller.pending_count(KEY), 0)

    def test_unexpected_exception_rolls_back_and_propagates(self):
        """Test programming errors propagate without leaving optimistic values behind"""
        self.cache.set(KEY, ['a'])
        with self.assertRaises(TypeError):
            self.controller.perform(KEY, append('b'), mock.Mock(side_effect=TypeError('bug')))
        self.assertEqual(self.cache.get(KEY), ['a'])
        self.notify.assert_not_called()

    def test_settle_twice_rejected(self):
        """Test a mutation cannot be settled twice"""
        self.cache.set(KEY, ['a'])
        mutation = self.controller.begin(KEY, append('b'))
        mutation.succeed()
        with self.assertRaises(RuntimeError):
            mutation.fail(ServerError())

    def test_fetches_suspended_while_pending(self):
        """Test reads serve the optimistic value and refetches are held while a mutation is pending"""
        fetcher = mock.Mock(side_effect=[['a'], ['server']])
        self.cache.fetch(KEY, fetcher)
        mutation = self.controller.begin(KEY, append('b'))
        self.cache.mark_stale(KEY)

        self.assertEqual(self.cache.fetch(KEY), ['a', 'b'])
        self.assertEqual(self.cache.refetch(KEY), ['a', 'b'])
        self.assertEqual(fetcher.call_count, 1)

        mutation.succeed()
        self.assertFalse(self.cache.is_suspended(KEY))

    def test_in_flight_fetch_discarded_by_mutation(self):
        """Test a fetch that was in flight when the mutation began does not clobber the optimistic value"""
        self.cache.set(KEY, ['a'])
        self.cache.mark_stale(KEY)
        pending = []

        def fetch_while_mutating():
            pending.append(self.controller.begin(KEY, append('b')))
            return ['a']

        self.assertEqual(self.cache.fetch(KEY, fetch_while_mutating), ['a', 'b'])
        self.assertEqual(self.cache.get(KEY), ['a', 'b'])
        pending[0].fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a'])

    # ==================== OVERLAPPING MUTATIONS ====================

    def begin_three(self):
        self.cache.set(KEY, ['a'])
        return [self.controller.begin(KEY, append(value)) for value in ('x', 'y', 'z')]

    def test_nested_rollback_targets(self):
        """Test each mutation's rollback target is the previous optimistic value"""
        first, second, third = self.begin_three()
        self.assertEqual(self.cache.get(KEY), ['a', 'x', 'y', 'z'])
        self.assertEqual(self.controller.pending_count(KEY), 3)

        third.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a', 'x', 'y'])
        second.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a', 'x'])
        first.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a'])
        self.assertEqual(self.controller.pending_count(KEY), 0)

    def test_failed_earlier_mutation_hands_snapshot_to_successor(self):
        """Test a later mutation inherits the snapshot of an earlier one that failed"""
        first, second, third = self.begin_three()

        second.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a', 'x', 'y', 'z'])
        third.fail(ServerError())
        # Back to the value with only the still-pending first mutation applied
        self.assertEqual(self.cache.get(KEY), ['a', 'x'])
        first.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a'])

    def test_latest_success_first_then_earlier_failures(self):
        """Test failures overtaken by a later success leave the key stale instead of reverting"""
        first, second, third = self.begin_three()

        third.succeed()
        first.fail(ServerError())
        second.fail(ServerError())

        self.assertEqual(self.cache.get(KEY), ['a', 'x', 'y', 'z'])
        self.assertTrue(self.cache.is_stale(KEY))

    def test_superseded_success_is_discarded(self):
        """Test an earlier success with later pending mutations does not reconcile"""
        fetcher = mock.Mock(side_effect=[['a'], ['server']])
        self.cache.fetch(KEY, fetcher)
        self.cache.subscribe(KEY, lambda key, data: None)
        first = self.controller.begin(KEY, append('x'))
        second = self.controller.begin(KEY, append('y'))

        first.succeed()
        self.assertEqual(self.cache.get(KEY), ['a', 'x', 'y'])
        self.assertEqual(fetcher.call_count, 1)

        second.succeed()
        self.assertEqual(self.cache.get(KEY), ['server'])

    def test_out_of_order_mixed_resolution(self):
        """Test first succeeds, third fails, second fails"""
        first, second, third = self.begin_three()

        first.succeed()
        third.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a', 'x', 'y'])
        second.fail(ServerError())
        self.assertEqual(self.cache.get(KEY), ['a', 'x'])
        # The first success was never reconciled
        self.assertTrue(self.cache.get_entry(KEY)['stale'])
        self.assertEqual(self.controller.pending_count(KEY), 0)

    def test_superseded_success_reconciled_after_later_failure(self):
        """Test a success superseded by a mutation that then fails still marks the key stale"""
        self.cache.set(KEY, ['a'])
        first = self.controller.begin(KEY, append('x'))
        second = self.controller.begin(KEY, append('y'))

        first.succeed()
        second.fail(ServerError())

        self.assertEqual(self.cache.get(KEY), ['a', 'x'])
        self.assertTrue(self.cache.get_entry(KEY)['stale'])

    def test_superseded_success_refetched_after_later_failure(self):
        """Test an active query is refetched once the later mutation rolls back"""
        fetcher = mock.Mock(side_effect=[['a'], ['a', 'x']])
        self.cache.fetch(KEY, fetcher)
        self.cache.subscribe(KEY, lambda key, data: None)
        first = self.controller.begin(KEY, append('x'))
        second = self.controller.begin(KEY, append('y'))

        first.succeed()
        second.fail(ServerError())

        self.assertEqual(fetcher.call_count, 2)
        self.assertEqual(self.cache.get(KEY), ['a', 'x'])
        self.assertFalse(self.cache.get_entry(KEY)['stale'])

    def test_ordering_state_released_when_settled(self):
        """Test generation counters are dropped once no mutation is pending on a key"""
        first, second, third = self.begin_three()
        first.succeed()
        second.fail(ServerError())
        self.assertTrue(self.controller._generations)
        third.fail(ServerError())
        self.assertEqual(self.controller._generations, {})
        self.assertEqual(self.controller._confirmed, {})
        self.assertEqual(self.controller._unreconciled, set())


class AsyncMutationTests(SimpleTestCase):
    """Test overlapping async mutations"""

    def setUp(self):
        self.cache = make_query_cache()
        self.controller = MutationController(self.cache, notify=mock.Mock(return_value='failed'))

    async def test_earlier_failure_completing_last(self):
        """Test an earlier-issued mutation failing after a later success does not revert it"""
        self.cache.set(KEY, 0)
        released = asyncio.Event()

        async def slow_failure():
            await released.wait()
            raise ServerError()

        async def fast_success():
            released.set()
            return {'ok': True}

        first, second = await asyncio.gather(
            self.controller.aperform(KEY, lambda count: count + 1, slow_failure),
            self.controller.aperform(KEY, lambda count: count + 1, fast_success),
        )

        self.assertFalse(first.ok)
        self.assertTrue(second.ok)
        self.assertEqual(self.cache.get(KEY), 2)
        self.assertTrue(self.cache.is_stale(KEY))
        self.assertEqual(self.controller.pending_count(KEY), 0)

    async def test_sync_remote_call(self):
        """Test plain callables are run off the event loop"""
        self.cache.set(KEY, ['a'])
        result = await self.controller.aperform(KEY, append('b'), lambda: 'done')
        self.assertEqual(result.data, 'done')
        self.assertEqual(self.cache.get(KEY), ['a', 'b'])

    async def test_afetch_serves_fresh_data(self):
        """Test async fetches cache their result like sync ones"""
        calls = []

        def fetcher():
            calls.append(KEY)
            return ['a']

        self.assertEqual(await self.cache.afetch(KEY, fetcher), ['a'])
        self.assertEqual(await self.cache.afetch(KEY, fetcher), ['a'])
        self.assertEqual(len(calls), 1)

    async def test_reconciliation_runs_off_event_loop(self):
        """Test active queries are refetched without blocking the event loop"""
        loop_thread = threading.get_ident()
        fetch_threads = []
        responses = [['a'], ['a', 'b', 'c']]

        def fetcher():
            fetch_threads.append(threading.get_ident())
            return responses.pop(0)

        await self.cache.afetch(KEY, fetcher)
        self.cache.subscribe(KEY, lambda key, data: None)

        result = await self.controller.aperform(KEY, append('b'), lambda: 'ok')

        self.assertTrue(result.ok)
        self.assertEqual(self.cache.get(KEY), ['a', 'b', 'c'])
        self.assertFalse(self.cache.get_entry(KEY)['stale'])
        self.assertEqual(len(fetch_threads), 2)
        self.assertNotIn(loop_thread, fetch_threads)
