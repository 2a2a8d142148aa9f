"""
Test suite for Startups module
Tests: upvote toggling across cached views, rollback, reviews, metrics, founder forms and AI helpers
"""
from io import StringIO
from unittest import mock

from django.core.management import CommandError, call_command
from django.test import SimpleTestCase

from campus_founders.core.exceptions import ValidationError
from campus_founders.core.notifications import notification
from campus_founders.core.test_utils import (
    FakeBackend,
    NotificationRecorder,
    TestDataFactory,
    make_api,
)
from campus_founders.social.services import AUTH_USER_KEY
from campus_founders.startups.serializers import normalize_startup_detail
from campus_founders.startups.services import (
    MY_STARTUP_KEY,
    UPVOTE_ERROR_MESSAGE,
    ai_search_key,
    startup_key,
    startups_key,
)
from campus_founders.startups.upvotes import (
    has_upvoted,
    toggle_in_detail,
    toggle_in_list,
    toggle_startup_upvote,
    upvote_count,
)


class UpvoteToggleTests(SimpleTestCase):
    """Test the pure upvote toggle"""

    def test_toggle_adds_then_removes(self):
        """Test toggling twice returns to the original membership and count"""
        startup = TestDataFactory.create_startup('s1', upvotes=['u1', 'u2'])
        once = toggle_startup_upvote(startup, 'u3')
        self.assertEqual(once['upvotes'], ['u1', 'u2', 'u3'])
        self.assertEqual(once['upvoteCount'], 3)
        twice = toggle_startup_upvote(once, 'u3')
        self.assertEqual(twice['upvotes'], ['u1', 'u2'])
        self.assertEqual(twice['upvoteCount'], 2)
        self.assertEqual(startup['upvotes'], ['u1', 'u2'])

    def test_count_never_negative(self):
        """Test removing an upvote from a zero count stays at zero"""
        startup = TestDataFactory.create_startup('s1', upvotes=['u3'], upvote_count=0)
        self.assertEqual(toggle_startup_upvote(startup, 'u3')['upvoteCount'], 0)

    def test_membership_shape_tolerant(self):
        """Test populated and raw upvote entries are treated the same"""
        raw = TestDataFactory.create_startup('s1', upvotes=['u3'])
        populated = TestDataFactory.create_startup('s1', upvotes=[{'_id': 'u3'}])
        self.assertEqual(has_upvoted(raw, 'u3'), has_upvoted(populated, 'u3'))
        self.assertTrue(has_upvoted(populated, {'_id': 'u3'}))
        removed = toggle_startup_upvote(populated, 'u3')
        self.assertEqual(removed['upvotes'], [])

    def test_missing_count_uses_list_length(self):
        """Test the count falls back to the number of upvotes"""
        self.assertEqual(upvote_count({'upvotes': ['u1', 'u2']}), 2)

    def test_only_matching_startup_changes(self):
        """Test list toggles leave other startups alone, for plain lists and search results"""
        s1 = TestDataFactory.create_startup('s1')
        s2 = TestDataFactory.create_startup('s2')
        toggled = toggle_in_list([s1, s2], 's1', 'u3')
        self.assertEqual(toggled[0]['upvotes'], ['u3'])
        self.assertIs(toggled[1], s2)
        search = toggle_in_list({'results': [s1], 'query': 'pay'}, {'_id': 's1'}, 'u3')
        self.assertEqual(search['results'][0]['upvoteCount'], 1)
        self.assertEqual(search['query'], 'pay')

    def test_detail_for_other_startup_untouched(self):
        """Test a detail payload for another startup is returned unchanged"""
        detail = TestDataFactory.create_startup_detail(TestDataFactory.create_startup('s2'))
        self.assertIs(toggle_in_detail(detail, 's1', 'u3'), detail)
        self.assertIsNone(toggle_in_detail(None, 's1', 'u3'))


class StartupTestCase(SimpleTestCase):

    def setUp(self):
        self.backend = FakeBackend()
        self.api = make_api(self.backend)
        self.startups = self.api.startups
        self.recorder = NotificationRecorder()
        notification.connect(self.recorder, weak=False)
        self.addCleanup(notification.disconnect, self.recorder)

    def log_in(self, user_id):
        self.api.cache.set(AUTH_USER_KEY, {'user': TestDataFactory.create_user(user_id)})

    def detail(self, upvotes, startup_id='s1'):
        return TestDataFactory.create_startup_detail(TestDataFactory.create_startup(startup_id, upvotes=upvotes))


class UpvoteMutationTests(StartupTestCase):
    """Test optimistic upvotes through the service"""

    def setUp(self):
        super().setUp()
        self.log_in('u3')

    def test_upvote_end_to_end(self):
        """Test fail, rollback, retry, success and reconciliation with another user's upvote"""
        self.backend.add('GET', '/startups/s1', self.detail(['u1', 'u2']), self.detail(['u1', 'u2', 'u3', 'u4']))
        self.backend.add(
            'POST', '/startups/s1/upvote',
            (500, {'message': 'Internal server error'}),
            {'message': 'Startup upvoted', 'upvoteCount': 3, 'hasUpvoted': True},
        )
        self.startups.get_startup('s1')
        seen = []
        self.api.cache.subscribe(startup_key('s1'), lambda key, data: seen.append(data['startup']))

        failed = self.startups.toggle_upvote('s1')

        self.assertFalse(failed.ok)
        self.assertEqual(seen[0]['upvotes'], ['u1', 'u2', 'u3'])
        self.assertEqual(seen[0]['upvoteCount'], 3)
        current = self.startups.get_startup('s1')['startup']
        self.assertEqual(current['upvotes'], ['u1', 'u2'])
        self.assertEqual(current['upvoteCount'], 2)
        self.assertEqual(self.recorder.errors[0]['message'], 'Internal server error')

        succeeded = self.startups.toggle_upvote('s1')

        self.assertTrue(succeeded.ok)
        self.assertEqual(seen[2]['upvotes'], ['u1', 'u2', 'u3'])
        current = self.startups.get_startup('s1')['startup']
        self.assertEqual(current['upvotes'], ['u1', 'u2', 'u3', 'u4'])
        self.assertEqual(current['upvoteCount'], 4)
        self.assertTrue(self.startups.has_upvoted('s1'))

    def test_fail_then_succeed_equals_single_toggle(self):
        """Test a failed toggle followed by a successful one applies exactly once"""
        self.api.cache.set(startup_key('s1'), self.detail(['u1', 'u2']))
        self.backend.add('POST', '/startups/s1/upvote', (500, {}), {'hasUpvoted': True})

        self.startups.toggle_upvote('s1')
        self.startups.toggle_upvote('s1')

        startup = self.api.cache.get(startup_key('s1'))['startup']
        self.assertEqual(startup['upvotes'], ['u1', 'u2', 'u3'])
        self.assertEqual(startup['upvoteCount'], 3)

    def test_failure_uses_fallback_message(self):
        """Test the generic upvote message is shown when the server sends none"""
        self.api.cache.set(startup_key('s1'), self.detail(['u1']))
        self.backend.add('POST', '/startups/s1/upvote', (500, None, 'Bad gateway'))
        result = self.startups.toggle_upvote('s1')
        self.assertEqual(result.message, UPVOTE_ERROR_MESSAGE)

    def test_every_cached_view_updated(self):
        """Test detail, listings and AI search results holding the startup all change together"""
        s1 = TestDataFactory.create_startup('s1', upvotes=['u1'])
        s2 = TestDataFactory.create_startup('s2')
        fintech = startups_key('fintech')
        search = ai_search_key('payments')
        self.api.cache.set(startup_key('s1'), TestDataFactory.create_startup_detail(s1))
        self.api.cache.set(fintech, [s1, s2])
        self.api.cache.set(startups_key('edtech'), [s2])
        self.api.cache.set(search, {'results': [s1], 'query': 'payments'})
        self.backend.add('POST', '/startups/s1/upvote', {'hasUpvoted': True})

        self.assertCountEqual(
            self.startups.upvote_query_keys('s1'),
            [startup_key('s1'), fintech, search],
        )
        self.startups.toggle_upvote('s1')

        self.assertEqual(self.api.cache.get(startup_key('s1'))['startup']['upvoteCount'], 2)
        self.assertEqual(self.api.cache.get(fintech)[0]['upvotes'], ['u1', 'u3'])
        self.assertEqual(self.api.cache.get(fintech)[1], s2)
        self.assertEqual(self.api.cache.get(search)['results'][0]['upvoteCount'], 2)
        self.assertEqual(self.api.cache.get(startups_key('edtech')), [s2])

    def test_rollback_across_every_view(self):
        """Test a failed upvote restores the detail, listing and search results together"""
        s1 = TestDataFactory.create_startup('s1', upvotes=['u1'])
        fintech = startups_key('fintech')
        search = ai_search_key('payments')
        self.api.cache.set(startup_key('s1'), TestDataFactory.create_startup_detail(s1))
        self.api.cache.set(fintech, [s1])
        self.api.cache.set(search, {'results': [s1]})
        self.backend.add('POST', '/startups/s1/upvote', (500, {'message': 'Internal server error'}))

        self.startups.toggle_upvote('s1')

        self.assertEqual(self.api.cache.get(startup_key('s1'))['startup'], s1)
        self.assertEqual(self.api.cache.get(fintech), [s1])
        self.assertEqual(self.api.cache.get(search), {'results': [s1]})

    def test_dashboard_updated_for_own_startup(self):
        """Test the founder dashboard follows upvotes on the founder's startup"""
        s1 = TestDataFactory.create_startup('s1', owner='u3')
        self.api.cache.set(MY_STARTUP_KEY, TestDataFactory.create_startup_detail(s1))
        self.backend.add('POST', '/startups/s1/upvote', {'hasUpvoted': True})
        self.startups.toggle_upvote('s1')
        self.assertEqual(self.api.cache.get(MY_STARTUP_KEY)['startup']['upvotes'], ['u3'])

    def test_rapid_toggles_follow_cached_state(self):
        """Test a second toggle issued before the first resolves removes the upvote again"""
        self.api.cache.set(startup_key('s1'), self.detail(['u1']))
        first = self.api.mutations.begin(*self.startups._upvote_plan('s1', 'u3'))
        second = self.api.mutations.begin(*self.startups._upvote_plan('s1', 'u3'))
        self.assertEqual(self.api.cache.get(startup_key('s1'))['startup']['upvotes'], ['u1'])

        second.fail(ValidationError('Too many requests', 429))
        self.assertEqual(self.api.cache.get(startup_key('s1'))['startup']['upvotes'], ['u1', 'u3'])
        first.succeed()
        self.assertEqual(self.api.cache.get(startup_key('s1'))['startup']['upvoteCount'], 2)

    def test_login_required(self):
        """Test anonymous upvotes are refused without a request"""
        self.api.cache.remove(AUTH_USER_KEY)
        with self.assertRaises(ValidationError) as ctx:
            self.startups.toggle_upvote('s1')
        self.assertEqual(ctx.exception.code, 'LOGIN_REQUIRED')
        self.assertEqual(self.backend.calls, [])

    async def test_async_toggle(self):
        """Test the async toggle applies and reconciles"""
        self.api.cache.set(startup_key('s1'), self.detail([]))
        self.backend.add('POST', '/startups/s1/upvote', {'hasUpvoted': True})
        result = await self.startups.atoggle_upvote('s1')
        self.assertTrue(result.ok)
        self.assertEqual(self.api.cache.get(startup_key('s1'))['startup']['upvotes'], ['u3'])
        self.assertTrue(self.api.cache.is_stale(startup_key('s1')))


class StartupQueryTests(StartupTestCase):
    """Test listings, detail and normalization"""

    def test_listing_keyed_by_filters(self):
        """Test each filter combination is cached separately and sent as query params"""
        self.backend.add('GET', '/startups', [TestDataFactory.create_startup('s1'), None])
        startups = self.startups.get_approved_startups(category='fintech', search='pay')
        self.assertEqual(len(startups), 1)
        self.assertEqual(self.backend.calls[0]['params'], {'category': 'fintech', 'search': 'pay'})
        self.startups.get_approved_startups(category='fintech', search='pay')
        self.startups.get_approved_startups()
        self.assertEqual(len(self.backend.calls_to('GET', '/startups')), 2)

    def test_detail_normalized(self):
        """Test falsy upvotes and reviews by deleted users are dropped"""
        startup = TestDataFactory.create_startup('s1', upvotes=['u1', None, ''])
        reviews = [
            {'_id': 'r1', 'user': {'_id': 'u1'}, 'rating': 5, 'comment': 'Great'},
            {'_id': 'r2', 'user': None, 'rating': 1, 'comment': 'Gone'},
        ]
        detail = normalize_startup_detail(TestDataFactory.create_startup_detail(startup, reviews))
        self.assertEqual(detail['startup']['upvotes'], ['u1'])
        self.assertEqual([r['_id'] for r in detail['reviews']], ['r1'])

    def test_my_startup_missing(self):
        """Test a founder without a startup gets None"""
        self.backend.add('GET', '/startups/my-startup', (404, {'message': 'No startup found'}))
        self.assertIsNone(self.startups.get_my_startup())


class FounderTests(StartupTestCase):
    """Test founder forms"""

    def startup_form(self, **fields):
        form = {
            'name': 'PayLater',
            'tagline': 'Credit for students',
            'description': 'Micro-credit for campus purchases',
            'category': 'FinTech',
            'teamMembers': [{'name': 'A'}],
        }
        form.update(fields)
        return form

    def test_upsert_startup(self):
        """Test the category is normalized and undeclared fields are sent as given"""
        self.backend.add('POST', '/startups', {'message': 'Startup saved'})
        self.startups.upsert_startup(self.startup_form())
        body = self.backend.calls[0]['json']
        self.assertEqual(body['category'], 'fintech')
        self.assertEqual(body['stage'], 'idea')
        self.assertEqual(body['teamMembers'], [{'name': 'A'}])

    def test_upsert_rejects_unknown_category(self):
        """Test categories outside the list are rejected locally"""
        with self.assertRaises(ValidationError):
            self.startups.upsert_startup(self.startup_form(category='spacetech'))
        self.assertEqual(self.backend.calls, [])

    def test_review_rating_range(self):
        """Test ratings outside 1-5 never reach the backend"""
        with self.assertRaises(ValidationError) as ctx:
            self.startups.add_review('s1', 6, 'Amazing')
        self.assertIn('Rating must be between 1 and 5', str(ctx.exception))
        self.assertEqual(self.backend.calls, [])

    def test_review_invalidates_detail(self):
        """Test adding a review marks the detail stale"""
        self.api.cache.set(startup_key('s1'), self.detail([]))
        self.backend.add('POST', '/startups/s1/review', (201, {'message': 'Review added'}))
        self.startups.add_review('s1', 4, 'Solid team')
        self.assertEqual(self.backend.calls[0]['json'], {'rating': 4, 'comment': 'Solid team'})
        self.assertTrue(self.api.cache.is_stale(startup_key('s1')))

    def test_metrics_require_a_value(self):
        """Test an empty metrics update is rejected"""
        with self.assertRaises(ValidationError):
            self.startups.update_metrics({})

    def test_metrics_update(self):
        """Test metrics updates invalidate the dashboard and the detail"""
        self.api.cache.set(MY_STARTUP_KEY, self.detail([]))
        self.api.cache.set(startup_key('s1'), self.detail([]))
        self.backend.add('PUT', '/startups/metrics', {
            'message': 'Metrics updated',
            'startup': TestDataFactory.create_startup('s1'),
        })
        self.startups.update_metrics({'revenue': [{'month': 'Jan', 'amount': 1000}]})
        self.assertEqual(self.backend.calls[0]['json'], {'revenue': [{'month': 'Jan', 'amount': 1000}]})
        self.assertTrue(self.api.cache.is_stale(MY_STARTUP_KEY))
        self.assertTrue(self.api.cache.is_stale(startup_key('s1')))


class AIHelperTests(StartupTestCase):
    """Test the AI endpoints"""

    def test_semantic_search(self):
        """Test search results are cached per query"""
        self.backend.add('GET', '/startups/ai/search', {'results': [TestDataFactory.create_startup('s1'), {}], 'count': 2})
        results = self.startups.semantic_search(' payments ')
        self.assertEqual(len(results['results']), 1)
        self.assertEqual(self.backend.calls[0]['params'], {'query': 'payments'})
        self.assertIsNotNone(self.api.cache.get(ai_search_key('payments')))

    def test_empty_queries_rejected(self):
        """Test blank search, chatbot and sentiment inputs are rejected locally"""
        with self.assertRaises(ValidationError):
            self.startups.semantic_search('  ')
        with self.assertRaises(ValidationError):
            self.startups.chatbot_query('')
        with self.assertRaises(ValidationError):
            self.startups.analyze_sentiment(None)
        self.assertEqual(self.backend.calls, [])

    def test_summary_params(self):
        """Test the summary length is sent"""
        self.backend.add('GET', '/startups/s1/ai/summary', {'summary': 'Short.'})
        self.startups.get_summary('s1', max_sentences=3)
        self.assertEqual(self.backend.calls[0]['params'], {'maxSentences': 3})

    def test_chatbot(self):
        """Test chatbot queries are posted"""
        self.backend.add('POST', '/startups/ai/chatbot', {'response': 'Try PayLater'})
        self.assertEqual(self.startups.chatbot_query('fintech ideas'), {'response': 'Try PayLater'})
        self.assertEqual(self.backend.calls[0]['json'], {'query': 'fintech ideas'})


class ToggleUpvoteCommandTests(StartupTestCase):
    """Test the toggle_upvote management command"""

    def test_command_upvotes(self):
        """Test the command toggles and prints the reconciled count"""
        self.backend.add('GET', '/auth/me', {'user': TestDataFactory.create_user('u3')})
        self.backend.add('GET', '/startups/s1', self.detail(['u1']), self.detail(['u1', 'u3']))
        self.backend.add('POST', '/startups/s1/upvote', {'hasUpvoted': True})
        out = StringIO()

        with mock.patch(
            'campus_founders.startups.management.commands.toggle_upvote.CampusFoundersAPI',
            return_value=self.api,
        ):
            call_command('toggle_upvote', 's1', stdout=out)

        self.assertIn('Upvoted', out.getvalue())
        self.assertIn('(2 upvotes)', out.getvalue())

    def test_command_requires_login(self):
        """Test the command refuses without a session"""
        self.api.client.session_store.clear()
        with mock.patch(
            'campus_founders.startups.management.commands.toggle_upvote.CampusFoundersAPI',
            return_value=self.api,
        ):
            with self.assertRaises(CommandError):
                call_command('toggle_upvote', 's1', stdout=StringIO())
