"""
Test suite for Investments module
Tests: commitment form validation, listings and owner-only status changes
"""
from django.test import SimpleTestCase

from campus_founders.core.exceptions import ValidationError
from campus_founders.core.test_utils import FakeBackend, TestDataFactory, make_api
from campus_founders.investments.services import MY_INVESTMENTS_KEY, startup_investments_key
from campus_founders.social.services import AUTH_USER_KEY


class InvestmentTestCase(SimpleTestCase):

    def setUp(self):
        self.backend = FakeBackend()
        self.api = make_api(self.backend)
        self.investments = self.api.investments
        self.founder = TestDataFactory.create_user('founder')
        self.investor = TestDataFactory.create_user('investor', role='investor')
        self.startup = TestDataFactory.create_startup('s1', owner='founder')


class CreateInvestmentTests(InvestmentTestCase):
    """Test the commitment form"""

    def test_create_investment(self):
        """Test a valid commitment is sent and my investments go stale"""
        self.api.cache.set(MY_INVESTMENTS_KEY, [])
        self.backend.add('POST', '/investments/s1', (201, {'message': 'Investment commitment created successfully'}))

        self.investments.create_investment('s1', {
            'amount': '50000',
            'milestone': 'MVP launch',
            'deadlineStartDate': '2026-01-01',
            'deadlineEndDate': '2026-03-31',
            'deadlineTime': '17:30',
        })

        body = self.backend.calls[0]['json']
        self.assertEqual(body['amount'], 50000.0)
        self.assertEqual(body['milestone'], 'MVP launch')
        self.assertEqual(body['message'], '')
        self.assertEqual(body['deadlineStartDate'], '2026-01-01')
        self.assertEqual(body['deadlineTime'], '17:30')
        self.assertTrue(self.api.cache.is_stale(MY_INVESTMENTS_KEY))

    def test_amount_must_be_positive(self):
        """Test zero, negative and missing amounts are rejected locally"""
        for amount in ('0', '-10', 'abc', None):
            with self.assertRaises(ValidationError):
                self.investments.create_investment('s1', {'amount': amount})
        self.assertEqual(self.backend.calls, [])

    def test_deadline_window_order(self):
        """Test the deadline window must not end before it starts"""
        with self.assertRaises(ValidationError) as ctx:
            self.investments.create_investment('s1', {
                'amount': 1000,
                'deadlineStartDate': '2026-05-01',
                'deadlineEndDate': '2026-04-01',
            })
        self.assertIn('on or before', str(ctx.exception))

    def test_same_day_window_allowed(self):
        """Test a one-day window is valid"""
        self.backend.add('POST', '/investments/s1', (201, {}))
        self.investments.create_investment('s1', {
            'amount': 1000,
            'deadlineStartDate': '2026-05-01',
            'deadlineEndDate': '2026-05-01',
        })
        self.assertEqual(len(self.backend.calls), 1)

    def test_deadline_time_format(self):
        """Test the deadline time must be HH:MM"""
        for value in ('5pm', '24:00', '9:30'):
            with self.assertRaises(ValidationError):
                self.investments.create_investment('s1', {'amount': 1000, 'deadlineTime': value})


class InvestmentListTests(InvestmentTestCase):
    """Test investment listings"""

    def test_my_investments_drop_deleted_startups(self):
        """Test commitments to deleted startups are not listed"""
        self.backend.add('GET', '/investments/my-investments', [
            TestDataFactory.create_investment(self.startup, 'investor', investment_id='i1'),
            TestDataFactory.create_investment(None, 'investor', investment_id='i2'),
        ])
        investments = self.investments.get_my_investments()
        self.assertEqual([i['_id'] for i in investments], ['i1'])

    def test_startup_investments(self):
        """Test the founder view keeps stats and drops deleted investors"""
        self.backend.add('GET', '/investments/startup/s1', {
            'investments': [
                TestDataFactory.create_investment('s1', self.investor, investment_id='i1'),
                TestDataFactory.create_investment('s1', {}, investment_id='i2'),
            ],
            'stats': {'total': 1, 'totalCommitted': 0, 'totalPending': 50000},
        })
        data = self.investments.get_startup_investments({'_id': 's1'})
        self.assertEqual([i['_id'] for i in data['investments']], ['i1'])
        self.assertEqual(data['stats']['totalPending'], 50000)
        self.assertIsNotNone(self.api.cache.get(startup_investments_key('s1')))


class InvestmentStatusTests(InvestmentTestCase):
    """Test owner-only status transitions"""

    def test_owner_updates_status(self):
        """Test the owner's change is sent and both investment lists go stale"""
        self.api.cache.set(AUTH_USER_KEY, {'user': self.founder})
        self.api.cache.set(startup_investments_key('s1'), {'investments': []})
        self.api.cache.set(MY_INVESTMENTS_KEY, [])
        self.backend.add('PUT', '/investments/i1/status', {'message': 'Investment status updated'})

        self.investments.update_investment_status('i1', 'committed', self.startup)

        self.assertEqual(self.backend.calls[0]['json'], {'status': 'committed'})
        self.assertTrue(self.api.cache.is_stale(startup_investments_key('s1')))
        self.assertTrue(self.api.cache.is_stale(MY_INVESTMENTS_KEY))

    def test_owner_given_as_object(self):
        """Test a populated owner is recognised"""
        startup = {**self.startup, 'owner': {'_id': 'founder'}}
        self.backend.add('PUT', '/investments/i1/status', {})
        self.investments.update_investment_status('i1', 'rejected', startup, user_id='founder')
        self.assertEqual(len(self.backend.calls), 1)

    def test_non_owner_refused(self):
        """Test anyone but the owner is refused without a request"""
        with self.assertRaises(ValidationError) as ctx:
            self.investments.update_investment_status('i1', 'committed', self.startup, user_id='investor')
        self.assertEqual(ctx.exception.code, 'NOT_STARTUP_OWNER')
        self.assertEqual(self.backend.calls, [])

    def test_anonymous_refused(self):
        """Test status changes need a user"""
        with self.assertRaises(ValidationError):
            self.investments.update_investment_status('i1', 'committed', self.startup)
        self.assertEqual(self.backend.calls, [])

    def test_unknown_status_refused(self):
        """Test statuses outside the lifecycle are rejected"""
        with self.assertRaises(ValidationError):
            self.investments.update_investment_status('i1', 'approved', self.startup, user_id='founder')
        self.assertEqual(self.backend.calls, [])
