"""
Test suite for Social module
Tests: session, profile normalization, friend requests, premium and chat credentials
"""
from io import StringIO
from unittest import mock

import requests
from django.core.management import call_command
from django.test import SimpleTestCase

from campus_founders.core.exceptions import (
    AuthenticationError,
    NetworkError,
    ServerError,
    ValidationError,
)
from campus_founders.core.notifications import notification
from campus_founders.core.test_utils import (
    FakeBackend,
    NotificationRecorder,
    TestDataFactory,
    make_api,
)
from campus_founders.social.serializers import normalize_friend_requests, normalize_user, normalize_users
from campus_founders.social.services import (
    AUTH_USER_KEY,
    CHAT_UNAVAILABLE_MESSAGE,
    FRIEND_REQUESTS_KEY,
    FRIENDS_KEY,
    OUTGOING_REQUESTS_KEY,
)


class SocialTestCase(SimpleTestCase):

    def setUp(self):
        self.backend = FakeBackend()
        self.api = make_api(self.backend)
        self.social = self.api.social
        self.me = normalize_user(TestDataFactory.create_user('me', username='founder'))
        self.recorder = NotificationRecorder()
        notification.connect(self.recorder, weak=False)
        self.addCleanup(notification.disconnect, self.recorder)

    def log_in(self, **fields):
        self.api.cache.set(AUTH_USER_KEY, {'user': {**self.me, **fields}})


class UserNormalizationTests(SimpleTestCase):
    """Test the profile field mapping at the normalization boundary"""

    def test_legacy_fields_mapped(self):
        """Test legacy language fields become interest and skill fields"""
        user = normalize_user(TestDataFactory.create_user('u1', nativeLanguage='edtech', learningLanguage='design'))
        self.assertEqual(user['interestedDomain'], 'edtech')
        self.assertEqual(user['currentFocus'], 'edtech')
        self.assertEqual(user['skillTrack'], 'design')

    def test_defaults(self):
        """Test missing role and premium flag get defaults"""
        user = normalize_user({'_id': 'u1', 'role': None, 'isPremium': None, 'nativeLanguage': None})
        self.assertEqual(user['role'], 'normal')
        self.assertFalse(user['isPremium'])
        self.assertEqual(user['interestedDomain'], '')
        self.assertEqual(user['skillTrack'], '')

    def test_deleted_users_dropped(self):
        """Test null and id-less users are removed from lists"""
        users = normalize_users([TestDataFactory.create_user('u1'), None, {}])
        self.assertEqual([u['_id'] for u in users], ['u1'])

    def test_friend_requests_with_deleted_sender(self):
        """Test requests whose sender or recipient was deleted are dropped"""
        sender = TestDataFactory.create_user('u2')
        payload = {
            'incomingReqs': [
                TestDataFactory.create_friend_request(sender, 'me', 'r1'),
                TestDataFactory.create_friend_request(None, 'me', 'r2'),
            ],
            'acceptedReqs': [
                TestDataFactory.create_friend_request('me', {}, 'r3', status='accepted'),
            ],
        }
        data = normalize_friend_requests(payload)
        self.assertEqual([r['_id'] for r in data['incomingReqs']], ['r1'])
        self.assertEqual(data['incomingReqs'][0]['sender']['role'], 'student')
        self.assertEqual(data['acceptedReqs'], [])


class SessionTests(SocialTestCase):
    """Test login, logout and the current user"""

    def test_no_token_no_request(self):
        """Test the current user is None without a stored token"""
        self.api.client.session_store.clear()
        self.assertIsNone(self.social.get_auth_user())
        self.assertEqual(self.backend.calls, [])

    def test_get_auth_user_cached(self):
        """Test the current user is fetched once and normalized"""
        self.backend.add('GET', '/auth/me', {'success': True, 'user': TestDataFactory.create_user('me')})
        user = self.social.get_auth_user()
        self.assertEqual(user['_id'], 'me')
        self.assertEqual(user['interestedDomain'], 'fintech')
        self.assertEqual(self.social.current_user_id(), 'me')
        self.assertEqual(len(self.backend.calls_to('GET', '/auth/me')), 1)

    def test_expired_session(self):
        """Test an expired session yields no user and clears the token"""
        self.backend.add('GET', '/auth/me', (401, {'message': 'Unauthorized - Invalid Token', 'error': 'INVALID_TOKEN'}))
        self.assertIsNone(self.social.get_auth_user())
        self.assertFalse(self.api.client.session_store.has_token)
        self.assertIsNone(self.api.cache.get(AUTH_USER_KEY))

    def test_server_misconfiguration(self):
        """Test a missing server environment variable is reported as a server error"""
        self.backend.add('GET', '/auth/me', (500, {'message': 'JWT_SECRET_KEY missing', 'error': 'ENV_VAR_MISSING'}))
        with self.assertRaises(ServerError) as ctx:
            self.social.get_auth_user()
        self.assertEqual(ctx.exception.message, 'Server configuration error')
        self.assertTrue(self.api.client.session_store.has_token)

    def test_other_errors_yield_no_user(self):
        """Test transient failures keep the session"""
        self.backend.add('GET', '/auth/me', requests.exceptions.ConnectionError("refused"))
        self.assertIsNone(self.social.get_auth_user())
        self.assertTrue(self.api.client.session_store.has_token)

    def test_login_stores_token_and_user(self):
        """Test logging in persists the token and caches the user"""
        self.api.client.session_store.clear()
        self.backend.add('POST', '/auth/login', {
            'success': True,
            'token': 'fresh-token',
            'user': TestDataFactory.create_user('me'),
        })
        self.social.login('founder@test.com', 'secret1')
        self.assertEqual(self.api.client.session_store.get_token(), 'fresh-token')
        self.assertEqual(self.social.get_auth_user()['_id'], 'me')
        self.assertEqual(len(self.backend.calls_to('GET', '/auth/me')), 0)

    def test_invalid_signup_not_sent(self):
        """Test an invalid signup form is rejected locally"""
        with self.assertRaises(ValidationError) as ctx:
            self.social.signup({'email': 'not-an-email', 'password': '123', 'username': 'x'})
        self.assertEqual(ctx.exception.code, 'CLIENT_VALIDATION')
        self.assertEqual(self.backend.calls, [])

    def test_logout_clears_even_on_failure(self):
        """Test local session and cache are cleared when the logout call fails"""
        self.log_in()
        self.backend.add('POST', '/auth/logout', requests.exceptions.ConnectionError("refused"))
        with self.assertRaises(NetworkError):
            self.social.logout()
        self.assertFalse(self.api.client.session_store.has_token)
        self.assertIsNone(self.api.cache.get(AUTH_USER_KEY))

    def test_onboarding_sends_legacy_fields(self):
        """Test the interested domain is sent under the legacy field names"""
        self.backend.add('POST', '/auth/onboarding', {'success': True, 'user': TestDataFactory.create_user('me')})
        self.social.complete_onboarding({
            'bio': 'Building things',
            'interestedDomain': 'healthtech',
            'location': 'Pune',
            'profilePic': 'https://avatar.iran.liara.run/public/1.png',
        })
        body = self.backend.calls[0]['json']
        self.assertEqual(body['nativeLanguage'], 'healthtech')
        self.assertEqual(body['learningLanguage'], 'healthtech')

    def test_onboarding_rejects_bad_picture(self):
        """Test profile pictures must be data URLs or HTTP URLs"""
        with self.assertRaises(ValidationError):
            self.social.complete_onboarding({
                'bio': 'b', 'interestedDomain': 'd', 'location': 'l', 'profilePic': 'ftp://pic',
            })
        self.assertEqual(self.backend.calls, [])

    def test_username_conflict(self):
        """Test a 409 means the username is taken"""
        self.backend.add('GET', '/auth/check-username/taken', (409, {'message': 'Username already exists'}))
        self.assertEqual(self.social.check_username_exists('taken'), {'exists': True})


class FriendRequestTests(SocialTestCase):
    """Test optimistic friend requests"""

    def setUp(self):
        super().setUp()
        self.log_in()
        self.other = TestDataFactory.create_user('u2')
        self.backend.add('GET', '/users/friends', [])
        self.backend.add('GET', '/users/outgoing-friend-request', [])
        self.social.get_friends()
        self.social.get_outgoing_friend_requests()

    def test_send_request_optimistic(self):
        """Test the outgoing list shows the request and the backend is called"""
        self.backend.add('POST', '/users/friend-request/u2', {'_id': 'r1', 'sender': 'me', 'recipient': 'u2'})
        result = self.social.send_friend_request('u2')
        self.assertTrue(result.ok)
        self.assertEqual(self.social.connection_status('u2'), 'pending')
        self.assertTrue(self.api.cache.is_stale(OUTGOING_REQUESTS_KEY))

    def test_duplicate_request_refused(self):
        """Test a second request to the same user is refused without a network call"""
        self.backend.add('POST', '/users/friend-request/u2', {'_id': 'r1'})
        self.social.send_friend_request('u2')
        with self.assertRaises(ValidationError):
            self.social.send_friend_request({'_id': 'u2'})
        self.assertEqual(len(self.backend.calls_to('POST', '/users/friend-request/u2')), 1)

    def test_request_to_user_with_pending_request_to_me_refused(self):
        """Test a request is refused when the other user already sent one to me"""
        request = TestDataFactory.create_friend_request(self.other, 'me', 'r1')
        self.api.cache.set(FRIEND_REQUESTS_KEY, {'incomingReqs': [request], 'acceptedReqs': []})
        with self.assertRaises(ValidationError):
            self.social.send_friend_request('u2')
        self.assertEqual(self.backend.calls_to('POST', '/users/friend-request/u2'), [])
        self.assertEqual(self.api.cache.get(OUTGOING_REQUESTS_KEY), [])

    def test_request_to_self_refused(self):
        """Test a request to oneself is refused"""
        with self.assertRaises(ValidationError):
            self.social.send_friend_request('me')
        self.assertEqual(self.backend.calls_to('POST', '/users/friend-request/me'), [])

    def test_request_to_friend_refused(self):
        """Test a request to an existing friend is refused"""
        self.api.cache.set(FRIENDS_KEY, [self.other])
        self.assertEqual(self.social.connection_status('u2'), 'connected')
        with self.assertRaises(ValidationError):
            self.social.send_friend_request('u2')

    def test_send_request_rollback(self):
        """Test a rejected request disappears and the server message is shown"""
        self.backend.add('POST', '/users/friend-request/u2', (400, {'message': 'Recipient not found'}))
        result = self.social.send_friend_request('u2')
        self.assertFalse(result.ok)
        self.assertEqual(self.api.cache.get(OUTGOING_REQUESTS_KEY), [])
        self.assertIsNone(self.social.connection_status('u2'))
        self.assertEqual(self.recorder.errors[0]['message'], 'Recipient not found')

    def test_accept_request(self):
        """Test accepting moves the sender into friends"""
        request = TestDataFactory.create_friend_request(self.other, 'me', 'r1')
        self.api.cache.set(FRIEND_REQUESTS_KEY, {'incomingReqs': [request], 'acceptedReqs': []})
        self.assertEqual(self.social.incoming_requests_by_sender(), {'u2': 'r1'})
        self.backend.add('PUT', '/users/friend-request/r1/accept', {'message': 'Friend request accepted'})

        result = self.social.accept_friend_request('r1')

        self.assertTrue(result.ok)
        self.assertEqual(self.api.cache.get(FRIEND_REQUESTS_KEY)['incomingReqs'], [])
        self.assertEqual(self.api.cache.get(FRIENDS_KEY), [self.other])

    def test_accept_request_rollback(self):
        """Test both the inbox and the friends list are restored on failure"""
        request = TestDataFactory.create_friend_request(self.other, 'me', 'r1')
        self.api.cache.set(FRIEND_REQUESTS_KEY, {'incomingReqs': [request], 'acceptedReqs': []})
        self.backend.add('PUT', '/users/friend-request/r1/accept', (500, {'message': 'Internal server error'}))

        result = self.social.accept_friend_request('r1')

        self.assertFalse(result.ok)
        self.assertEqual(self.api.cache.get(FRIEND_REQUESTS_KEY)['incomingReqs'], [request])
        self.assertEqual(self.api.cache.get(FRIENDS_KEY), [])


class PremiumTests(SocialTestCase):
    """Test premium purchase and chat credentials"""

    def test_purchase_premium(self):
        """Test the user shows as premium and a success notification is sent"""
        self.log_in()
        self.backend.add('POST', '/users/premium/purchase', {'success': True})
        result = self.social.purchase_premium()
        self.assertTrue(result.ok)
        self.assertTrue(self.api.cache.get(AUTH_USER_KEY)['user']['isPremium'])
        self.assertEqual(len(self.recorder.successes), 1)

    def test_purchase_premium_rollback(self):
        """Test a failed purchase restores the free account"""
        self.log_in()
        self.backend.add('POST', '/users/premium/purchase', (400, {'message': 'Payment declined'}))
        result = self.social.purchase_premium()
        self.assertFalse(result.ok)
        self.assertFalse(self.api.cache.get(AUTH_USER_KEY)['user']['isPremium'])
        self.assertEqual(self.recorder.successes, [])
        self.assertEqual(self.recorder.errors[0]['message'], 'Payment declined')

    def test_chat_requires_login(self):
        """Test chat credentials need a logged-in user"""
        self.api.client.session_store.clear()
        with self.assertRaises(AuthenticationError):
            self.social.get_chat_credentials()

    def test_chat_requires_premium(self):
        """Test chat credentials need a premium account"""
        self.log_in()
        with self.assertRaises(ValidationError) as ctx:
            self.social.get_chat_credentials()
        self.assertEqual(ctx.exception.code, 'PREMIUM_REQUIRED')

    def test_chat_credentials(self):
        """Test the token and identity triple, without replacing the session token"""
        self.log_in(isPremium=True, profilePic='https://img/me.png')
        self.backend.add('GET', '/chat/token', {'token': 'chat-token'})
        credentials = self.social.get_chat_credentials()
        self.assertEqual(credentials['token'], 'chat-token')
        self.assertEqual(credentials['user'], {
            'id': 'me',
            'name': self.me['fullName'],
            'image': 'https://img/me.png',
        })
        self.assertEqual(self.api.client.session_store.get_token(), 'test-token')

    def test_chat_failure_offers_retry(self):
        """Test a failure to get a chat token notifies with a retry callable"""
        self.log_in(isPremium=True)
        self.backend.add('GET', '/chat/token', requests.exceptions.ConnectionError("refused"))
        with self.assertRaises(NetworkError):
            self.social.get_chat_credentials()
        error = self.recorder.errors[0]
        self.assertEqual(error['message'], CHAT_UNAVAILABLE_MESSAGE)
        self.assertEqual(error['retry'], self.social.get_chat_credentials)


class FriendRequestsCommandTests(SocialTestCase):
    """Test the friend_requests management command"""

    def test_list_and_accept(self):
        """Test incoming requests are listed and one can be accepted"""
        sender = TestDataFactory.create_user('u2', username='cofounder')
        request = TestDataFactory.create_friend_request(sender, 'me', 'r1')
        self.backend.add('GET', '/auth/me', {'user': TestDataFactory.create_user('me')})
        self.backend.add('GET', '/users/friend-request', {'incomingReqs': [request], 'acceptedReqs': []})
        self.backend.add('GET', '/users/outgoing-friend-request', [])
        self.backend.add('PUT', '/users/friend-request/r1/accept', {'message': 'Friend request accepted'})
        out = StringIO()

        with mock.patch(
            'campus_founders.social.management.commands.friend_requests.CampusFoundersAPI',
            return_value=self.api,
        ):
            call_command('friend_requests', accept='r1', stdout=out)

        self.assertIn('Accepted request r1', out.getvalue())
        self.assertEqual(len(self.backend.calls_to('PUT', '/users/friend-request/r1/accept')), 1)
