"""
Users, friends, session and premium.

Friend request sending/accepting and premium purchase are optimistic: the
cached lists change before the backend confirms and are rolled back if it
refuses.
"""
import logging

from campus_founders.core.exceptions import (
    AuthenticationError,
    CampusFoundersError,
    ServerError,
    ValidationError,
)
from campus_founders.core.normalizers import contains_id, normalize_id, same_id
from campus_founders.core.notifications import notify_error, notify_success
from campus_founders.core.serializers import validate_payload
from campus_founders.core.services import ApiService
from .serializers import (
    LoginSerializer,
    OnboardingSerializer,
    SignupSerializer,
    normalize_auth_payload,
    normalize_friend_requests,
    normalize_outgoing_requests,
    normalize_users,
)

logger = logging.getLogger(__name__)

# Query keys
AUTH_USER_KEY = ('authUser',)
FRIENDS_KEY = ('friends',)
USERS_KEY = ('users',)
OUTGOING_REQUESTS_KEY = ('outgoingFriendReqs',)
FRIEND_REQUESTS_KEY = ('friendRequests',)

CHAT_UNAVAILABLE_MESSAGE = 'Could not connect to chat. Please try again.'


# ==================== OPTIMISTIC UPDATES ====================

def add_outgoing_request(outgoing, recipient_id, sender_id=None):
    """Outgoing list with a pending request to ``recipient_id`` (at most one per recipient)"""
    if outgoing is None:
        return None
    if any(same_id(req.get('recipient'), recipient_id) for req in outgoing):
        return outgoing
    return outgoing + [{
        'sender': sender_id,
        'recipient': {'_id': str(recipient_id)},
        'status': 'pending',
    }]


def remove_incoming_request(friend_requests, request_id):
    if not friend_requests:
        return friend_requests
    incoming = friend_requests.get('incomingReqs') or []
    return {
        **friend_requests,
        'incomingReqs': [req for req in incoming if not same_id(req, request_id)],
    }


def add_friend(friends, user):
    if friends is None or user is None or contains_id(friends, user):
        return friends
    return friends + [user]


class SocialService(ApiService):

    # ==================== SESSION ====================

    def signup(self, data):
        payload = validate_payload(SignupSerializer, data)
        response = self.client.post('/auth/signup', payload, normalize=normalize_auth_payload)
        self._store_auth_user(response)
        return response

    def login(self, email, password):
        payload = validate_payload(LoginSerializer, {'email': email, 'password': password})
        response = self.client.post('/auth/login', payload, normalize=normalize_auth_payload)
        self._store_auth_user(response)
        return response

    def logout(self):
        """Log out on the backend; local session and cache are cleared regardless"""
        try:
            return self.client.post('/auth/logout')
        finally:
            self.client.session_store.clear()
            self.cache.clear()

    def _store_auth_user(self, response):
        if isinstance(response, dict) and response.get('user'):
            self.cache.set(AUTH_USER_KEY, {'user': response['user']})

    def get_auth_user(self):
        """The logged-in user, or None without a valid session"""
        if not self.client.session_store.has_token:
            return None
        try:
            data = self.query(AUTH_USER_KEY, '/auth/me', normalize=normalize_auth_payload)
        except AuthenticationError:
            self.cache.remove(AUTH_USER_KEY)
            return None
        except CampusFoundersError as e:
            if e.code == 'ENV_VAR_MISSING':
                raise ServerError('Server configuration error', e.status_code, e.code, e.payload) from e
            logger.warning(f"Could not load the current user: {str(e)}")
            return None
        return (data or {}).get('user')

    def current_user_id(self):
        return normalize_id(self.get_auth_user())

    def _cached_user_id(self):
        data = self.cache.get(AUTH_USER_KEY) or {}
        return normalize_id(data.get('user'))

    def complete_onboarding(self, data):
        payload = validate_payload(OnboardingSerializer, data)
        response = self.client.post('/auth/onboarding', payload, normalize=normalize_auth_payload)
        self.cache.invalidate(AUTH_USER_KEY)
        return response

    def check_username_exists(self, username):
        try:
            return self.client.get(f'/auth/check-username/{username}')
        except ValidationError as e:
            if e.status_code == 409:
                return {'exists': True}
            raise

    def update_profile(self, data):
        response = self.client.put('/users/profile', data, normalize=normalize_auth_payload)
        self.cache.invalidate(AUTH_USER_KEY)
        return response

    # ==================== FRIENDS ====================

    def get_friends(self):
        return self.query(FRIENDS_KEY, '/users/friends', normalize=normalize_users) or []

    def get_recommended_users(self):
        return self.query(USERS_KEY, '/users', normalize=normalize_users) or []

    def get_outgoing_friend_requests(self):
        return self.query(
            OUTGOING_REQUESTS_KEY,
            '/users/outgoing-friend-request',
            normalize=normalize_outgoing_requests,
        ) or []

    def get_friend_requests(self):
        return self.query(
            FRIEND_REQUESTS_KEY,
            '/users/friend-request',
            normalize=normalize_friend_requests,
        ) or {}

    def outgoing_recipient_ids(self):
        outgoing = self.cache.get(OUTGOING_REQUESTS_KEY) or []
        return {normalize_id(req.get('recipient')) for req in outgoing} - {None}

    def incoming_requests_by_sender(self):
        """sender id -> request id for every pending incoming request"""
        requests = (self.cache.get(FRIEND_REQUESTS_KEY) or {}).get('incomingReqs') or []
        mapping = {}
        for req in requests:
            sender_id = normalize_id(req.get('sender'))
            request_id = normalize_id(req)
            if sender_id and request_id:
                mapping[sender_id] = request_id
        return mapping

    def connection_status(self, user_id):
        """'connected', 'pending' or None, from what is cached"""
        if not user_id:
            return None
        if contains_id(self.cache.get(FRIENDS_KEY) or [], user_id):
            return 'connected'
        if normalize_id(user_id) in self.outgoing_recipient_ids():
            return 'pending'
        return None

    def send_friend_request(self, recipient_id):
        """
        Optimistically record a pending request to ``recipient_id``.

        Refused locally (ValidationError, no request sent) for oneself, an
        existing friend, or a user with a pending request in either direction.
        """
        my_id = self._cached_user_id()
        if my_id and same_id(my_id, recipient_id):
            raise ValidationError("You can't send friend request to yourself")
        status = self.connection_status(recipient_id)
        if status == 'connected':
            raise ValidationError('You are already friends with this user')
        if status == 'pending' or normalize_id(recipient_id) in self.incoming_requests_by_sender():
            raise ValidationError('A friend request already exists between you and this user')

        return self.mutations.perform(
            OUTGOING_REQUESTS_KEY,
            lambda outgoing: add_outgoing_request(outgoing, recipient_id, my_id),
            lambda: self.client.post(f'/users/friend-request/{recipient_id}'),
            invalidate=[FRIENDS_KEY],
            error_message='Failed to send friend request',
        )

    def accept_friend_request(self, request_id):
        """Optimistically drop the request from the inbox and add its sender to friends"""
        incoming = (self.cache.get(FRIEND_REQUESTS_KEY) or {}).get('incomingReqs') or []
        sender = next((req.get('sender') for req in incoming if same_id(req, request_id)), None)

        return self.mutations.perform(
            [FRIEND_REQUESTS_KEY, FRIENDS_KEY],
            [
                lambda requests: remove_incoming_request(requests, request_id),
                lambda friends: add_friend(friends, sender),
            ],
            lambda: self.client.put(f'/users/friend-request/{request_id}/accept'),
            invalidate=[USERS_KEY],
            error_message='Failed to accept friend request',
        )

    # ==================== PREMIUM & CHAT ====================

    def purchase_premium(self):
        def activate(data):
            if not data or not data.get('user'):
                return data
            return {**data, 'user': {**data['user'], 'isPremium': True}}

        result = self.mutations.perform(
            AUTH_USER_KEY,
            activate,
            lambda: self.client.post('/users/premium/purchase'),
            error_message='Failed to activate premium',
        )
        if result.ok:
            notify_success('Premium subscription activated successfully')
        return result

    def get_stream_token(self):
        # The chat token is not a session token
        return self.client.get('/chat/token', store_token=False)

    def get_chat_credentials(self):
        """
        Token plus identity (id, display name, avatar URL) for the chat/video SDK.

        Chat is a premium feature. A failure to obtain the token is reported
        with a notification that offers a retry.
        """
        user = self.get_auth_user()
        if not user:
            raise AuthenticationError()
        if not user.get('isPremium'):
            raise ValidationError('Chat and video calls require a premium subscription', code='PREMIUM_REQUIRED')
        try:
            response = self.get_stream_token() or {}
        except CampusFoundersError as e:
            notify_error(e, CHAT_UNAVAILABLE_MESSAGE, retry=self.get_chat_credentials)
            raise
        return {
            'token': response.get('token'),
            'user': {
                'id': normalize_id(user),
                'name': user.get('fullName') or user.get('username') or '',
                'image': user.get('profilePic') or '',
            },
        }
