"""
Startup listings, detail, the founder's own startup, reviews, metrics and
the AI helpers.

Upvoting is optimistic across every cached view of a startup: its detail
page, the founder dashboard, each filtered listing and each AI search that
holds it.
"""
import logging

from campus_founders.core.exceptions import ValidationError
from campus_founders.core.normalizers import normalize_id, same_id
from campus_founders.core.query_cache import make_query_key
from campus_founders.core.serializers import validate_payload
from campus_founders.core.services import ApiService
from campus_founders.social.services import AUTH_USER_KEY
from .serializers import (
    MetricsSerializer,
    ReviewSerializer,
    StartupSerializer,
    normalize_search_results,
    normalize_startup_detail,
    normalize_startups,
)
from .upvotes import has_upvoted, list_contains, toggle_in_detail, toggle_in_list

logger = logging.getLogger(__name__)

# Query keys and prefixes
STARTUPS_KEY = ('startups',)
STARTUP_KEY = ('startup',)
MY_STARTUP_KEY = ('myStartup',)
AI_SEARCH_KEY = ('ai-search',)
AI_RECOMMENDATIONS_KEY = ('ai-recommendations',)

UPVOTE_ERROR_MESSAGE = 'Failed to upvote. Please try again.'
DEFAULT_SUMMARY_SENTENCES = 2


def startups_key(category=None, search=None):
    return make_query_key('startups', {'category': category or '', 'search': search or ''})


def startup_key(startup_id):
    return make_query_key('startup', normalize_id(startup_id))


def ai_search_key(query):
    return make_query_key('ai-search', query)


class StartupService(ApiService):

    # ==================== LISTINGS ====================

    def get_approved_startups(self, category=None, search=None):
        params = {}
        if category:
            params['category'] = category
        if search:
            params['search'] = search
        return self.query(
            startups_key(category, search),
            '/startups',
            params=params or None,
            normalize=normalize_startups,
        ) or []

    def get_startup(self, startup_id):
        """Detail payload: ``{"startup", "reviews", "stats"}``"""
        return self.query(
            startup_key(startup_id),
            f'/startups/{normalize_id(startup_id)}',
            normalize=normalize_startup_detail,
        )

    def get_my_startup(self):
        """The founder's startup with its stats, or None when they have not created one"""
        try:
            return self.query(MY_STARTUP_KEY, '/startups/my-startup', normalize=normalize_startup_detail)
        except ValidationError as e:
            if e.status_code == 404:
                return None
            raise

    # ==================== FOUNDER ====================

    def upsert_startup(self, data):
        validated = validate_payload(StartupSerializer, data)
        response = self.client.post('/startups', {**data, **validated})
        self.cache.invalidate(MY_STARTUP_KEY)
        return response

    def submit_for_approval(self):
        response = self.client.post('/startups/submit')
        self.cache.invalidate(MY_STARTUP_KEY)
        return response

    def update_metrics(self, data):
        payload = validate_payload(MetricsSerializer, data)
        response = self.client.put('/startups/metrics', payload)
        self.cache.invalidate(MY_STARTUP_KEY)
        startup_id = normalize_id((response or {}).get('startup'))
        if startup_id:
            self.cache.invalidate(startup_key(startup_id))
        return response

    def add_review(self, startup_id, rating, comment):
        payload = validate_payload(ReviewSerializer, {'rating': rating, 'comment': comment})
        response = self.client.post(f'/startups/{normalize_id(startup_id)}/review', payload)
        self.cache.invalidate(startup_key(startup_id))
        return response

    # ==================== UPVOTES ====================

    def has_upvoted(self, startup_id, user_id=None):
        user_id = user_id or self._cached_user_id()
        detail = self.cache.get(startup_key(startup_id)) or {}
        return has_upvoted(detail.get('startup'), user_id)

    def _cached_user_id(self):
        return normalize_id((self.cache.get(AUTH_USER_KEY) or {}).get('user'))

    def upvote_query_keys(self, startup_id):
        """Every cached query that shows ``startup_id``"""
        keys = [startup_key(startup_id)]
        my_startup = self.cache.get(MY_STARTUP_KEY)
        if my_startup and same_id(my_startup.get('startup'), startup_id):
            keys.append(MY_STARTUP_KEY)
        for prefix in (STARTUPS_KEY, AI_SEARCH_KEY):
            for query_key in self.cache.find_queries(prefix):
                if list_contains(self.cache.get(query_key), startup_id):
                    keys.append(query_key)
        return keys

    def _upvote_plan(self, startup_id, user_id):
        if not user_id:
            raise ValidationError('Please login to upvote', code='LOGIN_REQUIRED')
        keys = self.upvote_query_keys(startup_id)
        updates = []
        for query_key in keys:
            if query_key[0] in ('startup', 'myStartup'):
                updates.append(lambda data: toggle_in_detail(data, startup_id, user_id))
            else:
                updates.append(lambda data: toggle_in_list(data, startup_id, user_id))
        return keys, updates

    def toggle_upvote(self, startup_id, user_id=None):
        """
        Flip the user's upvote everywhere the startup is cached.

        Whether it is an upvote or its removal is decided from the cached
        ``upvotes`` list at the moment of the call, so repeated calls
        alternate even before the backend answers.
        """
        user_id = user_id or self._cached_user_id()
        keys, updates = self._upvote_plan(startup_id, user_id)
        return self.mutations.perform(
            keys,
            updates,
            lambda: self.client.post(f'/startups/{normalize_id(startup_id)}/upvote'),
            error_message=UPVOTE_ERROR_MESSAGE,
        )

    async def atoggle_upvote(self, startup_id, user_id=None):
        user_id = user_id or self._cached_user_id()
        keys, updates = self._upvote_plan(startup_id, user_id)
        return await self.mutations.aperform(
            keys,
            updates,
            lambda: self.client.post(f'/startups/{normalize_id(startup_id)}/upvote'),
            error_message=UPVOTE_ERROR_MESSAGE,
        )

    # ==================== AI ====================

    def get_ai_recommendations(self):
        return self.query(AI_RECOMMENDATIONS_KEY, '/startups/ai/recommendations', normalize=normalize_search_results)

    def semantic_search(self, query):
        query = (query or '').strip()
        if not query:
            raise ValidationError('Search query is required')
        return self.query(
            ai_search_key(query),
            '/startups/ai/search',
            params={'query': query},
            normalize=normalize_search_results,
        )

    def get_summary(self, startup_id, max_sentences=DEFAULT_SUMMARY_SENTENCES):
        startup_id = normalize_id(startup_id)
        return self.query(
            make_query_key('ai-summary', startup_id, max_sentences),
            f'/startups/{startup_id}/ai/summary',
            params={'maxSentences': max_sentences},
        )

    def get_investment_potential(self, startup_id):
        startup_id = normalize_id(startup_id)
        return self.query(make_query_key('ai-potential', startup_id), f'/startups/{startup_id}/ai/potential')

    def chatbot_query(self, query):
        if not (query or '').strip():
            raise ValidationError('Query is required')
        return self.client.post('/startups/ai/chatbot', {'query': query})

    def analyze_sentiment(self, text):
        if not (text or '').strip():
            raise ValidationError('Text is required')
        return self.client.post('/startups/ai/sentiment', {'text': text})
