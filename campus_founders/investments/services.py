"""
Investment commitments.

Investors commit to a startup; only the startup's owner may move a
commitment through its statuses, which the client checks before calling
the backend.
"""
import logging

from campus_founders.core.exceptions import ValidationError
from campus_founders.core.normalizers import drop_missing, normalize_id, same_id
from campus_founders.core.query_cache import make_query_key
from campus_founders.core.serializers import validate_payload
from campus_founders.core.services import ApiService
from campus_founders.social.services import AUTH_USER_KEY
from .serializers import InvestmentSerializer, StatusSerializer

logger = logging.getLogger(__name__)

# Query keys
MY_INVESTMENTS_KEY = ('myInvestments',)


def startup_investments_key(startup_id):
    return make_query_key('startupInvestments', normalize_id(startup_id))


def normalize_my_investments(investments):
    # Commitments to startups that were deleted are not shown
    return drop_missing(investments, 'startup')


def normalize_startup_investments(payload):
    if isinstance(payload, dict) and isinstance(payload.get('investments'), list):
        return {**payload, 'investments': drop_missing(payload['investments'], 'investor')}
    return payload


class InvestmentService(ApiService):

    def create_investment(self, startup_id, data):
        payload = validate_payload(InvestmentSerializer, data)
        response = self.client.post(f'/investments/{normalize_id(startup_id)}', payload)
        self.cache.invalidate(MY_INVESTMENTS_KEY)
        return response

    def get_my_investments(self):
        return self.query(
            MY_INVESTMENTS_KEY,
            '/investments/my-investments',
            normalize=normalize_my_investments,
        ) or []

    def get_startup_investments(self, startup_id):
        """``{"investments": [...], "stats": {"total", "totalCommitted", "totalPending"}}``"""
        startup_id = normalize_id(startup_id)
        return self.query(
            startup_investments_key(startup_id),
            f'/investments/startup/{startup_id}',
            normalize=normalize_startup_investments,
        )

    def update_investment_status(self, investment_id, status, startup, user_id=None):
        """
        Move a commitment to ``status``.

        Args:
            investment_id: the commitment
            status: one of the investment statuses
            startup: the startup the commitment belongs to (object with
                ``owner``); used for the owner check and for invalidation
            user_id: acting user, defaults to the logged-in user

        Raises:
            ValidationError: invalid status, or the acting user does not own
                the startup (no request is sent)
        """
        payload = validate_payload(StatusSerializer, {'status': status})
        user_id = user_id or normalize_id((self.cache.get(AUTH_USER_KEY) or {}).get('user'))
        owner = (startup or {}).get('owner')
        if not user_id or not same_id(owner, user_id):
            raise ValidationError(
                'You can only update investments for your own startup',
                status_code=403,
                code='NOT_STARTUP_OWNER',
            )

        response = self.client.put(f'/investments/{normalize_id(investment_id)}/status', payload)
        self.cache.invalidate(startup_investments_key(startup))
        self.cache.invalidate(MY_INVESTMENTS_KEY)
        return response
