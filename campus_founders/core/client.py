"""
HTTP client for the Campus Founders REST API.

Attaches the stored bearer token to every request, stores any rotated token
found in a response body, and turns failed responses into the client error
taxonomy. Only a genuine authentication failure clears the stored session.
"""
import logging
import re

import requests
from django.conf import settings
from rest_framework import status

from .exceptions import AuthenticationError, NetworkError, ServerError, ValidationError
from .session import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_API_URL = 'http://localhost:5001/api'

# Structured codes the backend sends with 401s caused by the session itself
AUTH_ERROR_CODES = {
    'TOKEN_EXPIRED',
    'INVALID_TOKEN',
    'TOKEN_NOT_ACTIVE',
    'NO_TOKEN',
    'USER_NOT_FOUND',
}

# Fallback for 401s that carry no error code
AUTH_MESSAGE_PATTERNS = [
    re.compile(r'\bunauthori[sz]ed\b', re.IGNORECASE),
    re.compile(r'\b(token|session)\b.*\b(expired|invalid|not active)\b', re.IGNORECASE),
    re.compile(r'\b(expired|invalid)\b.*\b(token|session)\b', re.IGNORECASE),
    re.compile(r'\bnot logged in\b', re.IGNORECASE),
    re.compile(r'\buser not found\b', re.IGNORECASE),
    re.compile(r'\bno token provided\b', re.IGNORECASE),
]


def is_authentication_failure(message=None, code=None):
    """
    Decide whether a 401 means the session is gone.

    The error code is authoritative when present; message text is only
    consulted for responses without one.
    """
    if code:
        return code in AUTH_ERROR_CODES
    if not message:
        # A bare 401 has nothing but the status to go on
        return True
    return any(pattern.search(message) for pattern in AUTH_MESSAGE_PATTERNS)


class RemoteDataClient:
    """Thin typed wrapper over ``requests.Session``"""

    def __init__(self, base_url=None, session_store=None, http=None, timeout=None):
        self.base_url = (
            base_url or getattr(settings, 'CAMPUS_FOUNDERS_API_URL', DEFAULT_API_URL)
        ).rstrip('/')
        self.session_store = session_store or SessionStore()
        self.http = http or requests.Session()
        if timeout is None:
            timeout = getattr(settings, 'CAMPUS_FOUNDERS_REQUEST_TIMEOUT', None)
        self.timeout = timeout

    def build_url(self, path):
        return f"{self.base_url}/{path.lstrip('/')}"

    def get_headers(self):
        headers = {'Accept': 'application/json'}
        token = self.session_store.get_token()
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def request(self, method, path, body=None, params=None, normalize=None, store_token=True):
        """
        Issue a request and return the decoded payload.

        Args:
            method: HTTP verb
            path: path relative to the API base URL
            body: JSON body (optional)
            params: query string parameters (optional)
            normalize: callable applied to a successful payload
            store_token: persist a `token` found in the body; off for
                responses whose token is not a session token (chat)

        Raises:
            NetworkError, AuthenticationError, ValidationError, ServerError
        """
        url = self.build_url(path)
        method = method.upper()
        try:
            response = self.http.request(
                method,
                url,
                json=body,
                params=params,
                headers=self.get_headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"{method} {url} failed: {str(e)}")
            raise NetworkError() from e

        payload = self.decode(response, method, url)

        if store_token and isinstance(payload, dict) and payload.get('token'):
            self.session_store.set_token(payload['token'])

        if response.status_code >= 400:
            error = self.classify(response.status_code, payload)
            logger.warning(
                f"{method} {url} -> {response.status_code} "
                f"{type(error).__name__}: {error}"
            )
            raise error

        logger.debug(f"{method} {url} -> {response.status_code}")
        if normalize is not None:
            payload = normalize(payload)
        return payload

    def decode(self, response, method, url):
        if response.status_code == status.HTTP_204_NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            if response.status_code >= 400:
                # Error pages from proxies are not JSON; classify by status alone
                return {}
            logger.warning(f"{method} {url} returned a body that is not JSON")
            raise NetworkError() from e

    def classify(self, status_code, payload):
        """Map a failed response onto the error taxonomy"""
        body = payload if isinstance(payload, dict) else {}
        message = body.get('message') or None
        code = body.get('error') if isinstance(body.get('error'), str) else None

        if status_code == status.HTTP_401_UNAUTHORIZED:
            if is_authentication_failure(message, code):
                self.session_store.clear()
                return AuthenticationError(message, status_code, code, body)
            return ValidationError(message, status_code, code, body)

        if status.is_server_error(status_code):
            return ServerError(message, status_code, code, body)

        return ValidationError(message, status_code, code, body)

    def get(self, path, params=None, normalize=None, store_token=True):
        return self.request('GET', path, params=params, normalize=normalize, store_token=store_token)

    def post(self, path, body=None, params=None, normalize=None):
        return self.request('POST', path, body=body, params=params, normalize=normalize)

    def put(self, path, body=None, normalize=None):
        return self.request('PUT', path, body=body, normalize=normalize)

    def delete(self, path):
        return self.request('DELETE', path)

    def close(self):
        self.http.close()
