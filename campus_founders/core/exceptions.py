"""
Error taxonomy for calls to the Campus Founders REST API
"""

GENERIC_ERROR_MESSAGE = 'Something went wrong. Please try again.'


class CampusFoundersError(Exception):
    """Base class for every error the client raises"""
    default_message = GENERIC_ERROR_MESSAGE

    def __init__(self, message=None, status_code=None, code=None, payload=None):
        # message is only set when it is fit to show to a user
        self.message = message
        self.status_code = status_code
        self.code = code
        self.payload = payload or {}
        super().__init__(message or self.default_message)


class NetworkError(CampusFoundersError):
    """The backend could not be reached or sent an unreadable body"""
    default_message = 'Could not reach the server. Check your connection.'


class AuthenticationError(CampusFoundersError):
    """The session is invalid or expired; the stored token has been cleared"""
    default_message = 'Your session has expired. Please log in again.'


class ValidationError(CampusFoundersError):
    """The request was rejected; the session is preserved"""
    default_message = 'The request was rejected.'


class ServerError(CampusFoundersError):
    """5xx from the backend; the session is preserved"""
    default_message = 'Internal server error'


def get_error_message(error, fallback=GENERIC_ERROR_MESSAGE):
    """Human-readable message for a notification: the server's when present, else fallback"""
    if isinstance(error, CampusFoundersError) and error.message:
        return error.message
    return fallback
