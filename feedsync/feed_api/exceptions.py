# feedsync/feed_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class FeedAPIError(Exception):
    """Base exception for feed_api errors."""
    pass

class APIConnectionError(FeedAPIError):
    """Raised for network or connection issues."""
    pass

class APIRequestError(FeedAPIError):
    """Raised for errors in constructing or sending the request (e.g., bad data)."""
    def __init__(self, message: str, response_data: dict = None):
        super().__init__(message)
        self.response_data = response_data or {}

class APIResponseError(FeedAPIError):
    """Raised for non-2xx responses or issues parsing the response."""
    def __init__(self, status_code: int, message: str, response_data: dict = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}

class AuthenticationError(FeedAPIError):
    """Raised for authentication failures."""
    pass


def is_retryable(exc: BaseException) -> bool:
    """
    True if a failed call may succeed when repeated later (network trouble,
    rate limiting, server-side errors). Validation and auth failures are fatal.
    """
    if isinstance(exc, APIConnectionError):
        return True
    if isinstance(exc, APIResponseError):
        return exc.status_code == 429 or exc.status_code >= 500
    return False

#
# End of feedsync/feed_api/exceptions.py
########################################################################################################################
