# feedsync/feed_api/__init__.py
from .client import FeedAPIClient, FeedGateway
from .exceptions import (
    FeedAPIError, APIConnectionError, APIRequestError,
    APIResponseError, AuthenticationError, is_retryable
)
from .schemas import (
    Annotation, Channel, FileInfo, Message, QueryParameters,
    INCLUDE_MACHINE, INCLUDE_MESSAGE_ANNOTATIONS, INCLUDE_ANNOTATIONS, EXCLUDE_DELETED,
)

__all__ = [
    "FeedAPIClient", "FeedGateway",
    "FeedAPIError", "APIConnectionError", "APIRequestError",
    "APIResponseError", "AuthenticationError", "is_retryable",
    "Annotation", "Channel", "FileInfo", "Message", "QueryParameters",
    "INCLUDE_MACHINE", "INCLUDE_MESSAGE_ANNOTATIONS", "INCLUDE_ANNOTATIONS", "EXCLUDE_DELETED",
]
