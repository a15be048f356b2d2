# feedsync/feed_api/schemas.py
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field

# Annotation types used by the sync layer
ANNOTATION_TARGET_MESSAGE = "net.feedsync.action.target_message"
ANNOTATION_ACTION_METADATA = "net.feedsync.action.metadata"
ANNOTATION_FILE_ATTACHMENT = "net.feedsync.file_attachment"

TARGET_MESSAGE_KEY_ID = "id"
ACTION_METADATA_KEY_ACTION_TYPE = "action_type"
ACTION_METADATA_KEY_TARGET_CHANNEL_ID = "channel_id"

CHANNEL_TYPE_ACTION = "net.feedsync.action"


# --- General query parameters (passed through to the server unmodified) ---
# Each entry is a (name, value) pair so they can be handed to QueryParameters positionally.
INCLUDE_MACHINE: Tuple[str, Any] = ("include_machine", 1)
INCLUDE_MESSAGE_ANNOTATIONS: Tuple[str, Any] = ("include_message_annotations", 1)
INCLUDE_ANNOTATIONS: Tuple[str, Any] = ("include_annotations", 1)
EXCLUDE_DELETED: Tuple[str, Any] = ("include_deleted", 0)


class QueryParameters(dict):
    """
    Opaque key/value bag of per-channel query parameters.

    None values are kept in the bag (so callers can explicitly clear a cursor bound)
    but are dropped by `to_httpx_params`.
    """

    def __init__(self, *general_params: Tuple[str, Any], **kwargs: Any):
        super().__init__()
        for name, value in general_params:
            self[name] = value
        self.update(kwargs)

    def copy(self) -> "QueryParameters":
        return QueryParameters(**dict(self))

    def merged(self, **overrides: Any) -> "QueryParameters":
        params = self.copy()
        params.update(overrides)
        return params

    def to_httpx_params(self) -> Dict[str, str]:
        params = {}
        for key, value in self.items():
            if value is None:
                continue
            if isinstance(value, bool):
                params[key] = "1" if value else "0"
            else:
                params[key] = str(value)
        return params


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Annotation(BaseModel):
    type: str
    value: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    # Unknown server fields are preserved so the cached JSON round-trips the full payload.
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    channel_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    text: Optional[str] = None
    machine_only: bool = False
    annotations: List[Annotation] = Field(default_factory=list)
    is_deleted: bool = False

    def get_annotation(self, annotation_type: str) -> Optional[Annotation]:
        for annotation in self.annotations:
            if annotation.type == annotation_type:
                return annotation
        return None

    def add_annotation(self, annotation: Annotation) -> None:
        self.annotations.append(annotation)

    def to_create_payload(self) -> Dict[str, Any]:
        """Body for a create call: server-assigned fields are left out."""
        return self.model_dump(mode="json", exclude={"id", "channel_id", "user_id", "created_at", "is_deleted"},
                               exclude_none=True)


class Channel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: str
    owner_id: Optional[str] = None
    annotations: List[Annotation] = Field(default_factory=list)

    def get_annotation(self, annotation_type: str) -> Optional[Annotation]:
        for annotation in self.annotations:
            if annotation.type == annotation_type:
                return annotation
        return None


class FileInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    kind: Optional[str] = None
    type: Optional[str] = None
    mime_type: Optional[str] = None
    is_public: bool = False
    url: Optional[str] = None


class ResponseMeta(BaseModel):
    code: int = 200
    min_id: Optional[str] = None
    max_id: Optional[str] = None
    more: bool = False
    error_message: Optional[str] = None


class MessageListResponse(BaseModel):
    meta: ResponseMeta = Field(default_factory=ResponseMeta)
    data: List[Message] = Field(default_factory=list)


class MessageResponse(BaseModel):
    meta: ResponseMeta = Field(default_factory=ResponseMeta)
    data: Message


class ChannelListResponse(BaseModel):
    meta: ResponseMeta = Field(default_factory=ResponseMeta)
    data: List[Channel] = Field(default_factory=list)


class ChannelResponse(BaseModel):
    meta: ResponseMeta = Field(default_factory=ResponseMeta)
    data: Channel


class FileResponse(BaseModel):
    meta: ResponseMeta = Field(default_factory=ResponseMeta)
    data: FileInfo

#
# End of schemas.py
########################################################################################################################
