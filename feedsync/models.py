# models.py
# Description: Local-only models layered over the feed API wire schemas.
#
# Imports
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple
#
# 3rd-Party Imports
from pydantic import BaseModel, Field
#
# Local Imports
from feedsync.feed_api.schemas import Message
#
########################################################################################################################
#
# Functions:

# A callable that decides which date a Message should be sorted and paged by.
MessageDisplayDateAdapter = Callable[[Message], datetime]


def id_sort_key(message_id: str) -> Tuple[int, int, str]:
    """
    Sort key for server ids. Server ids are numeric strings that grow with recency;
    anything non-numeric sorts below them and lexically among itself.
    """
    if message_id is not None and message_id.isdigit():
        return (1, int(message_id), "")
    return (0, 0, message_id or "")


class MessagePlus(BaseModel):
    """A Message plus the local-only state the server knows nothing about."""
    message: Message
    display_date: datetime
    is_unsent: bool = False
    send_attempts: int = 0
    # A fatal create error parked the message; it is kept but no longer flushed.
    send_failed: bool = False
    pending_file_ids: List[str] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def channel_id(self) -> str:
        return self.message.channel_id

    def increment_send_attempts(self) -> int:
        self.send_attempts += 1
        return self.send_attempts


class MinMaxPair:
    """
    The inclusive id range of a channel known to be contiguous locally.
    Widening operations never narrow it; only `reset` does.
    """

    def __init__(self, min_id: Optional[str] = None, max_id: Optional[str] = None):
        self.min_id = min_id
        self.max_id = max_id

    def __repr__(self):
        return f"MinMaxPair(min_id={self.min_id!r}, max_id={self.max_id!r})"

    def __eq__(self, other):
        if not isinstance(other, MinMaxPair):
            return NotImplemented
        return self.min_id == other.min_id and self.max_id == other.max_id

    def copy(self) -> "MinMaxPair":
        return MinMaxPair(self.min_id, self.max_id)

    def is_empty(self) -> bool:
        return self.min_id is None and self.max_id is None

    def expand_min(self, min_id: Optional[str]) -> None:
        if min_id is None:
            return
        if self.min_id is None or id_sort_key(min_id) < id_sort_key(self.min_id):
            self.min_id = min_id

    def expand_max(self, max_id: Optional[str]) -> None:
        if max_id is None:
            return
        if self.max_id is None or id_sort_key(max_id) > id_sort_key(self.max_id):
            self.max_id = max_id

    def expand(self, message_ids: Iterable[str]) -> None:
        for message_id in message_ids:
            self.expand_min(message_id)
            self.expand_max(message_id)

    def combine(self, other: Optional["MinMaxPair"]) -> "MinMaxPair":
        """Union of the two ranges; returns a new pair."""
        combined = self.copy()
        if other is not None:
            combined.expand_min(other.min_id)
            combined.expand_max(other.max_id)
        return combined

    def reset(self) -> None:
        self.min_id = None
        self.max_id = None

    @classmethod
    def from_ids(cls, message_ids: Iterable[str]) -> "MinMaxPair":
        pair = cls()
        pair.expand(message_ids)
        return pair


class OrderedMessageBatch:
    """Messages read from the store, newest first, with the id range they cover."""

    def __init__(self, messages: "OrderedDict[str, MessagePlus]", min_max_pair: MinMaxPair):
        self.messages = messages
        self.min_max_pair = min_max_pair

    def __len__(self):
        return len(self.messages)


class ActionMessageSpec(BaseModel):
    action_message_id: str
    action_channel_id: str
    target_message_id: str
    target_channel_id: str
    target_message_display_date: datetime


class PendingFile(BaseModel):
    id: str
    file_path: str
    type: str
    name: str
    mime_type: str
    kind: Optional[str] = None
    is_public: bool = False
    send_attempts: int = 0


class ChannelRefreshResult:
    """
    Outcome of a pagination call. `blocked_by_unsent` is set when a refresh was
    refused because the channel still has messages that could not be sent.
    """

    def __init__(self, channel_id: str, messages: Optional[List[MessagePlus]] = None, appended: bool = False,
                 success: bool = True):
        self.channel_id = channel_id
        self.messages = messages if messages is not None else []
        self.appended = appended
        self.success = success

    @classmethod
    def blocked(cls, channel_id: str) -> "ChannelRefreshResult":
        return cls(channel_id, success=False)

    @property
    def blocked_by_unsent(self) -> bool:
        return not self.success

    def __repr__(self):
        return (f"ChannelRefreshResult(channel_id={self.channel_id!r}, success={self.success}, "
                f"count={len(self.messages)}, appended={self.appended})")

#
# End of models.py
########################################################################################################################
