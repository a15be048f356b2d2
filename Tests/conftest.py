# conftest.py
#
# Shared fixtures: an in-memory store and a fake feed server.
#
# Imports
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
#
# Third-Party Imports
import pytest
#
# Local Imports
from feedsync.DB.Feed_Cache_DB import FeedCacheDB
from feedsync.feed_api.exceptions import APIResponseError
from feedsync.feed_api.schemas import Annotation, Channel, FileInfo, Message, QueryParameters
from feedsync.models import MessagePlus, PendingFile
from feedsync.Sync.Action_Message_Manager import ActionMessageManager
from feedsync.Sync.Message_Manager import MessageManager, MessageManagerConfig
#
#######################################################################################################################
#
# Functions:

BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def date_for(message_id: str) -> datetime:
    """Numeric ids grow with recency, so do their dates."""
    return BASE_DATE + timedelta(minutes=int(message_id))


def make_message_plus(message_id: str, channel_id: str = "chan", is_unsent: bool = False,
                      text: Optional[str] = None) -> MessagePlus:
    created_at = date_for(message_id) if message_id.isdigit() else BASE_DATE
    message = Message(id=message_id, channel_id=channel_id, created_at=created_at,
                      text=text if text is not None else f"message {message_id}")
    return MessagePlus(message=message, display_date=created_at, is_unsent=is_unsent)


class FakeGateway:
    """
    A feed server held in memory. Ids are numeric strings handed out in increasing
    order. Failures can be queued per call kind via `fail_next[kind]`.
    """

    def __init__(self, next_id: int = 1000):
        self.messages: Dict[str, Dict[str, Message]] = defaultdict(dict)
        self.remote_channels: List[Channel] = []
        self.calls: List[tuple] = []
        self.fail_next: Dict[str, List[Exception]] = defaultdict(list)
        self.create_gate: Optional[asyncio.Event] = None
        self.uploaded: List[str] = []
        self.deleted_files: List[str] = []
        self.max_concurrent_retrieves = 0
        self._in_flight_retrieves = 0
        self._next_id = next_id
        self._next_channel = 1

    def _maybe_fail(self, kind: str) -> None:
        if self.fail_next[kind]:
            raise self.fail_next[kind].pop(0)

    def add_message(self, channel_id: str, message_id: str, text: Optional[str] = None,
                    annotations: Optional[List[Annotation]] = None, machine_only: bool = False) -> Message:
        message = Message(id=message_id, channel_id=channel_id, user_id="someone", created_at=date_for(message_id),
                          text=text if text is not None else f"message {message_id}",
                          annotations=annotations or [], machine_only=machine_only)
        self.messages[channel_id][message_id] = message
        return message

    def seed(self, channel_id: str, ids) -> None:
        for message_id in ids:
            self.add_message(channel_id, str(message_id))

    def calls_of(self, kind: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == kind]

    async def retrieve_messages_in_channel(self, channel_id: str, params: QueryParameters) -> List[Message]:
        self.calls.append(("retrieve", channel_id, dict(params)))
        self._in_flight_retrieves += 1
        self.max_concurrent_retrieves = max(self.max_concurrent_retrieves, self._in_flight_retrieves)
        try:
            await asyncio.sleep(0)
            self._maybe_fail("retrieve")
            since_id = params.get("since_id")
            before_id = params.get("before_id")
            count = int(params.get("count") or 20)
            found = sorted(self.messages[channel_id].values(), key=lambda m: int(m.id), reverse=True)
            if since_id is not None:
                found = [m for m in found if int(m.id) > int(since_id)]
            if before_id is not None:
                found = [m for m in found if int(m.id) < int(before_id)]
            return [m.model_copy(deep=True) for m in found[:count]]
        finally:
            self._in_flight_retrieves -= 1

    async def create_message(self, channel_id: str, message: Message) -> Message:
        self.calls.append(("create", channel_id, message.text))
        if self.create_gate is not None:
            await self.create_gate.wait()
        self._maybe_fail("create")
        new_id = str(self._next_id)
        self._next_id += 1
        created = Message(id=new_id, channel_id=channel_id, user_id="me", created_at=message.created_at,
                          text=message.text, machine_only=message.machine_only,
                          annotations=[a.model_copy(deep=True) for a in message.annotations])
        self.messages[channel_id][new_id] = created
        return created.model_copy(deep=True)

    async def delete_message(self, channel_id: str, message_id: str) -> Message:
        self.calls.append(("delete", channel_id, message_id))
        self._maybe_fail("delete")
        message = self.messages[channel_id].pop(message_id, None)
        if message is None:
            raise APIResponseError(404, "Message not found")
        message.is_deleted = True
        return message

    async def retrieve_channels(self, channel_type: str) -> List[Channel]:
        self.calls.append(("retrieve_channels", channel_type))
        await asyncio.sleep(0)
        self._maybe_fail("retrieve_channels")
        return [c.model_copy(deep=True) for c in self.remote_channels if c.type == channel_type]

    async def create_channel(self, channel: Channel) -> Channel:
        self.calls.append(("create_channel", channel.type))
        await asyncio.sleep(0)
        self._maybe_fail("create_channel")
        created = channel.model_copy(deep=True)
        created.id = f"ch-{self._next_channel}"
        self._next_channel += 1
        self.remote_channels.append(created)
        return created.model_copy(deep=True)

    async def upload_file(self, pending_file: PendingFile) -> FileInfo:
        self.calls.append(("upload", pending_file.id))
        self._maybe_fail("upload")
        file_id = f"file-{len(self.uploaded) + 1}"
        self.uploaded.append(file_id)
        return FileInfo(id=file_id, name=pending_file.name, mime_type=pending_file.mime_type,
                        url=f"https://files.test/{file_id}")

    async def delete_file(self, file_id: str) -> None:
        self.calls.append(("delete_file", file_id))
        self._maybe_fail("delete_file")
        if file_id not in self.uploaded:
            raise APIResponseError(404, "File not found")
        self.uploaded.remove(file_id)
        self.deleted_files.append(file_id)


# --- Fixtures ---

@pytest.fixture
def client_id():
    return "test_client_001"


@pytest.fixture
def mem_db(client_id):
    """In-memory store for tests that don't need file persistence."""
    db = FeedCacheDB(":memory:", client_id)
    yield db
    db.close_connection()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def message_manager(gateway, mem_db):
    return MessageManager(gateway, mem_db, MessageManagerConfig(page_size=20))


@pytest.fixture
def action_manager(message_manager):
    manager = ActionMessageManager(message_manager)
    yield manager
    manager.close()

#
# End of conftest.py
#######################################################################################################################
