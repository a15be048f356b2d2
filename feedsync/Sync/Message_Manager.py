# Message_Manager.py
# Description: Per-channel windowed pagination, local persistence and the unsent-message outbox.
#
# Imports
import asyncio
import inspect
import mimetypes
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
#
# 3rd-Party Imports
from loguru import logger
from pydantic import BaseModel, Field
#
# Local Imports
from feedsync.DB.Feed_Cache_DB import FeedCacheDB
from feedsync.feed_api.client import FeedGateway
from feedsync.feed_api.exceptions import APIResponseError, FeedAPIError, is_retryable
from feedsync.feed_api.schemas import (
    ANNOTATION_FILE_ATTACHMENT, INCLUDE_MESSAGE_ANNOTATIONS, Annotation, Message, QueryParameters,
)
from feedsync.models import (
    ChannelRefreshResult, MessageDisplayDateAdapter, MessagePlus, MinMaxPair, PendingFile, id_sort_key,
)
from feedsync.Sync.Reconciliation import ReconciliationNotifier, UnsentMessagesSentEvent
#
########################################################################################################################
#
# Functions:

DEFAULT_PAGE_SIZE = 20
MAX_BATCH_LOAD_FROM_DISK = 40

BatchCallback = Callable[[List[MessagePlus]], Union[None, Awaitable[None]]]


class MessageManagerConfig(BaseModel):
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, gt=0)
    database_insertion_enabled: bool = True
    max_batch_load_from_disk: int = Field(default=MAX_BATCH_LOAD_FROM_DISK, gt=0)
    # Per-channel query parameter bags, passed to the server as-is.
    channel_parameters: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class _ChannelState:
    def __init__(self, channel_id: str, parameters: QueryParameters):
        self.channel_id = channel_id
        self.messages: "OrderedDict[str, MessagePlus]" = OrderedDict()
        self.min_max_pair = MinMaxPair()
        self.parameters = parameters
        # Serializes pagination calls; cursor updates are not commutative.
        self.lock = asyncio.Lock()
        # Serializes outbox flushes so one unsent row is never created twice.
        self.send_lock = asyncio.Lock()


def merge_into_window(window: "OrderedDict[str, MessagePlus]", batch: Sequence[MessagePlus],
                      appended: bool) -> "OrderedDict[str, MessagePlus]":
    """
    Upserts `batch` into a newest-first window.

    An appended batch (older messages) keeps existing positions and adds new ids at the
    end. A prepended batch (newer messages) is placed after any unsent messages and
    before everything already known. Merging the same batch twice is a no-op.
    """
    if appended:
        for message_plus in batch:
            window[message_plus.id] = message_plus
        return window

    batch_ids = {message_plus.id for message_plus in batch}
    unsent = [(k, v) for k, v in window.items() if v.is_unsent and k not in batch_ids]
    rest = [(k, v) for k, v in window.items() if not v.is_unsent and k not in batch_ids]
    window.clear()
    window.update(unsent)
    for message_plus in batch:
        window[message_plus.id] = message_plus
    window.update(rest)
    return window


def _replace_in_window(window: "OrderedDict[str, MessagePlus]", old_id: str, replacement: MessagePlus) -> None:
    if old_id not in window:
        return
    items = list(window.items())
    window.clear()
    for message_id, message_plus in items:
        if message_id == old_id:
            window[replacement.id] = replacement
        elif message_id != replacement.id:
            window[message_id] = message_plus


def _is_not_found(error: FeedAPIError) -> bool:
    return isinstance(error, APIResponseError) and error.status_code == 404


class MessageManager:
    """
    Keeps a gap-free, newest-first window of messages for each channel, pages it
    forwards and backwards against the server, persists what it sees, and owns the
    outbox of messages, deletions and files the server has not confirmed yet.
    """

    def __init__(self, client: FeedGateway, database: FeedCacheDB, config: Optional[MessageManagerConfig] = None,
                 notifier: Optional[ReconciliationNotifier] = None):
        self.client = client
        self.database = database
        self.config = config or MessageManagerConfig()
        self.notifier = notifier or ReconciliationNotifier()
        self._date_adapter: Optional[MessageDisplayDateAdapter] = None
        self._channels: Dict[str, _ChannelState] = {}
        self._file_lock = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()
        logger.info(f"MessageManager initialized (page_size={self.config.page_size}, "
                    f"database_insertion={self.config.database_insertion_enabled}).")

    # --- Channel state ---
    def _state(self, channel_id: str) -> _ChannelState:
        state = self._channels.get(channel_id)
        if state is None:
            configured = self.config.channel_parameters.get(channel_id)
            if configured is not None:
                parameters = QueryParameters(**configured)
            else:
                parameters = QueryParameters(INCLUDE_MESSAGE_ANNOTATIONS)
            state = _ChannelState(channel_id, parameters)
            self._channels[channel_id] = state
        return state

    def set_parameters(self, channel_id: str, parameters: QueryParameters) -> None:
        self._state(channel_id).parameters = parameters.copy()

    def get_parameters(self, channel_id: str) -> QueryParameters:
        return self._state(channel_id).parameters.copy()

    def set_message_display_date_adapter(self, adapter: Optional[MessageDisplayDateAdapter]) -> None:
        self._date_adapter = adapter

    def set_database_insertion_enabled(self, is_enabled: bool) -> None:
        """When disabled, fetched messages live only in memory. Outbox rows are always persisted."""
        self.config.database_insertion_enabled = is_enabled

    def get_min_max_pair(self, channel_id: str) -> MinMaxPair:
        return self._state(channel_id).min_max_pair.copy()

    def get_message_map(self, channel_id: str) -> Optional["OrderedDict[str, MessagePlus]"]:
        state = self._channels.get(channel_id)
        return state.messages if state is not None else None

    def get_message_list(self, channel_id: str) -> Optional[List[MessagePlus]]:
        state = self._channels.get(channel_id)
        return list(state.messages.values()) if state is not None else None

    def get_messages(self, message_ids: Iterable[str]) -> "OrderedDict[str, MessagePlus]":
        """Looks message ids up in the in-memory windows first, then in the store."""
        ids = list(dict.fromkeys(message_ids))
        found: Dict[str, MessagePlus] = {}
        for state in self._channels.values():
            for message_id in ids:
                if message_id not in found and message_id in state.messages:
                    found[message_id] = state.messages[message_id]
        missing = [message_id for message_id in ids if message_id not in found]
        if missing:
            found.update(self.database.get_messages_by_ids(missing))
        return OrderedDict((message_id, found[message_id]) for message_id in ids if message_id in found)

    def invalidate_channel(self, channel_id: str) -> None:
        """Drops the in-memory window and resets the cursor. The store is left untouched."""
        state = self._state(channel_id)
        state.messages.clear()
        state.min_max_pair.reset()
        logger.debug(f"Invalidated window for channel {channel_id}")

    def has_unsent_messages(self, channel_id: str) -> bool:
        return bool(self.database.get_unsent_messages(channel_id))

    def search_messages(self, query: str, channel_id: Optional[str] = None, limit: int = 50) -> List[MessagePlus]:
        return self.database.search_messages(query, channel_id=channel_id, limit=limit)

    def _display_date(self, message: Message) -> datetime:
        return self._date_adapter(message) if self._date_adapter is not None else message.created_at

    def _wrap(self, message: Message, channel_id: str) -> MessagePlus:
        if message.channel_id is None:
            message.channel_id = channel_id
        return MessagePlus(message=message, display_date=self._display_date(message))

    # --- Persisted messages ---
    def load_persisted_messages(self, channel_id: str, limit: Optional[int] = None) -> "OrderedDict[str, MessagePlus]":
        """
        Loads up to `limit` stored messages older than the oldest one in the window and
        appends them to it. The stored id range is combined into the cursor.

        Returns:
            Only the newly loaded messages, newest first.
        """
        limit = limit or self.config.max_batch_load_from_disk
        state = self._state(channel_id)

        before_date = None
        min_id = state.min_max_pair.min_id
        if min_id is not None and min_id in state.messages:
            before_date = state.messages[min_id].display_date
        else:
            sent = [mp for mp in state.messages.values() if not mp.is_unsent]
            if sent:
                before_date = min(mp.display_date for mp in sent)

        batch = self.database.get_messages(channel_id, before_date=before_date, limit=limit)
        new_messages = OrderedDict((k, v) for k, v in batch.messages.items() if k not in state.messages)
        merge_into_window(state.messages, list(batch.messages.values()), appended=True)
        state.min_max_pair = state.min_max_pair.combine(batch.min_max_pair)
        logger.debug(f"Loaded {len(new_messages)} persisted messages for channel {channel_id}")
        return new_messages

    # --- Pagination ---
    async def retrieve_messages(self, channel_id: str) -> ChannelRefreshResult:
        """Re-fetches between the current bounds (`since=max`, `before=min`) and merges in place."""
        return await self._retrieve(channel_id, "window")

    async def retrieve_initial_messages(self, channel_id: str) -> ChannelRefreshResult:
        return await self._retrieve(channel_id, "initial")

    async def retrieve_newest_messages(self, channel_id: str) -> ChannelRefreshResult:
        """
        Fetches messages newer than the cursor and places them before the known ones.
        The channel's outbox is flushed first; if anything is still unsent afterwards
        the call returns a blocked result without fetching.
        """
        if self.has_unsent_messages(channel_id):
            try:
                await self.send_unsent_messages(channel_id)
            except FeedAPIError as e:
                logger.warning(f"Could not flush unsent messages in channel {channel_id}: {e}")
            if self.has_unsent_messages(channel_id):
                logger.info(f"Newest-message refresh of channel {channel_id} blocked by unsent messages.")
                return ChannelRefreshResult.blocked(channel_id)
        return await self._retrieve(channel_id, "newest")

    async def retrieve_more_messages(self, channel_id: str) -> ChannelRefreshResult:
        return await self._retrieve(channel_id, "more")

    async def _retrieve(self, channel_id: str, mode: str) -> ChannelRefreshResult:
        state = self._state(channel_id)
        async with state.lock:
            cursor = state.min_max_pair
            if cursor.is_empty():
                mode = "initial"
            elif mode == "initial":
                # A second initial fetch must not leave a gap above the known range.
                mode = "newest"

            since_id, before_id = None, None
            if mode == "newest":
                since_id = cursor.max_id
            elif mode == "more":
                before_id = cursor.min_id
            elif mode == "window":
                since_id, before_id = cursor.max_id, cursor.min_id
            appended = mode != "newest"

            params = state.parameters.merged(since_id=since_id, before_id=before_id, count=self.config.page_size)
            try:
                messages = await self.client.retrieve_messages_in_channel(channel_id, params)
            except FeedAPIError as e:
                logger.warning(f"Retrieving messages ({mode}) for channel {channel_id} failed: {e}")
                raise

            batch = self._apply_fetched(state, messages, appended)
            cursor.expand(message.id for message in messages if message.id)
            logger.debug(f"Channel {channel_id} {mode} fetch: {len(messages)} messages, cursor {cursor}")
            return ChannelRefreshResult(channel_id, batch, appended=appended)

    def _apply_fetched(self, state: _ChannelState, messages: List[Message], appended: bool) -> List[MessagePlus]:
        pending_deletions = self.database.get_pending_message_deletions(state.channel_id)
        batch: List[MessagePlus] = []
        for message in messages:
            if not message.id or message.id in pending_deletions:
                continue
            if message.is_deleted:
                state.messages.pop(message.id, None)
                self.database.delete_message(message.id)
                continue
            batch.append(self._wrap(message, state.channel_id))
        merge_into_window(state.messages, batch, appended)
        if self.config.database_insertion_enabled and batch:
            self.database.insert_or_replace_messages(batch)
        return batch

    async def retrieve_and_persist_all_messages(self, channel_id: str,
                                                on_batch: Optional[BatchCallback] = None) -> int:
        """
        Pages through the whole history of a channel, oldest-ward, persisting each page.

        Pages are fetched strictly one after another; `on_batch` runs (and is awaited if
        it is a coroutine function) before the next request is issued. Messages are not
        added to the in-memory window. Returns the number of messages persisted.
        """
        state = self._state(channel_id)
        total = 0
        async with state.lock:
            before_id = None
            while True:
                params = state.parameters.merged(since_id=None, before_id=before_id, count=self.config.page_size)
                messages = await self.client.retrieve_messages_in_channel(channel_id, params)
                pending_deletions = self.database.get_pending_message_deletions(channel_id)
                batch = [self._wrap(message, channel_id) for message in messages
                         if message.id and not message.is_deleted and message.id not in pending_deletions]
                if batch:
                    self.database.insert_or_replace_messages(batch)
                ids = [message.id for message in messages if message.id]
                state.min_max_pair.expand(ids)
                total += len(batch)

                if on_batch is not None:
                    result = on_batch(batch)
                    if inspect.isawaitable(result):
                        await result

                if len(messages) < self.config.page_size or not ids:
                    break
                before_id = min(ids, key=id_sort_key)
        logger.info(f"Persisted {total} messages for channel {channel_id}")
        return total

    # --- Outbox: messages ---
    def create_unsent_message_and_attempt_send(self, channel_id: str, message: Message,
                                               pending_file_ids: Sequence[str] = ()) -> MessagePlus:
        """
        Stores `message` as unsent under a temporary id, puts it at the top of the
        channel window and schedules a send. The returned MessagePlus carries the
        temporary id; a successful send publishes an UnsentMessagesSentEvent.
        """
        message = message.model_copy(deep=True)
        message.id = str(uuid.uuid4())
        message.channel_id = channel_id
        message.created_at = datetime.now(timezone.utc)
        message_plus = MessagePlus(message=message, display_date=self._display_date(message), is_unsent=True,
                                   pending_file_ids=list(pending_file_ids))

        self.database.insert_or_replace_message(message_plus)
        for pending_file_id in message_plus.pending_file_ids:
            self.database.insert_pending_file_attachment(pending_file_id, message.id, channel_id)

        state = self._state(channel_id)
        state.messages[message.id] = message_plus
        state.messages.move_to_end(message.id, last=False)
        logger.debug(f"Queued unsent message {message.id} in channel {channel_id}")

        self.schedule_background(self.send_unsent_messages(channel_id), f"send-unsent-{channel_id}")
        return message_plus

    async def send_unsent_messages(self, channel_id: str) -> Dict[str, str]:
        """
        Sends the channel's unsent messages oldest first, stopping at the first failure.

        Confirmed messages replace their temporary rows in the store and the window.
        One UnsentMessagesSentEvent is published for everything confirmed in this
        call, after which any failure is re-raised to the caller.

        Returns:
            Mapping of temporary id to server id for the messages that were sent.
        """
        state = self._state(channel_id)
        mappings: List[Tuple[str, str]] = []
        failure: Optional[FeedAPIError] = None

        async with state.send_lock:
            for old_id, message_plus in self.database.get_unsent_messages(channel_id).items():
                if self.database.get_message(old_id) is None:
                    continue
                if self._has_pending_files(message_plus):
                    try:
                        await self.send_pending_files()
                    except FeedAPIError as e:
                        self._record_failed_send(state, message_plus)
                        failure = e
                        break
                    message_plus = self.database.get_message(old_id)
                    if message_plus is None:
                        continue
                    if self._has_pending_files(message_plus):
                        logger.info(f"Message {old_id} still waits on file uploads; stopping flush of {channel_id}")
                        break

                try:
                    created = await self.client.create_message(channel_id, message_plus.message)
                except FeedAPIError as e:
                    attempts = self._record_failed_send(state, message_plus)
                    if is_retryable(e):
                        logger.warning(f"Sending message {old_id} in channel {channel_id} failed "
                                       f"(attempt {attempts}): {e}")
                    else:
                        self._park_failed_send(state, message_plus)
                        logger.error(f"Server rejected message {old_id} in channel {channel_id}; "
                                     f"parked until retried: {e}")
                    failure = e
                    break

                confirmed = self._wrap(created, channel_id)
                if self.database.get_message(old_id) is None:
                    # Deleted locally while the create call was in flight.
                    logger.info(f"Message {old_id} was deleted before the server confirmed it as {created.id}")
                    self.database.add_pending_message_deletion(created.id, channel_id)
                    try:
                        await self.send_message_deletion(channel_id, created.id)
                    except FeedAPIError:
                        logger.debug(f"Deletion of {created.id} left in the pending deletions outbox")
                    continue

                self.database.replace_message_id(old_id, confirmed)
                _replace_in_window(state.messages, old_id, confirmed)
                mappings.append((old_id, created.id))
                logger.debug(f"Unsent message {old_id} confirmed as {created.id} in channel {channel_id}")

        if mappings:
            await self.notifier.publish(UnsentMessagesSentEvent(channel_id=channel_id, id_mappings=tuple(mappings)))
        if failure is not None:
            raise failure
        return dict(mappings)

    def _record_failed_send(self, state: _ChannelState, message_plus: MessagePlus) -> int:
        attempts = message_plus.increment_send_attempts()
        self.database.update_send_attempts(message_plus.id, attempts)
        window_entry = state.messages.get(message_plus.id)
        if window_entry is not None and window_entry is not message_plus:
            window_entry.send_attempts = attempts
        return attempts

    def _park_failed_send(self, state: _ChannelState, message_plus: MessagePlus) -> None:
        message_plus.send_failed = True
        self.database.set_send_failed(message_plus.id, True)
        window_entry = state.messages.get(message_plus.id)
        if window_entry is not None:
            window_entry.send_failed = True

    def get_failed_messages(self, channel_id: str) -> "OrderedDict[str, MessagePlus]":
        """Unsent messages the server rejected with a non-retryable error."""
        return self.database.get_failed_messages(channel_id)

    def retry_failed_message(self, channel_id: str, message_id: str) -> None:
        """Puts a rejected message back in the outbox (e.g. after the caller fixed it) and schedules a send."""
        self.database.set_send_failed(message_id, False)
        window_entry = self._state(channel_id).messages.get(message_id)
        if window_entry is not None:
            window_entry.send_failed = False
        self.schedule_background(self.send_unsent_messages(channel_id), f"send-unsent-{channel_id}")

    def _has_pending_files(self, message_plus: MessagePlus) -> bool:
        return any(self.database.get_pending_file(file_id) is not None for file_id in message_plus.pending_file_ids)

    async def send_all_unsent(self) -> Dict[str, Any]:
        """
        Flushes every outbox: unsent messages of every channel, then pending message
        and file deletions. Failures are collected per channel instead of stopping the
        run; the rows stay queued for the next attempt.
        """
        summary: Dict[str, Any] = {"sent": {}, "errors": {}}
        for channel_id in self.database.get_channel_ids_with_unsent_messages():
            try:
                sent = await self.send_unsent_messages(channel_id)
                summary["sent"][channel_id] = sent
            except FeedAPIError as e:
                logger.warning(f"Outbox flush for channel {channel_id} failed: {e}")
                summary["errors"][channel_id] = str(e)
        try:
            summary["deleted"] = await self.send_pending_deletions()
        except FeedAPIError as e:
            summary["errors"]["pending_deletions"] = str(e)
        try:
            summary["deleted_files"] = await self.send_pending_file_deletions()
        except FeedAPIError as e:
            summary["errors"]["pending_file_deletions"] = str(e)
        return summary

    # --- Outbox: deletions ---
    def remove_message_locally(self, message_plus: MessagePlus) -> bool:
        """
        Drops a message from the window and the store. A sent message is recorded as a
        pending deletion before anything else, so the server-side delete survives a
        restart and later fetches do not bring it back.

        Returns:
            True if the server still has to be told about the deletion.
        """
        channel_id = message_plus.channel_id
        message_id = message_plus.id
        self._state(channel_id).messages.pop(message_id, None)
        self.database.delete_message(message_id)

        if message_plus.is_unsent:
            for pending_file_id in message_plus.pending_file_ids:
                self.database.delete_pending_file_attachment(pending_file_id, message_id)
            logger.debug(f"Dropped unsent message {message_id} from channel {channel_id}")
            return False
        self.database.add_pending_message_deletion(message_id, channel_id)
        return True

    async def send_message_deletion(self, channel_id: str, message_id: str) -> None:
        """Deletes a message on the server and clears its pending deletion. A 404 counts as deleted."""
        try:
            await self.client.delete_message(channel_id, message_id)
        except FeedAPIError as e:
            if not _is_not_found(e):
                logger.warning(f"Deleting message {message_id} failed; kept for retry: {e}")
                raise
        self.database.delete_pending_message_deletion(message_id)

    async def delete_message(self, message_plus: MessagePlus) -> None:
        """
        Removes a message locally, then from the server. An unsent message only exists
        locally, so nothing is sent. If the server call fails the deletion stays queued
        and the error is re-raised.
        """
        if self.remove_message_locally(message_plus):
            await self.send_message_deletion(message_plus.channel_id, message_plus.id)

    async def send_pending_deletions(self, channel_id: Optional[str] = None) -> List[str]:
        """Retries queued message deletions. Raises the first failure after trying them all."""
        deleted: List[str] = []
        failure: Optional[FeedAPIError] = None
        for message_id, message_channel_id in self.database.get_pending_message_deletions(channel_id).items():
            try:
                await self.client.delete_message(message_channel_id, message_id)
            except FeedAPIError as e:
                if not _is_not_found(e):
                    logger.warning(f"Pending deletion of message {message_id} failed again: {e}")
                    failure = failure or e
                    continue
            self.database.delete_pending_message_deletion(message_id)
            deleted.append(message_id)
        if failure is not None:
            raise failure
        return deleted

    # --- Outbox: files ---
    def create_pending_file(self, file_path: str, file_type: str, name: str, mime_type: Optional[str] = None,
                            kind: Optional[str] = None, is_public: bool = False) -> PendingFile:
        """Queues a local file for upload. Pass its id to create_unsent_message_and_attempt_send to attach it."""
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        pending_file = PendingFile(id=str(uuid.uuid4()), file_path=file_path, type=file_type, name=name,
                                   mime_type=mime_type, kind=kind, is_public=is_public)
        self.database.insert_pending_file(pending_file)
        return pending_file

    async def send_pending_files(self) -> List[str]:
        """
        Uploads every pending file. Each uploaded file is attached, as an annotation, to
        the unsent messages waiting on it. Stops at the first failed upload.
        """
        uploaded: List[str] = []
        async with self._file_lock:
            for pending_file in self.database.get_pending_files():
                try:
                    file_info = await self.client.upload_file(pending_file)
                except FeedAPIError as e:
                    attempts = self.database.increment_pending_file_send_attempts(pending_file.id)
                    logger.warning(f"Uploading pending file {pending_file.id} failed (attempt {attempts}): {e}")
                    raise

                for attachment in self.database.get_pending_file_attachments(pending_file.id):
                    message_plus = self.database.get_message(attachment["message_id"])
                    if message_plus is not None:
                        message_plus.message.add_annotation(Annotation(
                            type=ANNOTATION_FILE_ATTACHMENT,
                            value={"file_id": file_info.id, "url": file_info.url,
                                   "is_oembed": attachment["is_oembed"]}))
                        if pending_file.id in message_plus.pending_file_ids:
                            message_plus.pending_file_ids.remove(pending_file.id)
                        self.database.insert_or_replace_message(message_plus)
                        window = self.get_message_map(attachment["channel_id"])
                        if window is not None and message_plus.id in window:
                            window[message_plus.id] = message_plus
                    self.database.delete_pending_file_attachment(pending_file.id, attachment["message_id"])

                self.database.delete_pending_file(pending_file.id)
                uploaded.append(pending_file.id)
                logger.debug(f"Uploaded pending file {pending_file.id} as {file_info.id}")
        return uploaded

    async def delete_file(self, file_id: str) -> None:
        try:
            await self.client.delete_file(file_id)
        except FeedAPIError as e:
            if _is_not_found(e):
                return
            self.database.add_pending_file_deletion(file_id)
            logger.warning(f"Deleting file {file_id} failed; queued for retry: {e}")
            raise

    async def send_pending_file_deletions(self) -> List[str]:
        deleted: List[str] = []
        failure: Optional[FeedAPIError] = None
        for file_id in sorted(self.database.get_pending_file_deletions()):
            try:
                await self.client.delete_file(file_id)
            except FeedAPIError as e:
                if not _is_not_found(e):
                    logger.warning(f"Pending deletion of file {file_id} failed again: {e}")
                    failure = failure or e
                    continue
            self.database.delete_pending_file_deletion(file_id)
            deleted.append(file_id)
        if failure is not None:
            raise failure
        return deleted

    # --- Background work ---
    def schedule_background(self, coro: Coroutine, name: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.info(f"No running event loop; '{name}' left for the next outbox flush.")
            return None
        task = loop.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)
        return task

    def _on_background_task_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # The outbox row is still persisted; it is retried on the next flush.
            logger.opt(exception=exc).warning(f"Background task '{task.get_name()}' failed: {exc}")

    async def join_background_tasks(self) -> None:
        """Waits for every scheduled send or delete, including ones they schedule in turn."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def cancel_background_tasks(self) -> None:
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

#
# End of Message_Manager.py
########################################################################################################################
