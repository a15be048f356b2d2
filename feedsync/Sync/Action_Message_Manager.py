# Action_Message_Manager.py
# Description: Toggle-able per-user state (favorites, read markers, ...) built from machine-only marker
#  messages in a private "action channel", indexed locally for point lookups.
#
# Imports
import asyncio
import inspect
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from feedsync.feed_api.exceptions import FeedAPIError
from feedsync.feed_api.schemas import (
    ACTION_METADATA_KEY_ACTION_TYPE, ACTION_METADATA_KEY_TARGET_CHANNEL_ID, ANNOTATION_ACTION_METADATA,
    ANNOTATION_TARGET_MESSAGE, CHANNEL_TYPE_ACTION, EXCLUDE_DELETED, INCLUDE_MACHINE, INCLUDE_MESSAGE_ANNOTATIONS,
    TARGET_MESSAGE_KEY_ID, Annotation, Channel, Message, QueryParameters,
)
from feedsync.models import ActionMessageSpec, ChannelRefreshResult, MessagePlus
from feedsync.Sync.exceptions import ActionChannelNotInitializedError, ActionNotAppliedError
from feedsync.Sync.Message_Manager import BatchCallback, MessageManager
from feedsync.Sync.Reconciliation import ReconciliationNotifier, UnsentMessagesSentEvent
#
########################################################################################################################
#
# Functions:

ACTION_MESSAGE_QUERY_PARAMETERS = QueryParameters(INCLUDE_MACHINE, INCLUDE_MESSAGE_ANNOTATIONS, EXCLUDE_DELETED)
MAX_BATCH_LOAD_FROM_DISK = 40


def get_target_message_id(message: Message) -> Optional[str]:
    annotation = message.get_annotation(ANNOTATION_TARGET_MESSAGE)
    if annotation is None:
        return None
    return annotation.value.get(TARGET_MESSAGE_KEY_ID)


def get_action_channel_metadata(channel: Channel) -> Tuple[Optional[str], Optional[str]]:
    """Returns (action_type, target_channel_id) from a channel's metadata annotation."""
    annotation = channel.get_annotation(ANNOTATION_ACTION_METADATA)
    if annotation is None:
        return None, None
    return (annotation.value.get(ACTION_METADATA_KEY_ACTION_TYPE),
            annotation.value.get(ACTION_METADATA_KEY_TARGET_CHANNEL_ID))


class ActionMessageManager:
    """
    Fakes mutable per-message state on an immutable feed.

    Each action type gets its own private channel whose messages are machine-only
    markers pointing at a message of the target channel. The local action spec index
    is the only record of "is this message actioned"; there is no in-memory copy.
    """

    def __init__(self, message_manager: MessageManager, notifier: Optional[ReconciliationNotifier] = None):
        self.message_manager = message_manager
        self.database = message_manager.database
        self.notifier = notifier or message_manager.notifier
        self._action_channels: Dict[str, Channel] = {}
        self._init_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        # Temporary ids of target messages that have since been confirmed under a server id.
        self._retired_target_ids: Set[str] = set()
        self._unsubscribe = self.notifier.subscribe(self.on_unsent_messages_sent)

    def close(self) -> None:
        self._unsubscribe()

    # --- Action channels ---
    async def init_action_channel(self, action_type: str, target_channel_id: str) -> Channel:
        """
        Gets or creates the action channel for `action_type` over `target_channel_id`.
        Concurrent callers for the same pair wait on one another and get the same channel.
        Must complete before any other method is used with the returned channel id.
        """
        key = (action_type, target_channel_id)
        lock = self._init_locks.setdefault(key, asyncio.Lock())
        async with lock:
            for channel in self._action_channels.values():
                if get_action_channel_metadata(channel) == key:
                    return channel

            channel = None
            for candidate in await self.message_manager.client.retrieve_channels(CHANNEL_TYPE_ACTION):
                if get_action_channel_metadata(candidate) == key:
                    channel = candidate
                    break
            if channel is None:
                channel = await self.message_manager.client.create_channel(Channel(
                    type=CHANNEL_TYPE_ACTION,
                    annotations=[Annotation(type=ANNOTATION_ACTION_METADATA, value={
                        ACTION_METADATA_KEY_ACTION_TYPE: action_type,
                        ACTION_METADATA_KEY_TARGET_CHANNEL_ID: target_channel_id,
                    })]))
                logger.info(f"Created action channel {channel.id} for '{action_type}' on {target_channel_id}")

            self._action_channels[channel.id] = channel
            self.message_manager.set_parameters(channel.id, ACTION_MESSAGE_QUERY_PARAMETERS)
            logger.debug(f"Action channel {channel.id} initialized for '{action_type}' on {target_channel_id}")
            return channel

    def is_action_channel(self, channel_id: str) -> bool:
        return channel_id in self._action_channels

    def get_action_channel(self, action_channel_id: str) -> Channel:
        channel = self._action_channels.get(action_channel_id)
        if channel is None:
            raise ActionChannelNotInitializedError(action_channel_id)
        return channel

    def _get_target_channel_id(self, action_channel_id: str) -> str:
        _, target_channel_id = get_action_channel_metadata(self.get_action_channel(action_channel_id))
        if target_channel_id is None:
            raise ActionChannelNotInitializedError(
                action_channel_id,
                f"Channel {action_channel_id} has no action metadata annotation; its target channel is unknown.")
        return target_channel_id

    # --- Index reads ---
    def is_actioned(self, action_channel_id: str, target_message_id: str) -> bool:
        return self.database.has_action_message_spec(action_channel_id, target_message_id)

    def get_actioned_message_ids(self, action_channel_id: str, message_ids: Iterable[str]) -> Set[str]:
        """The subset of `message_ids` that have the action applied, in a single index query."""
        return self.database.get_target_message_ids_with_specs(action_channel_id, message_ids)

    def has_actioned_messages(self, action_channel_id: str) -> bool:
        return self.database.get_action_message_spec_count(action_channel_id) > 0

    def get_actioned_messages(self, action_channel_id: str, before_date: Optional[datetime] = None,
                              limit: int = MAX_BATCH_LOAD_FROM_DISK) -> List[MessagePlus]:
        """
        Target messages that have the action applied, newest target first. Targets that
        are neither in memory nor in the store are left out.
        """
        specs = self.database.get_action_message_specs(action_channel_id, before_date=before_date, limit=limit)
        targets = self.message_manager.get_messages(spec.target_message_id for spec in specs)
        return [targets[spec.target_message_id] for spec in specs if spec.target_message_id in targets]

    async def get_more_actioned_messages(self, action_channel_id: str) -> Tuple[List[MessagePlus], bool]:
        """
        Pages further back through the action channel: from the store while it has
        markers, then from the server.

        Returns:
            The target messages of the newly loaded markers, and whether more may exist.
        """
        target_channel_id = self._get_target_channel_id(action_channel_id)
        more = self.message_manager.load_persisted_messages(action_channel_id, MAX_BATCH_LOAD_FROM_DISK)
        if more:
            targets = self._get_target_messages(more.values())
            return targets, len(more) == MAX_BATCH_LOAD_FROM_DISK

        result = await self.message_manager.retrieve_more_messages(action_channel_id)
        self._index_action_messages(action_channel_id, target_channel_id, result.messages)
        is_more = len(result.messages) >= self.message_manager.config.page_size
        return self._get_target_messages(result.messages), is_more

    def _get_target_messages(self, action_messages: Iterable[MessagePlus]) -> List[MessagePlus]:
        target_ids = [tid for tid in (get_target_message_id(mp.message) for mp in action_messages) if tid]
        return list(self.message_manager.get_messages(target_ids).values())

    # --- Syncing ---
    async def retrieve_and_persist_all_action_messages(self, action_channel_id: str,
                                                       on_batch: Optional[BatchCallback] = None) -> int:
        """Syncs the whole action channel, indexing each page before the next one is requested."""
        target_channel_id = self._get_target_channel_id(action_channel_id)

        async def index_batch(batch: List[MessagePlus]) -> None:
            self._index_action_messages(action_channel_id, target_channel_id, batch)
            if on_batch is not None:
                result = on_batch(batch)
                if inspect.isawaitable(result):
                    await result

        total = await self.message_manager.retrieve_and_persist_all_messages(action_channel_id, index_batch)
        logger.info(f"Synced {total} action messages for action channel {action_channel_id}")
        return total

    async def retrieve_newest_messages(self, action_channel_id: str) -> ChannelRefreshResult:
        target_channel_id = self._get_target_channel_id(action_channel_id)
        if not self.message_manager.get_message_map(action_channel_id):
            # Seeds the cursor from the store so only unseen markers are fetched.
            self.message_manager.load_persisted_messages(action_channel_id, 1)
        result = await self.message_manager.retrieve_newest_messages(action_channel_id)
        if result.success:
            self._index_action_messages(action_channel_id, target_channel_id, result.messages)
        return result

    def _index_action_messages(self, action_channel_id: str, target_channel_id: str,
                               action_messages: Iterable[MessagePlus]) -> int:
        action_messages = list(action_messages)
        pending_deletions = self.database.get_pending_message_deletions(action_channel_id)
        target_ids = {get_target_message_id(mp.message) for mp in action_messages}
        targets = self.message_manager.get_messages(tid for tid in target_ids if tid)

        indexed = 0
        for action_message in action_messages:
            if action_message.is_unsent or action_message.message.is_deleted \
                    or action_message.id in pending_deletions:
                continue
            target_message_id = get_target_message_id(action_message.message)
            if target_message_id is None:
                logger.warning(f"Action message {action_message.id} in channel {action_channel_id} "
                               f"has no target message annotation; skipping.")
                continue
            if target_message_id in self._retired_target_ids:
                continue
            target = targets.get(target_message_id)
            display_date = target.display_date if target is not None else action_message.display_date
            self.database.insert_or_replace_action_message_spec(
                action_message.id, action_channel_id, target_message_id, target_channel_id, display_date)
            indexed += 1
        return indexed

    # --- Applying and removing ---
    def apply_channel_action(self, action_channel_id: str, target_message: MessagePlus) -> Optional[MessagePlus]:
        """
        Marks `target_message` as actioned. The index is updated before the marker reaches
        the server, so is_actioned() reflects it immediately.

        Returns:
            The unsent marker message, or None if the action was already applied.
        """
        target_channel_id = self._get_target_channel_id(action_channel_id)
        target_message_id = target_message.id
        if self.is_actioned(action_channel_id, target_message_id):
            logger.debug(f"Message {target_message_id} already actioned in {action_channel_id}")
            return None

        marker = Message(machine_only=True, annotations=[
            Annotation(type=ANNOTATION_TARGET_MESSAGE, value={TARGET_MESSAGE_KEY_ID: target_message_id})])
        unsent_marker = self.message_manager.create_unsent_message_and_attempt_send(action_channel_id, marker)
        self.database.insert_or_replace_action_message_spec(
            unsent_marker.id, action_channel_id, target_message_id,
            target_message.channel_id or target_channel_id, target_message.display_date)
        return unsent_marker

    def remove_channel_action(self, action_channel_id: str, target_message_id: str) -> List[ActionMessageSpec]:
        """
        Clears the action from `target_message_id`. The index row and local markers go
        right away; server-side marker deletions run in the background and stay in the
        pending deletions outbox until they succeed.

        Raises:
            ActionNotAppliedError: If the message does not have the action applied.
        """
        self._get_target_channel_id(action_channel_id)
        specs = self.database.get_action_message_specs_for_target_messages(
            [target_message_id], action_channel_id=action_channel_id)
        if not specs:
            raise ActionNotAppliedError(action_channel_id, target_message_id)

        self.database.delete_action_message_spec(action_channel_id, target_message_id)

        markers = self.message_manager.get_messages(spec.action_message_id for spec in specs)
        sent_markers: List[MessagePlus] = []
        for spec in specs:
            marker = markers.get(spec.action_message_id)
            if marker is None:
                marker = MessagePlus(
                    message=Message(id=spec.action_message_id, channel_id=action_channel_id, machine_only=True),
                    display_date=spec.target_message_display_date)
            if self.message_manager.remove_message_locally(marker):
                sent_markers.append(marker)

        if sent_markers:
            self.message_manager.schedule_background(
                self._send_marker_deletions(sent_markers), f"delete-action-markers-{action_channel_id}")
        return specs

    async def _send_marker_deletions(self, markers: List[MessagePlus]) -> None:
        for marker in markers:
            try:
                await self.message_manager.send_message_deletion(marker.channel_id, marker.id)
                logger.debug(f"Deleted action message {marker.id}")
            except FeedAPIError as e:
                logger.warning(f"Action message {marker.id} deletion deferred to the outbox: {e}")

    # --- Reconciliation ---
    async def on_unsent_messages_sent(self, event: UnsentMessagesSentEvent) -> None:
        """
        Keeps the index consistent after temporary ids were replaced by server ids.

        Specs keyed to an old marker id are always moved to the confirmed id, even for
        an action channel not initialized in this session (its outbox may be flushed
        first after a restart). Specs keyed to an old target id are dropped and markers
        still pointing at that id are ignored from then on. For an initialized action
        channel the newest markers are then re-fetched and re-indexed; a failed
        re-fetch is logged and retried on the next event.
        """
        rekeyed = 0
        for old_id, new_id in event.id_mappings:
            rekeyed += self.database.replace_action_message_spec_id(old_id, new_id)

        stale = self.database.get_action_message_specs_for_target_messages(event.old_ids)
        for spec in stale:
            self.database.delete_action_message_spec(spec.action_channel_id, spec.target_message_id)
        if stale:
            logger.info(f"Dropped {len(stale)} action specs for re-identified messages in {event.channel_id}")
            self._retired_target_ids.update(spec.target_message_id for spec in stale)

        if not self.is_action_channel(event.channel_id):
            if rekeyed:
                logger.info(f"Re-keyed {rekeyed} action specs of uninitialized action channel {event.channel_id}")
            return

        try:
            await self.retrieve_newest_messages(event.channel_id)
        except FeedAPIError as e:
            logger.warning(f"Re-indexing action channel {event.channel_id} after send failed: {e}")

#
# End of Action_Message_Manager.py
########################################################################################################################
