# test_action_message_manager.py
#
# Action channels, the action spec index and its reconciliation with the outbox.
#
# Imports
import asyncio
#
# Third-Party Imports
import pytest
#
# Local Imports
from feedsync.feed_api.exceptions import APIConnectionError
from feedsync.feed_api.schemas import (
    ACTION_METADATA_KEY_ACTION_TYPE, ACTION_METADATA_KEY_TARGET_CHANNEL_ID, ANNOTATION_ACTION_METADATA,
    ANNOTATION_TARGET_MESSAGE, CHANNEL_TYPE_ACTION, Annotation, Channel, Message,
)
from feedsync.Sync.Action_Message_Manager import ActionMessageManager, get_target_message_id
from feedsync.Sync.exceptions import ActionChannelNotInitializedError, ActionNotAppliedError
from feedsync.Sync.Message_Manager import MessageManager, MessageManagerConfig
from feedsync.Sync.Reconciliation import UnsentMessagesSentEvent
#
#######################################################################################################################
#
# Functions:

pytestmark = pytest.mark.asyncio


def target_annotation(target_id):
    return [Annotation(type=ANNOTATION_TARGET_MESSAGE, value={"id": target_id})]


async def wait_for_call(gateway, kind, count=1):
    for _ in range(100):
        if len(gateway.calls_of(kind)) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"gateway never saw {count} '{kind}' call(s)")


@pytest.fixture
def events(message_manager):
    captured = []
    message_manager.notifier.subscribe(captured.append)
    return captured


async def load_targets(message_manager, gateway, ids=range(1, 6)):
    gateway.seed("chan", ids)
    await message_manager.retrieve_initial_messages("chan")
    return message_manager.get_message_map("chan")


# --- Action channels ---

async def test_init_creates_channel_once_for_concurrent_callers(action_manager, gateway):
    first, second = await asyncio.gather(
        action_manager.init_action_channel("favorite", "chan"),
        action_manager.init_action_channel("favorite", "chan"),
    )

    assert first.id == second.id == "ch-1"
    assert len(gateway.calls_of("create_channel")) == 1
    assert action_manager.is_action_channel("ch-1")
    metadata = first.get_annotation(ANNOTATION_ACTION_METADATA).value
    assert metadata == {ACTION_METADATA_KEY_ACTION_TYPE: "favorite", ACTION_METADATA_KEY_TARGET_CHANNEL_ID: "chan"}


async def test_init_reuses_existing_remote_channel(action_manager, gateway):
    gateway.remote_channels.append(Channel(id="ch-9", type=CHANNEL_TYPE_ACTION, annotations=[
        Annotation(type=ANNOTATION_ACTION_METADATA, value={ACTION_METADATA_KEY_ACTION_TYPE: "favorite",
                                                           ACTION_METADATA_KEY_TARGET_CHANNEL_ID: "chan"})]))

    channel = await action_manager.init_action_channel("favorite", "chan")
    other = await action_manager.init_action_channel("read", "chan")

    assert channel.id == "ch-9"
    assert other.id == "ch-1"
    assert len(gateway.calls_of("create_channel")) == 1


async def test_action_channel_uses_machine_message_parameters(action_manager, message_manager, gateway):
    channel = await action_manager.init_action_channel("favorite", "chan")

    await message_manager.retrieve_initial_messages(channel.id)

    params = gateway.calls_of("retrieve")[0][2]
    assert params["include_machine"] == 1
    assert params["include_deleted"] == 0


async def test_uninitialized_channel_is_rejected(action_manager, message_manager, gateway):
    targets = await load_targets(message_manager, gateway)

    with pytest.raises(ActionChannelNotInitializedError):
        action_manager.apply_channel_action("ch-404", targets["5"])
    with pytest.raises(ActionChannelNotInitializedError):
        await action_manager.retrieve_newest_messages("ch-404")


# --- Applying ---

async def test_apply_is_visible_immediately_and_idempotent(action_manager, message_manager, gateway, mem_db):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)

    marker = action_manager.apply_channel_action(channel.id, targets["5"])
    assert action_manager.apply_channel_action(channel.id, targets["5"]) is None
    assert action_manager.apply_channel_action(channel.id, targets["5"]) is None

    assert action_manager.is_actioned(channel.id, "5")
    assert mem_db.get_action_message_spec_count(channel.id) == 1
    assert list(mem_db.get_unsent_messages(channel.id)) == [marker.id]
    assert marker.message.machine_only
    assert get_target_message_id(marker.message) == "5"
    await message_manager.join_background_tasks()


async def test_sent_marker_is_rekeyed_to_its_server_id(action_manager, message_manager, gateway, mem_db, events):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    gateway._next_id = 9

    marker = action_manager.apply_channel_action(channel.id, targets["5"])
    await message_manager.join_background_tasks()

    assert [event.as_dict() for event in events] == [{marker.id: "9"}]
    specs = mem_db.get_action_message_specs_for_target_messages(["5"])
    assert [(spec.action_message_id, spec.target_message_id) for spec in specs] == [("9", "5")]
    assert specs[0].target_message_display_date == targets["5"].display_date
    assert mem_db.get_unsent_messages(channel.id) == {}
    assert action_manager.is_actioned(channel.id, "5")


async def test_duplicate_event_delivery_is_harmless(action_manager, message_manager, gateway, mem_db, events):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    action_manager.apply_channel_action(channel.id, targets["5"])
    await message_manager.join_background_tasks()

    await message_manager.notifier.publish(events[0])

    assert mem_db.get_action_message_spec_count(channel.id) == 1
    assert action_manager.is_actioned(channel.id, "5")


# --- Removing, at every point of the send ---

async def test_remove_after_marker_was_sent(action_manager, message_manager, gateway, mem_db, events):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    action_manager.apply_channel_action(channel.id, targets["5"])
    await message_manager.join_background_tasks()

    removed = action_manager.remove_channel_action(channel.id, "5")
    assert not action_manager.is_actioned(channel.id, "5")
    await message_manager.join_background_tasks()

    assert [spec.action_message_id for spec in removed] == ["1000"]
    assert gateway.calls_of("delete") == [("delete", channel.id, "1000")]
    assert gateway.messages[channel.id] == {}
    assert mem_db.get_pending_message_deletions() == {}

    await message_manager.notifier.publish(events[0])
    assert not action_manager.is_actioned(channel.id, "5")


async def test_remove_while_marker_send_is_in_flight(action_manager, message_manager, gateway, mem_db, events):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    gateway.create_gate = asyncio.Event()

    action_manager.apply_channel_action(channel.id, targets["5"])
    await wait_for_call(gateway, "create")
    action_manager.remove_channel_action(channel.id, "5")
    gateway.create_gate.set()
    await message_manager.join_background_tasks()

    assert not action_manager.is_actioned(channel.id, "5")
    assert mem_db.get_action_message_spec_count(channel.id) == 0
    assert gateway.calls_of("delete") == [("delete", channel.id, "1000")]
    assert gateway.messages[channel.id] == {}
    assert events == []


async def test_remove_before_marker_send_started(action_manager, message_manager, gateway, mem_db):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)

    action_manager.apply_channel_action(channel.id, targets["5"])
    action_manager.remove_channel_action(channel.id, "5")
    await message_manager.join_background_tasks()

    assert gateway.calls_of("create") == []
    assert gateway.calls_of("delete") == []
    assert not action_manager.is_actioned(channel.id, "5")
    assert mem_db.get_unsent_messages(channel.id) == {}


async def test_remove_of_unapplied_action_raises(action_manager):
    channel = await action_manager.init_action_channel("favorite", "chan")
    with pytest.raises(ActionNotAppliedError):
        action_manager.remove_channel_action(channel.id, "5")


async def test_failed_marker_delete_stays_in_outbox(action_manager, message_manager, gateway, mem_db):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    action_manager.apply_channel_action(channel.id, targets["5"])
    await message_manager.join_background_tasks()
    gateway.fail_next["delete"].append(APIConnectionError("offline"))

    action_manager.remove_channel_action(channel.id, "5")
    await message_manager.join_background_tasks()

    assert mem_db.get_pending_message_deletions() == {"1000": channel.id}
    await action_manager.retrieve_newest_messages(channel.id)
    assert not action_manager.is_actioned(channel.id, "5")


async def test_action_on_unsent_target_is_dropped_once_target_is_confirmed(action_manager, message_manager,
                                                                            gateway, mem_db):
    channel = await action_manager.init_action_channel("favorite", "chan")
    gateway.create_gate = asyncio.Event()
    target = message_manager.create_unsent_message_and_attempt_send("chan", Message(text="new post"))

    action_manager.apply_channel_action(channel.id, target)
    assert action_manager.is_actioned(channel.id, target.id)
    gateway.create_gate.set()
    await message_manager.join_background_tasks()

    assert not action_manager.is_actioned(channel.id, target.id)
    assert mem_db.get_action_message_spec_count(channel.id) == 0
    await action_manager.retrieve_newest_messages(channel.id)
    assert mem_db.get_action_message_spec_count(channel.id) == 0


async def test_marker_flushed_before_channel_init_is_rekeyed(action_manager, message_manager, gateway, mem_db):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    gateway.fail_next["create"].append(APIConnectionError("offline"))
    marker = action_manager.apply_channel_action(channel.id, targets["5"])
    await message_manager.join_background_tasks()
    assert list(mem_db.get_unsent_messages(channel.id)) == [marker.id]

    # A new session flushes the outbox before the action channel is initialized again.
    restarted = MessageManager(gateway, mem_db, MessageManagerConfig(page_size=20))
    restarted_actions = ActionMessageManager(restarted)
    summary = await restarted.send_all_unsent()

    assert summary["sent"] == {channel.id: {marker.id: "1000"}}
    specs = mem_db.get_action_message_specs(channel.id)
    assert [(spec.action_message_id, spec.target_message_id) for spec in specs] == [("1000", "5")]
    assert mem_db.get_action_message_specs_by_action_message_ids([marker.id]) == []

    await restarted_actions.init_action_channel("favorite", "chan")
    restarted_actions.remove_channel_action(channel.id, "5")
    await restarted.join_background_tasks()

    assert ("delete", channel.id, "1000") in gateway.calls
    assert "1000" not in gateway.messages[channel.id]
    assert mem_db.get_pending_message_deletions() == {}
    restarted_actions.close()


async def test_only_ids_with_stale_specs_are_retired(action_manager, message_manager, gateway):
    channel = await action_manager.init_action_channel("favorite", "chan")
    plain = message_manager.create_unsent_message_and_attempt_send("chan", Message(text="plain post"))
    gateway.create_gate = asyncio.Event()
    favorite = message_manager.create_unsent_message_and_attempt_send("chan", Message(text="favorite post"))
    action_manager.apply_channel_action(channel.id, favorite)
    gateway.create_gate.set()
    await message_manager.join_background_tasks()

    assert action_manager._retired_target_ids == {favorite.id}
    assert plain.id not in action_manager._retired_target_ids


# --- Syncing and reading the index ---

async def test_sync_all_indexes_markers_and_skips_bad_ones(action_manager, message_manager, gateway):
    channel = await action_manager.init_action_channel("favorite", "chan")
    targets = await load_targets(message_manager, gateway)
    gateway.add_message(channel.id, "50", annotations=target_annotation("5"), machine_only=True)
    gateway.add_message(channel.id, "51", machine_only=True)
    gateway.add_message(channel.id, "52", annotations=target_annotation("3"), machine_only=True)
    batches = []

    total = await action_manager.retrieve_and_persist_all_action_messages(channel.id, batches.append)

    assert total == 3
    assert [len(batch) for batch in batches] == [3]
    assert action_manager.get_actioned_message_ids(channel.id, ["1", "3", "5"]) == {"3", "5"}
    assert action_manager.has_actioned_messages(channel.id)
    assert [mp.id for mp in action_manager.get_actioned_messages(channel.id)] == ["5", "3"]
    assert action_manager.get_actioned_messages(channel.id)[0] is targets["5"]


async def test_get_more_actioned_messages_reads_store_then_server(action_manager, message_manager, gateway):
    channel = await action_manager.init_action_channel("favorite", "chan")
    await load_targets(message_manager, gateway)
    gateway.add_message(channel.id, "50", annotations=target_annotation("5"), machine_only=True)
    gateway.add_message(channel.id, "52", annotations=target_annotation("3"), machine_only=True)
    await action_manager.retrieve_and_persist_all_action_messages(channel.id)

    targets, is_more = await action_manager.get_more_actioned_messages(channel.id)
    assert [mp.id for mp in targets] == ["3", "5"]
    assert is_more is False
    assert gateway.calls_of("retrieve")[-1][1] == channel.id
    retrieves_before = len(gateway.calls_of("retrieve"))

    targets, is_more = await action_manager.get_more_actioned_messages(channel.id)
    assert targets == [] and is_more is False
    assert gateway.calls_of("retrieve")[-1][2]["before_id"] == "50"
    assert len(gateway.calls_of("retrieve")) == retrieves_before + 1


async def test_newest_refresh_seeds_cursor_from_store(action_manager, message_manager, gateway):
    channel = await action_manager.init_action_channel("favorite", "chan")
    await load_targets(message_manager, gateway)
    gateway.add_message(channel.id, "50", annotations=target_annotation("5"), machine_only=True)
    await action_manager.retrieve_and_persist_all_action_messages(channel.id)
    message_manager.invalidate_channel(channel.id)
    gateway.add_message(channel.id, "53", annotations=target_annotation("4"), machine_only=True)

    result = await action_manager.retrieve_newest_messages(channel.id)

    assert result.success
    assert gateway.calls_of("retrieve")[-1][2]["since_id"] == "50"
    assert action_manager.is_actioned(channel.id, "4")
    assert action_manager.is_actioned(channel.id, "5")


async def test_markers_pending_deletion_are_not_indexed(action_manager, message_manager, gateway, mem_db):
    channel = await action_manager.init_action_channel("favorite", "chan")
    gateway.add_message(channel.id, "50", annotations=target_annotation("5"), machine_only=True)
    mem_db.add_pending_message_deletion("50", channel.id)

    await action_manager.retrieve_and_persist_all_action_messages(channel.id)

    assert not action_manager.is_actioned(channel.id, "5")


async def test_close_unsubscribes(action_manager, message_manager):
    count = message_manager.notifier.subscriber_count
    action_manager.close()
    assert message_manager.notifier.subscriber_count == count - 1
    await message_manager.notifier.publish(UnsentMessagesSentEvent(channel_id="x", id_mappings=(("a", "b"),)))

#
# End of test_action_message_manager.py
#######################################################################################################################
