# feedsync/Sync/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class FeedSyncError(Exception):
    """Base exception for caller errors raised by the sync managers."""
    pass

class ActionChannelNotInitializedError(FeedSyncError):
    """Raised when a channel is used as an Action Channel before init_action_channel() completed for it."""
    def __init__(self, action_channel_id: str, message: str = None):
        super().__init__(message or (
            f"Action Channel {action_channel_id} is unknown. Call init_action_channel() before using it."))
        self.action_channel_id = action_channel_id

class ActionNotAppliedError(FeedSyncError):
    """Raised when removing an action that was never applied to the target message."""
    def __init__(self, action_channel_id: str, target_message_id: str):
        super().__init__(f"No action in channel {action_channel_id} is applied to message {target_message_id}.")
        self.action_channel_id = action_channel_id
        self.target_message_id = target_message_id

#
# End of feedsync/Sync/exceptions.py
########################################################################################################################
