# Sync_Context.py
# Description: One explicitly passed object owning the client, store, notifier and both managers.
#
# Imports
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
import httpx
from loguru import logger
#
# Local Imports
from feedsync.config import get_channel_parameters, get_db_path, get_setting, load_settings
from feedsync.DB.Feed_Cache_DB import FeedCacheDB
from feedsync.feed_api.client import FeedAPIClient, FeedGateway
from feedsync.Sync.Action_Message_Manager import ActionMessageManager
from feedsync.Sync.Message_Manager import MessageManager, MessageManagerConfig
from feedsync.Sync.Reconciliation import ReconciliationNotifier
#
########################################################################################################################
#
# Functions:

class SyncContext:
    def __init__(self, client: FeedGateway, database: FeedCacheDB,
                 config: Optional[MessageManagerConfig] = None):
        self.client = client
        self.database = database
        self.notifier = ReconciliationNotifier()
        self.message_manager = MessageManager(client, database, config=config, notifier=self.notifier)
        self.action_message_manager = ActionMessageManager(self.message_manager, notifier=self.notifier)

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None) -> "SyncContext":
        """Builds a context from loaded settings (see feedsync.config.load_settings)."""
        settings = settings if settings is not None else load_settings()
        client = FeedAPIClient(
            base_url=get_setting("API", "base_url", settings=settings),
            token=get_setting("API", "token", settings=settings) or None,
            timeout=float(get_setting("API", "timeout", 30.0, settings=settings)),
            transport=transport,
        )
        database = FeedCacheDB(
            get_db_path(settings),
            client_id=get_setting("Sync", "client_id", "feedsync_local_instance_v1", settings=settings),
            enable_fts=bool(get_setting("Database", "enable_fts", True, settings=settings)),
        )
        config = MessageManagerConfig(
            page_size=int(get_setting("Sync", "page_size", 20, settings=settings)),
            database_insertion_enabled=bool(get_setting("Sync", "database_insertion", True, settings=settings)),
            max_batch_load_from_disk=int(get_setting("Sync", "max_batch_load_from_disk", 40, settings=settings)),
            channel_parameters=get_channel_parameters(settings),
        )
        logger.info(f"SyncContext created for {client.base_url} with store {database.db_path_str}")
        return cls(client, database, config=config)

    async def aclose(self) -> None:
        """Stops background sends, unsubscribes the action index and releases the client and store."""
        await self.message_manager.cancel_background_tasks()
        self.action_message_manager.close()
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
        self.database.close_connection()

    async def __aenter__(self) -> "SyncContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

#
# End of Sync_Context.py
########################################################################################################################
