# Feed_Cache_DB.py
# Description: SQLite cache for channel messages, action indexes and the outbox of unconfirmed mutations.
#
"""
Feed_Cache_DB.py
----------------

A SQLite-based local store backing the channel sync layer.

This library provides:
- Schema management with versioning.
- Thread-safe database connections using `threading.local`.
- Idempotent upserts of messages keyed by their (server or temporary) id, with
  windowed reads ordered by display date.
- An optional FTS5 shadow index over message text, kept in step with the primary
  rows by this module. When the SQLite build lacks FTS5 the store falls back to
  `LIKE` scans instead of failing.
- The `action_message_specs` secondary index used to answer "is this message
  actioned" without reading channel history.
- Outbox tables for mutations the server has not confirmed yet: unsent messages
  (flagged rows in `messages`), pending message deletions, pending file uploads,
  pending file deletions and pending file attachments.
- Message drafts.
- A transaction context manager for safe and explicit transaction handling.

Durable state lives only here; everything held in memory by the managers can be
rebuilt from this store plus the remote API.
"""
# Imports
import sqlite3
import json
import threading
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Optional, Any, Union, Set, Iterable
#
# Third-Party Libraries
#
# Local Imports
from feedsync.feed_api.schemas import Message
from feedsync.models import ActionMessageSpec, MessagePlus, MinMaxPair, OrderedMessageBatch, PendingFile
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

# SQLite's default host parameter limit is 999; stay under it for IN (...) lists.
_MAX_SQL_VARIABLES = 900


# --- Custom Exceptions ---
class FeedCacheDBError(Exception):
    """Base exception for FeedCacheDB related errors."""
    pass


class SchemaError(FeedCacheDBError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(FeedCacheDBError):
    """
    Indicates a unique constraint violation.

    Attributes:
        entity (Optional[str]): The table involved in the conflict.
        entity_id (Any): The ID of the row involved.
    """

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def _chunks(items: List[str], size: int = _MAX_SQL_VARIABLES) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


# --- Database Class ---
class FeedCacheDB:
    """
    Manages SQLite connections and operations for the channel message cache.

    Attributes:
        db_path (Path): The absolute path to the SQLite database file, or Path(":memory:").
        db_path_str (str): String form of the database path.
        client_id (str): Identifier of this client instance.
        fts_enabled (bool): True when the FTS5 shadow index is in use.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "feed_cache_schema"

    _FULL_SCHEMA_SQL_V1 = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name, version) VALUES('feed_cache_schema', 0);

/*----------------------------------------------------------------
  Messages. `unsent` rows are the outbox of local creates.
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS messages(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  message_id TEXT UNIQUE NOT NULL,
  channel_id TEXT NOT NULL,
  display_date INTEGER NOT NULL,
  message_json TEXT NOT NULL,
  text TEXT,
  unsent INTEGER NOT NULL DEFAULT 0,
  send_attempts INTEGER NOT NULL DEFAULT 0,
  send_failed INTEGER NOT NULL DEFAULT 0,
  pending_file_ids TEXT
);
CREATE INDEX IF NOT EXISTS idx_messages_channel_date ON messages(channel_id, display_date DESC);
CREATE INDEX IF NOT EXISTS idx_messages_unsent ON messages(channel_id, unsent);

CREATE TABLE IF NOT EXISTS message_drafts(
  draft_id TEXT PRIMARY KEY,
  channel_id TEXT NOT NULL,
  draft_date INTEGER NOT NULL,
  message_json TEXT NOT NULL
);

/*----------------------------------------------------------------
  Action index: at most one spec per (action channel, target message)
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS action_message_specs(
  action_message_id TEXT PRIMARY KEY,
  action_channel_id TEXT NOT NULL,
  target_message_id TEXT NOT NULL,
  target_channel_id TEXT NOT NULL,
  target_message_display_date INTEGER NOT NULL,
  UNIQUE(action_channel_id, target_message_id)
);
CREATE INDEX IF NOT EXISTS idx_action_specs_target ON action_message_specs(target_message_id);

/*----------------------------------------------------------------
  Outbox
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS pending_message_deletions(
  message_id TEXT PRIMARY KEY,
  channel_id TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_files(
  file_id TEXT PRIMARY KEY,
  file_path TEXT NOT NULL,
  type TEXT NOT NULL,
  name TEXT NOT NULL,
  mime_type TEXT NOT NULL,
  kind TEXT,
  is_public INTEGER NOT NULL DEFAULT 0,
  send_attempts INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS pending_file_deletions(
  file_id TEXT PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS pending_file_attachments(
  pending_file_id TEXT NOT NULL,
  message_id TEXT NOT NULL,
  channel_id TEXT NOT NULL,
  is_oembed INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (pending_file_id, message_id)
);

UPDATE db_schema_version
   SET version = 1
 WHERE schema_name = 'feed_cache_schema'
   AND version < 1;
"""

    # rowid of messages_fts mirrors messages.id
    _FTS_SCHEMA_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
  text,
  channel_id UNINDEXED
);
"""

    _MESSAGE_COLUMNS = ("message_id, channel_id, display_date, message_json, unsent, send_attempts, send_failed, "
                        "pending_file_ids")

    def __init__(self, db_path: Union[str, Path], client_id: str, enable_fts: bool = True):
        """
        Initializes the FeedCacheDB instance.

        Args:
            db_path: Path to the SQLite database file or ":memory:".
            client_id: A unique identifier for this client instance. Must not be empty.
            enable_fts: When False the FTS5 shadow index is never used, even if
                        the SQLite build supports it.

        Raises:
            ValueError: If `client_id` is empty or None.
            FeedCacheDBError: If directory creation or schema setup fails.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id
        self.fts_enabled = False
        self._fts_requested = enable_fts

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FeedCacheDBError(f"Failed to create database directory {self.db_path.parent}: {e}")

        logger.info(f"Initializing FeedCacheDB for path: {self.db_path_str} [Client ID: {self.client_id}]")
        self._local = threading.local()
        # In-memory databases are per-connection, so every thread must share one.
        self._shared_memory_conn: Optional[sqlite3.Connection] = None
        try:
            self._initialize_schema()
        except (FeedCacheDBError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close_connection()
            raise FeedCacheDBError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15)
        conn.row_factory = sqlite3.Row
        if not self.is_memory_db:
            conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _get_thread_connection(self) -> sqlite3.Connection:
        """
        Retrieves or creates a thread-local SQLite connection, reopening it if it became unusable.

        Raises:
            FeedCacheDBError: If connecting to the database fails.
        """
        if self.is_memory_db:
            if self._shared_memory_conn is None:
                try:
                    self._shared_memory_conn = self._open_connection()
                except sqlite3.Error as e:
                    raise FeedCacheDBError(f"Failed to open in-memory database: {e}") from e
            return self._shared_memory_conn

        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                conn = None

        if not conn:
            try:
                conn = self._open_connection()
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                self._local.conn = None
                raise FeedCacheDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        """
        Closes the current thread's database connection, rolling back an open
        transaction and checkpointing the WAL first for file databases.
        """
        if self.is_memory_db:
            if self._shared_memory_conn is not None:
                try:
                    self._shared_memory_conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing in-memory database: {e}")
                finally:
                    self._shared_memory_conn = None
            return

        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} has an uncommitted transaction on close. Rolling back.")
                    conn.rollback()
                mode_row = conn.execute("PRAGMA journal_mode;").fetchone()
                if mode_row and mode_row[0].lower() == 'wal':
                    try:
                        conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                    except sqlite3.Error as cp_err:
                        logger.warning(f"WAL checkpoint failed for {self.db_path_str}: {cp_err}")
                conn.close()
                logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close for {self.db_path_str}: {e}")
            finally:
                self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False, script: bool = False) -> sqlite3.Cursor:
        """
        Executes a single SQL query or an entire SQL script.

        Args:
            query: The SQL query string or script.
            params: Optional parameters for the query. Ignored for scripts.
            commit: Commit afterwards unless already inside `with db.transaction():`.
            script: Execute `query` with `executescript`.

        Raises:
            ConflictError: On a unique constraint violation.
            FeedCacheDBError: For other SQLite errors.
        """
        conn = self.get_connection()
        # Checked up front: the sqlite3 module opens an implicit transaction on DML.
        was_in_transaction = conn.in_transaction
        try:
            cursor = conn.cursor()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Executing SQL (script={script}): {query[:300]}... Params: {str(params)[:200]}...")
            if script:
                cursor.executescript(query)
            else:
                cursor.execute(query, params or ())
            if commit and not was_in_transaction:
                conn.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:300]}... Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation: {e}") from e
            raise FeedCacheDBError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
            raise FeedCacheDBError(f"Query execution failed: {e}") from e

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for database transactions.

        Usage:
            with db.transaction() as conn:
                conn.execute(...)
        """
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    @staticmethod
    def _fts5_available(conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("CREATE VIRTUAL TABLE temp.__fts5_probe USING fts5(x);")
            conn.execute("DROP TABLE temp.__fts5_probe;")
            return True
        except sqlite3.OperationalError:
            return False

    def _initialize_schema(self):
        """
        Creates the schema for a new database, verifies the version of an existing
        one, and creates the FTS shadow table when FTS5 is available.

        Raises:
            SchemaError: If the database is newer than this code or a step fails.
        """
        conn = self.get_connection()
        current_db_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_db_version}. "
                    f"Code supports: {target_version}")
        if current_db_version > target_version:
            raise SchemaError(f"Database schema '{self._SCHEMA_NAME}' version ({current_db_version}) is newer than "
                              f"supported by code ({target_version}). Aborting.")
        if current_db_version < target_version:
            try:
                conn.executescript(self._FULL_SCHEMA_SQL_V1)
            except sqlite3.Error as e:
                raise SchemaError(f"DB schema V{target_version} setup failed for '{self._SCHEMA_NAME}': {e}") from e
            final_version = self._get_db_version(conn)
            if final_version != target_version:
                raise SchemaError(f"Schema version update check failed. Expected {target_version}, got: {final_version}")
            logger.info(f"Schema {target_version} applied for DB: {self.db_path_str}.")

        if self._fts_requested and self._fts5_available(conn):
            try:
                conn.executescript(self._FTS_SCHEMA_SQL)
                self.fts_enabled = True
            except sqlite3.Error as e:
                logger.warning(f"FTS5 shadow index could not be created, falling back to LIKE search: {e}")
        elif self._fts_requested:
            logger.warning("SQLite build lacks FTS5; message search will use LIKE scans.")

    # --- Row helpers ---
    @staticmethod
    def _row_to_message_plus(row: sqlite3.Row) -> Optional[MessagePlus]:
        try:
            message = Message.model_validate_json(row['message_json'])
        except ValueError as e:
            logger.error(f"Skipping undecodable cached message {row['message_id']}: {e}")
            return None
        pending_file_ids = json.loads(row['pending_file_ids']) if row['pending_file_ids'] else []
        return MessagePlus(
            message=message,
            display_date=_from_millis(row['display_date']),
            is_unsent=bool(row['unsent']),
            send_attempts=row['send_attempts'],
            send_failed=bool(row['send_failed']),
            pending_file_ids=pending_file_ids,
        )

    def _rows_to_ordered_map(self, rows: List[sqlite3.Row]) -> "OrderedDict[str, MessagePlus]":
        messages: "OrderedDict[str, MessagePlus]" = OrderedDict()
        for row in rows:
            message_plus = self._row_to_message_plus(row)
            if message_plus is not None:
                messages[message_plus.id] = message_plus
        return messages

    def _sync_fts_row(self, conn: sqlite3.Connection, rowid: int, text: Optional[str], channel_id: str) -> None:
        if not self.fts_enabled:
            return
        conn.execute("DELETE FROM messages_fts WHERE rowid = ?", (rowid,))
        if text:
            conn.execute("INSERT INTO messages_fts(rowid, text, channel_id) VALUES (?, ?, ?)",
                         (rowid, text, channel_id))

    def _delete_fts_row(self, conn: sqlite3.Connection, rowid: int) -> None:
        if self.fts_enabled:
            conn.execute("DELETE FROM messages_fts WHERE rowid = ?", (rowid,))

    # --- Messages ---
    def insert_or_replace_message(self, message_plus: MessagePlus) -> None:
        """
        Upserts a message by id. The server is authoritative for the payload, so an
        existing row's JSON, text and date are overwritten; the FTS shadow row follows.

        Raises:
            InputError: If the message has no id or channel.
            FeedCacheDBError: On database errors.
        """
        message = message_plus.message
        if not message.id or not message.channel_id:
            raise InputError("Cannot persist a message without both an id and a channel id.")
        with self.transaction() as conn:
            self._upsert_message_row(conn, message_plus)

    def insert_or_replace_messages(self, messages: Iterable[MessagePlus]) -> None:
        with self.transaction() as conn:
            for message_plus in messages:
                self._upsert_message_row(conn, message_plus)

    def _upsert_message_row(self, conn: sqlite3.Connection, message_plus: MessagePlus) -> None:
        message = message_plus.message
        conn.execute(
            """
            INSERT INTO messages(message_id, channel_id, display_date, message_json, text, unsent, send_attempts,
                                 send_failed, pending_file_ids)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(message_id) DO UPDATE SET
                channel_id = excluded.channel_id,
                display_date = excluded.display_date,
                message_json = excluded.message_json,
                text = excluded.text,
                unsent = excluded.unsent,
                send_attempts = excluded.send_attempts,
                send_failed = excluded.send_failed,
                pending_file_ids = excluded.pending_file_ids
            """,
            (message.id, message.channel_id, _to_millis(message_plus.display_date), message.model_dump_json(),
             message.text, int(message_plus.is_unsent), message_plus.send_attempts, int(message_plus.send_failed),
             json.dumps(message_plus.pending_file_ids) if message_plus.pending_file_ids else None)
        )
        rowid = conn.execute("SELECT id FROM messages WHERE message_id = ?", (message.id,)).fetchone()['id']
        self._sync_fts_row(conn, rowid, message.text, message.channel_id)

    def get_message(self, message_id: str) -> Optional[MessagePlus]:
        cursor = self.execute_query(f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE message_id = ?",
                                    (message_id,))
        row = cursor.fetchone()
        return self._row_to_message_plus(row) if row else None

    def get_messages_by_ids(self, message_ids: Iterable[str]) -> "OrderedDict[str, MessagePlus]":
        """Batch lookup; result is ordered newest display date first."""
        ids = list(dict.fromkeys(message_ids))
        rows: List[sqlite3.Row] = []
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            cursor = self.execute_query(
                f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE message_id IN ({placeholders})", tuple(chunk))
            rows.extend(cursor.fetchall())
        rows.sort(key=lambda r: r['display_date'], reverse=True)
        return self._rows_to_ordered_map(rows)

    def get_messages(self, channel_id: str, before_date: Optional[datetime] = None,
                     limit: int = 40) -> OrderedMessageBatch:
        """
        Reads up to `limit` messages of a channel strictly older than `before_date`
        (all of them when None), newest first.

        The returned MinMaxPair covers the server ids in the batch; unsent rows carry
        temporary ids and never contribute to it.
        """
        if limit <= 0:
            raise InputError("limit must be positive.")
        if before_date is None:
            cursor = self.execute_query(
                f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE channel_id = ? "
                f"ORDER BY display_date DESC, id DESC LIMIT ?", (channel_id, limit))
        else:
            cursor = self.execute_query(
                f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE channel_id = ? AND display_date < ? "
                f"ORDER BY display_date DESC, id DESC LIMIT ?", (channel_id, _to_millis(before_date), limit))
        messages = self._rows_to_ordered_map(cursor.fetchall())
        min_max_pair = MinMaxPair.from_ids(mp.id for mp in messages.values() if not mp.is_unsent)
        return OrderedMessageBatch(messages, min_max_pair)

    def get_unsent_messages(self, channel_id: str) -> "OrderedDict[str, MessagePlus]":
        """
        Unsent messages of a channel still waiting to be flushed, oldest first (the
        order they must be sent in). Messages parked by a fatal send error are left out.
        """
        cursor = self.execute_query(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE channel_id = ? AND unsent = 1 AND send_failed = 0 "
            f"ORDER BY display_date ASC, id ASC", (channel_id,))
        return self._rows_to_ordered_map(cursor.fetchall())

    def get_failed_messages(self, channel_id: str) -> "OrderedDict[str, MessagePlus]":
        """Unsent messages the server rejected outright, oldest first."""
        cursor = self.execute_query(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE channel_id = ? AND unsent = 1 AND send_failed = 1 "
            f"ORDER BY display_date ASC, id ASC", (channel_id,))
        return self._rows_to_ordered_map(cursor.fetchall())

    def get_channel_ids_with_unsent_messages(self) -> List[str]:
        cursor = self.execute_query("SELECT DISTINCT channel_id FROM messages WHERE unsent = 1 AND send_failed = 0")
        return [row['channel_id'] for row in cursor.fetchall()]

    def update_send_attempts(self, message_id: str, send_attempts: int) -> None:
        self.execute_query("UPDATE messages SET send_attempts = ? WHERE message_id = ?",
                           (send_attempts, message_id), commit=True)

    def set_send_failed(self, message_id: str, send_failed: bool) -> None:
        self.execute_query("UPDATE messages SET send_failed = ? WHERE message_id = ? AND unsent = 1",
                           (int(send_failed), message_id), commit=True)

    def delete_message(self, message_id: str) -> bool:
        """Removes a message row and its FTS shadow row. Returns False if it was not cached."""
        with self.transaction() as conn:
            row = conn.execute("SELECT id FROM messages WHERE message_id = ?", (message_id,)).fetchone()
            if row is None:
                return False
            self._delete_fts_row(conn, row['id'])
            conn.execute("DELETE FROM messages WHERE id = ?", (row['id'],))
        return True

    def replace_message_id(self, old_message_id: str, confirmed: MessagePlus) -> None:
        """
        Swaps a temporary row for the server-confirmed message in one transaction.
        Pending attachments recorded against the old id are moved along with it.
        """
        with self.transaction() as conn:
            row = conn.execute("SELECT id FROM messages WHERE message_id = ?", (old_message_id,)).fetchone()
            if row is not None:
                self._delete_fts_row(conn, row['id'])
                conn.execute("DELETE FROM messages WHERE id = ?", (row['id'],))
            self._upsert_message_row(conn, confirmed)
            conn.execute("UPDATE pending_file_attachments SET message_id = ? WHERE message_id = ?",
                         (confirmed.id, old_message_id))

    def search_messages(self, query: str, channel_id: Optional[str] = None, limit: int = 50) -> List[MessagePlus]:
        """
        Full-text search over message text. Uses the FTS5 index when available,
        otherwise a case-insensitive LIKE scan.
        """
        if not query or not query.strip():
            raise InputError("Search query cannot be empty.")
        params: List[Any]
        if self.fts_enabled:
            sql = (f"SELECT m.{', m.'.join(c.strip() for c in self._MESSAGE_COLUMNS.split(','))} "
                   f"FROM messages_fts f JOIN messages m ON f.rowid = m.id WHERE messages_fts MATCH ?")
            params = [query]
            if channel_id is not None:
                sql += " AND m.channel_id = ?"
                params.append(channel_id)
            sql += " ORDER BY rank LIMIT ?"
        else:
            sql = f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE text LIKE ? ESCAPE '\\'"
            escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params = [f"%{escaped}%"]
            if channel_id is not None:
                sql += " AND channel_id = ?"
                params.append(channel_id)
            sql += " ORDER BY display_date DESC LIMIT ?"
        params.append(limit)
        cursor = self.execute_query(sql, tuple(params))
        return list(self._rows_to_ordered_map(cursor.fetchall()).values())

    # --- Action message specs ---
    def insert_or_replace_action_message_spec(self, action_message_id: str, action_channel_id: str,
                                              target_message_id: str, target_channel_id: str,
                                              target_message_display_date: datetime) -> None:
        """
        Records that `action_message_id` applies its channel's action to `target_message_id`.
        A spec for the same (action channel, target) pair is replaced, never duplicated.
        """
        self.execute_query(
            """
            INSERT OR REPLACE INTO action_message_specs(action_message_id, action_channel_id, target_message_id,
                                                        target_channel_id, target_message_display_date)
            VALUES (?, ?, ?, ?, ?)
            """,
            (action_message_id, action_channel_id, target_message_id, target_channel_id,
             _to_millis(target_message_display_date)),
            commit=True)

    @staticmethod
    def _row_to_spec(row: sqlite3.Row) -> ActionMessageSpec:
        return ActionMessageSpec(
            action_message_id=row['action_message_id'],
            action_channel_id=row['action_channel_id'],
            target_message_id=row['target_message_id'],
            target_channel_id=row['target_channel_id'],
            target_message_display_date=_from_millis(row['target_message_display_date']),
        )

    def has_action_message_spec(self, action_channel_id: str, target_message_id: str) -> bool:
        cursor = self.execute_query(
            "SELECT 1 FROM action_message_specs WHERE action_channel_id = ? AND target_message_id = ? LIMIT 1",
            (action_channel_id, target_message_id))
        return cursor.fetchone() is not None

    def get_action_message_spec_count(self, action_channel_id: str) -> int:
        cursor = self.execute_query("SELECT COUNT(*) AS n FROM action_message_specs WHERE action_channel_id = ?",
                                    (action_channel_id,))
        return cursor.fetchone()['n']

    def get_target_message_ids_with_specs(self, action_channel_id: str, target_message_ids: Iterable[str]) -> Set[str]:
        ids = list(dict.fromkeys(target_message_ids))
        found: Set[str] = set()
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            cursor = self.execute_query(
                f"SELECT target_message_id FROM action_message_specs "
                f"WHERE action_channel_id = ? AND target_message_id IN ({placeholders})",
                (action_channel_id, *chunk))
            found.update(row['target_message_id'] for row in cursor.fetchall())
        return found

    def get_action_message_specs_for_target_messages(self, target_message_ids: Iterable[str],
                                                     action_channel_id: Optional[str] = None) -> List[ActionMessageSpec]:
        """Specs pointing at any of the targets, optionally limited to one action channel."""
        ids = list(dict.fromkeys(target_message_ids))
        specs: List[ActionMessageSpec] = []
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            sql = f"SELECT * FROM action_message_specs WHERE target_message_id IN ({placeholders})"
            params: tuple = tuple(chunk)
            if action_channel_id is not None:
                sql += " AND action_channel_id = ?"
                params = params + (action_channel_id,)
            cursor = self.execute_query(sql, params)
            specs.extend(self._row_to_spec(row) for row in cursor.fetchall())
        return specs

    def get_action_message_specs(self, action_channel_id: str, before_date: Optional[datetime] = None,
                                 limit: int = 40) -> List[ActionMessageSpec]:
        """Specs of one action channel, newest target first."""
        if before_date is None:
            cursor = self.execute_query(
                "SELECT * FROM action_message_specs WHERE action_channel_id = ? "
                "ORDER BY target_message_display_date DESC LIMIT ?", (action_channel_id, limit))
        else:
            cursor = self.execute_query(
                "SELECT * FROM action_message_specs WHERE action_channel_id = ? AND target_message_display_date < ? "
                "ORDER BY target_message_display_date DESC LIMIT ?",
                (action_channel_id, _to_millis(before_date), limit))
        return [self._row_to_spec(row) for row in cursor.fetchall()]

    def get_action_message_specs_by_action_message_ids(self, action_message_ids: Iterable[str]) -> List[ActionMessageSpec]:
        ids = list(dict.fromkeys(action_message_ids))
        specs: List[ActionMessageSpec] = []
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            cursor = self.execute_query(
                f"SELECT * FROM action_message_specs WHERE action_message_id IN ({placeholders})", tuple(chunk))
            specs.extend(self._row_to_spec(row) for row in cursor.fetchall())
        return specs

    def delete_action_message_spec(self, action_channel_id: str, target_message_id: str) -> int:
        cursor = self.execute_query(
            "DELETE FROM action_message_specs WHERE action_channel_id = ? AND target_message_id = ?",
            (action_channel_id, target_message_id), commit=True)
        return cursor.rowcount

    def delete_action_message_spec_by_action_message_id(self, action_message_id: str) -> int:
        cursor = self.execute_query("DELETE FROM action_message_specs WHERE action_message_id = ?",
                                    (action_message_id,), commit=True)
        return cursor.rowcount

    def replace_action_message_spec_id(self, old_action_message_id: str, new_action_message_id: str) -> int:
        """
        Re-keys a spec from a temporary action message id to its confirmed id, keeping
        the same (action channel, target) pair. Returns the number of rows moved.
        """
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM action_message_specs WHERE action_message_id = ?",
                               (old_action_message_id,)).fetchone()
            if row is None:
                return 0
            conn.execute("DELETE FROM action_message_specs WHERE action_message_id = ?", (old_action_message_id,))
            conn.execute(
                """
                INSERT OR REPLACE INTO action_message_specs(action_message_id, action_channel_id, target_message_id,
                                                            target_channel_id, target_message_display_date)
                VALUES (?, ?, ?, ?, ?)
                """,
                (new_action_message_id, row['action_channel_id'], row['target_message_id'],
                 row['target_channel_id'], row['target_message_display_date']))
        return 1

    # --- Outbox: pending message deletions ---
    def add_pending_message_deletion(self, message_id: str, channel_id: str) -> None:
        self.execute_query(
            "INSERT OR REPLACE INTO pending_message_deletions(message_id, channel_id) VALUES (?, ?)",
            (message_id, channel_id), commit=True)

    def get_pending_message_deletions(self, channel_id: Optional[str] = None) -> Dict[str, str]:
        """Map of message id to channel id for every queued deletion."""
        if channel_id is None:
            cursor = self.execute_query("SELECT message_id, channel_id FROM pending_message_deletions")
        else:
            cursor = self.execute_query(
                "SELECT message_id, channel_id FROM pending_message_deletions WHERE channel_id = ?", (channel_id,))
        return {row['message_id']: row['channel_id'] for row in cursor.fetchall()}

    def delete_pending_message_deletion(self, message_id: str) -> None:
        self.execute_query("DELETE FROM pending_message_deletions WHERE message_id = ?", (message_id,), commit=True)

    # --- Outbox: pending files ---
    def insert_pending_file(self, pending_file: PendingFile) -> None:
        self.execute_query(
            """
            INSERT OR REPLACE INTO pending_files(file_id, file_path, type, name, mime_type, kind, is_public,
                                                 send_attempts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (pending_file.id, pending_file.file_path, pending_file.type, pending_file.name, pending_file.mime_type,
             pending_file.kind, int(pending_file.is_public), pending_file.send_attempts),
            commit=True)

    @staticmethod
    def _row_to_pending_file(row: sqlite3.Row) -> PendingFile:
        return PendingFile(id=row['file_id'], file_path=row['file_path'], type=row['type'], name=row['name'],
                           mime_type=row['mime_type'], kind=row['kind'], is_public=bool(row['is_public']),
                           send_attempts=row['send_attempts'])

    def get_pending_file(self, file_id: str) -> Optional[PendingFile]:
        row = self.execute_query("SELECT * FROM pending_files WHERE file_id = ?", (file_id,)).fetchone()
        return self._row_to_pending_file(row) if row else None

    def get_pending_files(self) -> List[PendingFile]:
        cursor = self.execute_query("SELECT * FROM pending_files")
        return [self._row_to_pending_file(row) for row in cursor.fetchall()]

    def increment_pending_file_send_attempts(self, file_id: str) -> int:
        with self.transaction() as conn:
            conn.execute("UPDATE pending_files SET send_attempts = send_attempts + 1 WHERE file_id = ?", (file_id,))
            row = conn.execute("SELECT send_attempts FROM pending_files WHERE file_id = ?", (file_id,)).fetchone()
        return row['send_attempts'] if row else 0

    def delete_pending_file(self, file_id: str) -> None:
        self.execute_query("DELETE FROM pending_files WHERE file_id = ?", (file_id,), commit=True)

    # --- Outbox: pending file deletions ---
    def add_pending_file_deletion(self, file_id: str) -> None:
        self.execute_query("INSERT OR IGNORE INTO pending_file_deletions(file_id) VALUES (?)", (file_id,),
                           commit=True)

    def get_pending_file_deletions(self) -> Set[str]:
        cursor = self.execute_query("SELECT file_id FROM pending_file_deletions")
        return {row['file_id'] for row in cursor.fetchall()}

    def delete_pending_file_deletion(self, file_id: str) -> None:
        self.execute_query("DELETE FROM pending_file_deletions WHERE file_id = ?", (file_id,), commit=True)

    # --- Outbox: pending file attachments ---
    def insert_pending_file_attachment(self, pending_file_id: str, message_id: str, channel_id: str,
                                       is_oembed: bool = False) -> None:
        self.execute_query(
            """
            INSERT OR REPLACE INTO pending_file_attachments(pending_file_id, message_id, channel_id, is_oembed)
            VALUES (?, ?, ?, ?)
            """,
            (pending_file_id, message_id, channel_id, int(is_oembed)), commit=True)

    def get_pending_file_attachments(self, pending_file_id: str) -> List[Dict[str, Any]]:
        cursor = self.execute_query("SELECT * FROM pending_file_attachments WHERE pending_file_id = ?",
                                    (pending_file_id,))
        return [
            {"pending_file_id": row['pending_file_id'], "message_id": row['message_id'],
             "channel_id": row['channel_id'], "is_oembed": bool(row['is_oembed'])}
            for row in cursor.fetchall()
        ]

    def delete_pending_file_attachment(self, pending_file_id: str, message_id: str) -> None:
        self.execute_query("DELETE FROM pending_file_attachments WHERE pending_file_id = ? AND message_id = ?",
                           (pending_file_id, message_id), commit=True)

    # --- Drafts ---
    def insert_or_replace_draft(self, draft_id: str, channel_id: str, message: Message,
                                draft_date: Optional[datetime] = None) -> None:
        draft_date = draft_date or datetime.now(timezone.utc)
        self.execute_query(
            "INSERT OR REPLACE INTO message_drafts(draft_id, channel_id, draft_date, message_json) VALUES (?, ?, ?, ?)",
            (draft_id, channel_id, _to_millis(draft_date), message.model_dump_json()), commit=True)

    def get_drafts(self, channel_id: str) -> "OrderedDict[str, Message]":
        cursor = self.execute_query(
            "SELECT draft_id, message_json FROM message_drafts WHERE channel_id = ? ORDER BY draft_date DESC",
            (channel_id,))
        return OrderedDict((row['draft_id'], Message.model_validate_json(row['message_json']))
                           for row in cursor.fetchall())

    def delete_draft(self, draft_id: str) -> None:
        self.execute_query("DELETE FROM message_drafts WHERE draft_id = ?", (draft_id,), commit=True)


# --- Transaction Context Manager Class (Helper for `with db.transaction():`) ---
class TransactionContextManager:
    def __init__(self, db_instance: FeedCacheDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            self.conn.execute("BEGIN")
            self.is_outermost_transaction = True
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.conn:
            logger.error("Transaction context: Connection is None in __exit__.")
            return False

        if self.is_outermost_transaction:
            if exc_type:
                logger.error(f"Transaction failed, rolling back: {exc_type.__name__} - {exc_val}")
                try:
                    self.conn.rollback()
                except sqlite3.Error as rb_err:
                    logger.critical(f"Rollback FAILED: {rb_err}", exc_info=True)
            else:
                try:
                    self.conn.commit()
                except sqlite3.Error as commit_err:
                    logger.error(f"Commit FAILED, attempting rollback: {commit_err}", exc_info=True)
                    try:
                        self.conn.rollback()
                    except sqlite3.Error as rb_err_after_commit_fail:
                        logger.critical(f"Rollback after failed commit also FAILED: {rb_err_after_commit_fail}",
                                        exc_info=True)
                    raise FeedCacheDBError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Feed_Cache_DB.py
#######################################################################################################################
