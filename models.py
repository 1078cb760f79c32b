#!/usr/bin/env python3
"""
Data types and database operations for the refresh engine.

This module contains the feed/post records, the storage contract the refresh
engine depends on, and the SQLite implementation of that contract. All SQLite
access goes through a single connection owned by DatabaseQueue's worker, so
every write is serialized and committed as one statement.
"""

from dataclasses import dataclass, field
from os import path, access, R_OK
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Protocol, runtime_checkable

from config import config, get_logger
from errors import StorageError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


@dataclass
class Feed:
    """A subscribed feed and its cache state. Timestamps are epoch seconds."""

    id: int
    url: str
    title: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    cache_until: Optional[int] = None
    last_fetched_at: Optional[int] = None


@dataclass
class FeedItem:
    """One entry as read from a feed document, before sanitization."""

    guid: str
    title: str
    link: str
    published_at: int
    content: str


@dataclass
class ParsedFeed:
    title: str
    items: List[FeedItem] = field(default_factory=list)


@dataclass
class Post:
    """A stored item. Content is always sanitized HTML."""

    id: int
    feed_id: int
    guid: str
    title: str
    link: str
    published_at: int
    content: str


@dataclass
class CacheInfo:
    """Freshness metadata extracted from a 200 response."""

    etag: Optional[str]
    last_modified: Optional[str]
    cache_until: int


@dataclass
class FetchResult:
    """Outcome of one conditional fetch.

    Either not_modified is True (HTTP 304) and nothing else is set, or feed and
    cache_info carry the parsed document and its new cache metadata.
    """

    not_modified: bool = False
    feed: Optional[ParsedFeed] = None
    cache_info: Optional[CacheInfo] = None


@runtime_checkable
class FeedStore(Protocol):
    """The storage operations the refresh engine needs.

    Implementations raise StorageError when the underlying storage fails.
    """

    async def list_all_feeds(self) -> List[Feed]:
        ...

    async def get_feed_by_url(self, url: str) -> Optional[Feed]:
        ...

    async def insert_item_if_absent(self, feed_id: int, guid: str, title: str, link: str,
                                    published_at: int, content: str) -> bool:
        """Insert a post unless (feed_id, guid) exists. Returns True if inserted."""
        ...

    async def update_feed_title(self, feed_id: int, title: str) -> None:
        ...

    async def update_feed_last_fetched_at(self, feed_id: int, timestamp: int) -> None:
        ...

    async def update_feed_cache_metadata(self, feed_id: int, etag: Optional[str],
                                         last_modified: Optional[str], cache_until: Optional[int],
                                         fetched_at: Optional[int] = None) -> None:
        """Overwrite the cache fields, and last_fetched_at in the same write when given."""
        ...


def initialize_database(conn) -> None:
    """Create or migrate the schema on a freshly opened connection."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if feeds_table_exists:
            logger.info("Database already exists, checking for migrations")
            _run_migrations(conn)
        else:
            logger.info("Database is new or empty. Initializing schema.")

        # Every statement in the schema is idempotent
        cursor.executescript(_read_schema_file())
        conn.commit()
        logger.info("Database schema ready")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Run any necessary database migrations."""
    cursor = conn.cursor()

    try:
        # Migration 1: HTTP cache columns on feeds
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]

        for column, ddl in (
            ('etag', "ALTER TABLE feeds ADD COLUMN etag TEXT"),
            ('last_modified', "ALTER TABLE feeds ADD COLUMN last_modified TEXT"),
            ('cache_until', "ALTER TABLE feeds ADD COLUMN cache_until INTEGER"),
        ):
            if column not in columns:
                logger.info(f"Adding {column} column to feeds table")
                cursor.execute(ddl)
        conn.commit()
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")

    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _as_timestamp(value: Any) -> Optional[int]:
    """Stored timestamps are integers; anything else (legacy text dates) reads as unknown."""
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _row_to_feed(row) -> Feed:
    return Feed(
        id=row['id'],
        url=row['url'],
        title=row['title'] or "",
        etag=row['etag'] or None,
        last_modified=row['last_modified'] or None,
        cache_until=_as_timestamp(row['cache_until']),
        last_fetched_at=_as_timestamp(row['last_fetched_at']),
    )


FEED_COLUMNS = "id, url, title, etag, last_modified, cache_until, last_fetched_at"


class DatabaseQueue:
    """A queue for database operations to ensure serialized access.

    Named operations (plain methods below) run one at a time on the worker;
    callers use execute() or the async FeedStore methods which wrap it.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database, prepare the schema and start the worker."""
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            # Per-connection setting, needed for ON DELETE CASCADE
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StorageError(f"Could not open database {self.db_path}", cause=e) from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting so they do not hang forever
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith('_'):
                        raise StorageError(f"Unknown database operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn is not None and self.conn.in_transaction:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a named database operation, raising StorageError on failure."""
        if not self.running:
            raise StorageError(f"Database worker is not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database stopped before {operation_name} completed")

            error = result.get("error")
            if error is not None:
                if isinstance(error, StorageError):
                    raise error
                raise StorageError(f"Database operation {operation_name} failed", cause=error) from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # FeedStore interface

    async def list_all_feeds(self) -> List[Feed]:
        return await self.execute('select_all_feeds')

    async def get_feed_by_url(self, url: str) -> Optional[Feed]:
        return await self.execute('select_feed_by_url', url=url)

    async def insert_item_if_absent(self, feed_id: int, guid: str, title: str, link: str,
                                    published_at: int, content: str) -> bool:
        return await self.execute('insert_post', feed_id=feed_id, guid=guid, title=title,
                                  link=link, published_at=published_at, content=content)

    async def update_feed_title(self, feed_id: int, title: str) -> None:
        await self.execute('set_feed_title', feed_id=feed_id, title=title)

    async def update_feed_last_fetched_at(self, feed_id: int, timestamp: int) -> None:
        await self.execute('set_feed_last_fetched', feed_id=feed_id, timestamp=timestamp)

    async def update_feed_cache_metadata(self, feed_id: int, etag: Optional[str],
                                         last_modified: Optional[str], cache_until: Optional[int],
                                         fetched_at: Optional[int] = None) -> None:
        await self.execute('set_feed_cache_info', feed_id=feed_id, etag=etag,
                           last_modified=last_modified, cache_until=cache_until,
                           fetched_at=fetched_at)

    # Subscription and read-side helpers

    async def register_feed(self, url: str) -> int:
        return await self.execute('insert_feed', url=url)

    async def delete_feed(self, feed_id: int) -> bool:
        return await self.execute('remove_feed', feed_id=feed_id)

    async def get_feed_posts(self, feed_id: int, limit: int = 50) -> List[Post]:
        return await self.execute('select_feed_posts', feed_id=feed_id, limit=limit)

    async def count_posts(self, feed_id: Optional[int] = None) -> int:
        return await self.execute('select_post_count', feed_id=feed_id)

    # Feed Management Operations

    def select_all_feeds(self) -> List[Feed]:
        """List every known feed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds ORDER BY id")
            return [_row_to_feed(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def select_feed_by_url(self, url: str) -> Optional[Feed]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
            return _row_to_feed(row) if row else None
        finally:
            cursor.close()

    def insert_feed(self, url: str) -> int:
        """Register a feed (no-op if the URL is known) and return its ID."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("INSERT OR IGNORE INTO feeds (url) VALUES (?)", (url,))
            self.conn.commit()
            cursor.execute("SELECT id FROM feeds WHERE url = ?", (url,))
            return cursor.fetchone()['id']
        finally:
            cursor.close()

    def remove_feed(self, feed_id: int) -> bool:
        """Delete a feed; its posts go with it."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def set_feed_title(self, feed_id: int, title: str) -> None:
        self.conn.execute("UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id))
        self.conn.commit()

    def set_feed_last_fetched(self, feed_id: int, timestamp: int) -> None:
        self.conn.execute("UPDATE feeds SET last_fetched_at = ? WHERE id = ?", (int(timestamp), feed_id))
        self.conn.commit()

    def set_feed_cache_info(self, feed_id: int, etag: Optional[str], last_modified: Optional[str],
                            cache_until: Optional[int], fetched_at: Optional[int] = None) -> None:
        """Overwrite cache metadata in a single UPDATE."""
        if fetched_at is None:
            self.conn.execute(
                "UPDATE feeds SET etag = ?, last_modified = ?, cache_until = ? WHERE id = ?",
                (etag, last_modified, cache_until, feed_id)
            )
        else:
            self.conn.execute(
                "UPDATE feeds SET etag = ?, last_modified = ?, cache_until = ?, last_fetched_at = ? WHERE id = ?",
                (etag, last_modified, cache_until, int(fetched_at), feed_id)
            )
        self.conn.commit()

    # Post Management Operations

    def insert_post(self, feed_id: int, guid: str, title: str, link: str,
                    published_at: int, content: str) -> bool:
        """Insert a post, ignoring it if (feed_id, guid) already exists."""
        cursor = self.conn.cursor()
        try:
            cursor.execute('''
            INSERT OR IGNORE INTO posts (feed_id, guid, title, link, published_at, content)
            VALUES (?, ?, ?, ?, ?, ?)
            ''', (feed_id, guid, title, link, int(published_at), content))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def select_feed_posts(self, feed_id: int, limit: int = 50) -> List[Post]:
        """Newest posts of a feed first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute('''
            SELECT id, feed_id, guid, title, link, published_at, content
            FROM posts WHERE feed_id = ?
            ORDER BY published_at DESC, id DESC
            LIMIT ?
            ''', (feed_id, limit))
            return [Post(
                id=row['id'],
                feed_id=row['feed_id'],
                guid=row['guid'],
                title=row['title'],
                link=row['link'],
                published_at=row['published_at'],
                content=row['content'],
            ) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def select_post_count(self, feed_id: Optional[int] = None) -> int:
        """Return the number of stored posts, optionally for one feed."""
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM posts")
            else:
                cursor.execute("SELECT COUNT(*) FROM posts WHERE feed_id = ?", (feed_id,))
            return cursor.fetchone()[0]
        finally:
            cursor.close()
