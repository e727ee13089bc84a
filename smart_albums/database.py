import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from smart_albums.models import SmartAlbum
from smart_albums.error_handling import AlbumStoreError, ValidationError, logger

DATABASE_PATH = "smart_albums.db"

SORT_COLUMNS = {
    "created_at": "created_at DESC, relevance_score DESC",
    "relevance_score": "relevance_score DESC, created_at DESC",
}

FEATURED_LIMIT = 5
FEATURED_RECENT_DAYS = 30


class AlbumStore:
    """
    SQLite persistence for smart albums and cache bookkeeping.

    Writes are serialised through a lock and each public write runs in a
    single transaction.
    """

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path
        self._write_lock = threading.RLock()
        self.init_db()

    @contextmanager
    def get_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self):
        """Initialize database tables"""
        with self.get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS smart_albums (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL CHECK (title <> ''),
                    created_at TEXT NOT NULL,
                    relevance_score INTEGER NOT NULL CHECK (relevance_score BETWEEN 0 AND 100),
                    thumbnail_asset_id TEXT NOT NULL
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS album_tags (
                    album_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    tag TEXT NOT NULL,
                    PRIMARY KEY (album_id, position),
                    FOREIGN KEY (album_id) REFERENCES smart_albums (id) ON DELETE CASCADE
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS album_assets (
                    album_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    asset_id TEXT NOT NULL,
                    PRIMARY KEY (album_id, position),
                    FOREIGN KEY (album_id) REFERENCES smart_albums (id) ON DELETE CASCADE
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS cache_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')

            conn.execute('CREATE INDEX IF NOT EXISTS idx_album_assets_asset ON album_assets (asset_id)')

    # Album writes
    def _insert_album(self, conn, album: SmartAlbum):
        try:
            album.validate()
        except ValidationError as e:
            raise AlbumStoreError(f"Cannot store album {album.id}: {e}") from e

        conn.execute('''
            INSERT OR REPLACE INTO smart_albums (id, title, created_at, relevance_score, thumbnail_asset_id)
            VALUES (?, ?, ?, ?, ?)
        ''', (album.id, album.title, album.created_at.isoformat(), album.relevance_score, album.thumbnail_asset_id))

        conn.execute('DELETE FROM album_tags WHERE album_id = ?', (album.id,))
        conn.execute('DELETE FROM album_assets WHERE album_id = ?', (album.id,))
        conn.executemany('INSERT INTO album_tags (album_id, position, tag) VALUES (?, ?, ?)',
                         [(album.id, position, tag) for position, tag in enumerate(album.tags)])
        conn.executemany('INSERT INTO album_assets (album_id, position, asset_id) VALUES (?, ?, ?)',
                         [(album.id, position, asset_id) for position, asset_id in enumerate(album.asset_ids)])

        asset_rows = conn.execute('SELECT COUNT(*) FROM album_assets WHERE album_id = ?',
                                  (album.id,)).fetchone()[0]
        if asset_rows == 0:
            raise AlbumStoreError(f"Album {album.id} has no asset rows")

    def _insert_albums(self, albums: List[SmartAlbum], replace: bool) -> int:
        with self._write_lock:
            try:
                with self.get_connection() as conn:
                    if replace:
                        conn.execute('DELETE FROM smart_albums')
                    for album in albums:
                        self._insert_album(conn, album)
            except sqlite3.Error as e:
                raise AlbumStoreError(f"Failed to save {len(albums)} album(s): {e}") from e
        return len(albums)

    def replace_all(self, albums: List[SmartAlbum]) -> int:
        """
        Replace every stored album in one transaction.

        Returns:
            int: Number of albums written

        Raises:
            AlbumStoreError: If any album is invalid; nothing is changed
        """
        count = self._insert_albums(albums, replace=True)
        logger.info(f"Replaced album store contents with {count} albums")
        return count

    def append_batch(self, albums: List[SmartAlbum]) -> int:
        """Insert a batch of albums in one transaction. A failure rolls back only this batch."""
        count = self._insert_albums(albums, replace=False)
        logger.debug(f"Appended batch of {count} albums")
        return count

    def delete_album(self, album_id: str) -> bool:
        with self._write_lock:
            with self.get_connection() as conn:
                cursor = conn.execute('DELETE FROM smart_albums WHERE id = ?', (album_id,))
                return cursor.rowcount > 0

    def clear(self):
        with self._write_lock:
            with self.get_connection() as conn:
                conn.execute('DELETE FROM smart_albums')

    # Album reads
    def _load_albums(self, conn, rows) -> List[SmartAlbum]:
        if not rows:
            return []

        album_ids = [row[0] for row in rows]
        tags: Dict[str, List[str]] = {album_id: [] for album_id in album_ids}
        assets: Dict[str, List[str]] = {album_id: [] for album_id in album_ids}

        placeholders = ",".join("?" for _ in album_ids)
        for album_id, tag in conn.execute(
                f'SELECT album_id, tag FROM album_tags WHERE album_id IN ({placeholders}) '
                f'ORDER BY album_id, position', album_ids):
            tags[album_id].append(tag)
        for album_id, asset_id in conn.execute(
                f'SELECT album_id, asset_id FROM album_assets WHERE album_id IN ({placeholders}) '
                f'ORDER BY album_id, position', album_ids):
            assets[album_id].append(asset_id)

        return [
            SmartAlbum(
                id=album_id,
                title=title,
                created_at=datetime.fromisoformat(created_at),
                relevance_score=relevance_score,
                tags=tags[album_id],
                asset_ids=assets[album_id],
                thumbnail_asset_id=thumbnail_asset_id,
            )
            for album_id, title, created_at, relevance_score, thumbnail_asset_id in rows
        ]

    def get_all_albums(self, sort_by: str = "created_at") -> List[SmartAlbum]:
        if sort_by not in SORT_COLUMNS:
            raise AlbumStoreError(f"Unsupported sort order: {sort_by}")

        with self.get_connection() as conn:
            rows = conn.execute(f'''
                SELECT id, title, created_at, relevance_score, thumbnail_asset_id
                FROM smart_albums ORDER BY {SORT_COLUMNS[sort_by]}
            ''').fetchall()
            return self._load_albums(conn, rows)

    def get_album(self, album_id: str) -> Optional[SmartAlbum]:
        with self.get_connection() as conn:
            rows = conn.execute('''
                SELECT id, title, created_at, relevance_score, thumbnail_asset_id
                FROM smart_albums WHERE id = ?
            ''', (album_id,)).fetchall()
            albums = self._load_albums(conn, rows)
            return albums[0] if albums else None

    def count_albums(self) -> int:
        with self.get_connection() as conn:
            return conn.execute('SELECT COUNT(*) FROM smart_albums').fetchone()[0]

    def has_albums(self) -> bool:
        return self.count_albums() > 0

    def get_featured_albums(self, now: Optional[datetime] = None,
                            limit: int = FEATURED_LIMIT,
                            recent_days: int = FEATURED_RECENT_DAYS) -> List[SmartAlbum]:
        """
        Highest scored albums from the recent window, topped up with older ones.

        Args:
            now: Reference time, defaults to the current time
            limit: Maximum number of albums returned
            recent_days: Size of the recent window in days

        Returns:
            List[SmartAlbum]: At most `limit` albums, recent ones first
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=recent_days)

        by_score = self.get_all_albums(sort_by="relevance_score")
        recent = [album for album in by_score if album.created_at >= cutoff]
        older = [album for album in by_score if album.created_at < cutoff]

        featured = recent[:limit]
        if len(featured) < limit:
            featured.extend(older[:limit - len(featured)])
        return featured

    def prune_missing_assets(self, existing_ids: Iterable[str]) -> int:
        """
        Drop references to assets that no longer exist in the library.

        Albums left without assets are deleted and thumbnails pointing at a
        removed asset move to the first remaining one.

        Returns:
            int: Number of albums deleted
        """
        existing = set(existing_ids)

        with self._write_lock:
            with self.get_connection() as conn:
                references = conn.execute(
                    'SELECT album_id, position, asset_id FROM album_assets').fetchall()
                stale = [(album_id, position) for album_id, position, asset_id in references
                         if asset_id not in existing]
                if not stale:
                    return 0

                conn.executemany('DELETE FROM album_assets WHERE album_id = ? AND position = ?', stale)

                empty_ids = [row[0] for row in conn.execute('''
                    SELECT id FROM smart_albums
                    WHERE id NOT IN (SELECT DISTINCT album_id FROM album_assets)
                ''').fetchall()]
                conn.executemany('DELETE FROM smart_albums WHERE id = ?', [(i,) for i in empty_ids])

                conn.execute('''
                    UPDATE smart_albums
                    SET thumbnail_asset_id = (
                        SELECT asset_id FROM album_assets
                        WHERE album_assets.album_id = smart_albums.id
                        ORDER BY position LIMIT 1
                    )
                    WHERE thumbnail_asset_id NOT IN (
                        SELECT asset_id FROM album_assets WHERE album_assets.album_id = smart_albums.id
                    )
                ''')

        logger.info(f"Pruned {len(stale)} stale asset references, removed {len(empty_ids)} empty albums")
        return len(empty_ids)

    # Cache metadata
    def get_metadata(self, key: str) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute('SELECT value FROM cache_metadata WHERE key = ?', (key,)).fetchone()
            return row[0] if row else None

    def set_metadata(self, key: str, value: Optional[str]):
        with self._write_lock:
            with self.get_connection() as conn:
                conn.execute('INSERT OR REPLACE INTO cache_metadata (key, value) VALUES (?, ?)', (key, value))

    def delete_metadata(self, key: str):
        with self._write_lock:
            with self.get_connection() as conn:
                conn.execute('DELETE FROM cache_metadata WHERE key = ?', (key,))
