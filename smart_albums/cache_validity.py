"""
Tracks whether the stored albums still describe the current asset library.

State lives in the album store's cache_metadata table so it survives
restarts. The library fingerprint is "<asset count>_<newest capture epoch>";
edits that keep both the count and the newest capture time are not detected.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from smart_albums.database import AlbumStore
from smart_albums.library import AssetLibrary
from smart_albums.models import CacheState
from smart_albums.error_handling import logger

DEFAULT_CACHE_TTL = timedelta(hours=24)

KEY_IS_VALID = "is_valid"
KEY_LAST_UPDATE = "last_update_time"
KEY_LIBRARY_HASH = "library_hash"
KEY_ALBUM_COUNT = "cached_album_count"


def compute_library_hash(library: AssetLibrary) -> str:
    newest = library.most_recent_capture()
    newest_epoch = int(newest.timestamp()) if newest is not None else 0
    return f"{library.count()}_{newest_epoch}"


class CacheValidityTracker:
    def __init__(self, store: AlbumStore, library: AssetLibrary,
                 ttl: timedelta = DEFAULT_CACHE_TTL,
                 clock: Callable[[], datetime] = datetime.now,
                 validate_in_background: bool = True):
        self.store = store
        self.library = library
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._is_valid = False
        self._ready = threading.Event()

        self.library.add_change_listener(self.handle_library_change)

        if validate_in_background:
            threading.Thread(target=self._initial_validation, name="cache-validity", daemon=True).start()
        else:
            self._initial_validation()

    def _initial_validation(self):
        try:
            self.validate_cache()
        except Exception as e:
            logger.error(f"Cache validation failed: {e}", exc_info=True)
        finally:
            self._ready.set()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the initial validation has finished."""
        return self._ready.wait(timeout)

    def close(self):
        self.library.remove_change_listener(self.handle_library_change)

    @property
    def is_valid(self) -> bool:
        with self._lock:
            return self._is_valid

    def _last_update_time(self) -> Optional[datetime]:
        raw = self.store.get_metadata(KEY_LAST_UPDATE)
        return datetime.fromisoformat(raw) if raw else None

    def validate_cache(self) -> bool:
        """
        Recompute validity from the stored state and the current library.

        Validity requires a previous mark_cache_updated(), stored albums, a
        last update within the TTL and a matching library fingerprint.
        """
        current_hash = compute_library_hash(self.library)
        stored_hash = self.store.get_metadata(KEY_LIBRARY_HASH)
        last_update = self._last_update_time()

        reason = None
        if self.store.get_metadata(KEY_IS_VALID) != "1":
            reason = "cache was invalidated"
        elif not self.store.has_albums():
            reason = "no cached albums"
        elif last_update is None or self.clock() - last_update >= self.ttl:
            reason = "cache expired"
        elif stored_hash != current_hash:
            reason = f"library changed ({stored_hash} -> {current_hash})"

        with self._lock:
            self._is_valid = reason is None

        if reason:
            logger.info(f"Album cache not valid: {reason}")
        return reason is None

    def handle_library_change(self):
        """Library change listener: invalidate when the fingerprint moved."""
        current_hash = compute_library_hash(self.library)
        stored_hash = self.store.get_metadata(KEY_LIBRARY_HASH)
        if current_hash == stored_hash:
            return

        logger.info(f"Library fingerprint changed: {stored_hash} -> {current_hash}")
        with self._lock:
            self._is_valid = False
        self.store.set_metadata(KEY_IS_VALID, "0")
        self.store.set_metadata(KEY_LIBRARY_HASH, current_hash)

    def mark_cache_updated(self, album_count: int):
        """Record a successful full generation. The only way to become valid."""
        now = self.clock()
        current_hash = compute_library_hash(self.library)

        self.store.set_metadata(KEY_LAST_UPDATE, now.isoformat())
        self.store.set_metadata(KEY_LIBRARY_HASH, current_hash)
        self.store.set_metadata(KEY_ALBUM_COUNT, str(album_count))
        self.store.set_metadata(KEY_IS_VALID, "1")

        with self._lock:
            self._is_valid = True
        logger.info(f"Album cache updated: {album_count} albums, library {current_hash}")

    def invalidate_cache(self):
        with self._lock:
            self._is_valid = False
        self.store.set_metadata(KEY_IS_VALID, "0")

    def should_use_cached_albums(self) -> bool:
        if not self.is_valid:
            return False
        last_update = self._last_update_time()
        if last_update is None or self.clock() - last_update >= self.ttl:
            self.invalidate_cache()
            return False
        return self.store.has_albums()

    def get_cache_state(self) -> CacheState:
        count = self.store.get_metadata(KEY_ALBUM_COUNT)
        return CacheState(
            is_valid=self.is_valid,
            last_update_time=self._last_update_time(),
            library_hash=self.store.get_metadata(KEY_LIBRARY_HASH) or "",
            cached_album_count=int(count) if count else 0,
        )
