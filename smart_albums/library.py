"""
Asset library providers.

The pipeline only needs a handful of queries from the library: enumerate
assets (optionally filtered by media type, sorted by capture time), resolve
ids, count, and the newest capture time. Libraries also notify listeners
when their contents change.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from smart_albums.models import MediaAsset, MediaType
from smart_albums.metadata import read_exif_metadata, VIDEO_EXTENSIONS
from smart_albums.error_handling import logger

SUPPORTED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.heic', '.tiff', '.webp'} | VIDEO_EXTENSIONS


def _sort_key(asset: MediaAsset):
    # Undated assets sort first, like a distant-past date
    return (asset.capture_timestamp is not None, asset.capture_timestamp or datetime.min)


class AssetLibrary:
    """Base class for asset library providers."""

    def __init__(self):
        self._listeners: List[Callable[[], None]] = []
        self._listener_lock = threading.Lock()

    def _all_assets(self) -> List[MediaAsset]:
        raise NotImplementedError

    def fetch_assets(self, media_types: Optional[Iterable[MediaType]] = None,
                     ascending: bool = True) -> List[MediaAsset]:
        assets = self._all_assets()
        if media_types is not None:
            wanted = set(media_types)
            assets = [asset for asset in assets if asset.media_type in wanted]
        return sorted(assets, key=_sort_key, reverse=not ascending)

    def get_assets(self, asset_ids: Iterable[str]) -> List[MediaAsset]:
        by_id = {asset.id: asset for asset in self._all_assets()}
        return [by_id[asset_id] for asset_id in asset_ids if asset_id in by_id]

    def asset_ids(self) -> Set[str]:
        return {asset.id for asset in self._all_assets()}

    def count(self) -> int:
        return len(self._all_assets())

    def most_recent_capture(self) -> Optional[datetime]:
        timestamps = [a.capture_timestamp for a in self._all_assets() if a.capture_timestamp]
        return max(timestamps) if timestamps else None

    def add_change_listener(self, listener: Callable[[], None]):
        with self._listener_lock:
            self._listeners.append(listener)

    def remove_change_listener(self, listener: Callable[[], None]):
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def notify_changed(self):
        """Fan a change notification out to every registered listener."""
        with self._listener_lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Library change listener failed: {e}", exc_info=True)


class InMemoryAssetLibrary(AssetLibrary):
    """Asset library backed by a dict, used for tests and embedding."""

    def __init__(self, assets: Optional[Iterable[MediaAsset]] = None):
        super().__init__()
        self._lock = threading.Lock()
        self._assets: Dict[str, MediaAsset] = {}
        for asset in assets or []:
            self._assets[asset.id] = asset

    def _all_assets(self) -> List[MediaAsset]:
        with self._lock:
            return list(self._assets.values())

    def add_assets(self, assets: Iterable[MediaAsset], notify: bool = True):
        with self._lock:
            for asset in assets:
                self._assets[asset.id] = asset
        if notify:
            self.notify_changed()

    def remove_assets(self, asset_ids: Iterable[str], notify: bool = True):
        with self._lock:
            for asset_id in asset_ids:
                self._assets.pop(asset_id, None)
        if notify:
            self.notify_changed()


class FolderAssetLibrary(AssetLibrary):
    """
    Asset library over a directory of image files.

    EXIF metadata is read once per file and kept until rescan() is called.
    """

    def __init__(self, root: str, recursive: bool = True):
        super().__init__()
        self.root = Path(root)
        self.recursive = recursive
        self._lock = threading.Lock()
        self._assets: Optional[List[MediaAsset]] = None

    def _discover_files(self) -> List[Path]:
        pattern = "**/*" if self.recursive else "*"
        return sorted(
            path for path in self.root.glob(pattern)
            if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS
        )

    def _load(self) -> List[MediaAsset]:
        assets = []
        exif_errors = 0
        for path in self._discover_files():
            try:
                assets.append(read_exif_metadata(str(path)))
            except OSError as e:
                exif_errors += 1
                logger.debug(f"Skipping unreadable file {path}: {e}")

        if exif_errors:
            logger.info(f"{exif_errors} file(s) in {self.root} could not be read")
        logger.info(f"Loaded {len(assets)} assets from {self.root}")
        return assets

    def _all_assets(self) -> List[MediaAsset]:
        with self._lock:
            if self._assets is None:
                self._assets = self._load()
            return list(self._assets)

    def rescan(self):
        """Re-read the folder and notify listeners."""
        with self._lock:
            self._assets = self._load()
        self.notify_changed()
