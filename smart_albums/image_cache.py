"""
Bounded in-memory caches of decoded images for album thumbnails and previews.

Two tiers exist: small thumbnails for grids and high quality images for
detail views. Both evict least recently used entries when either their total
cost (width x height x 4 bytes) or their entry count exceeds the limit.
A request for an asset supersedes any earlier in-flight request for it.
"""

import itertools
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from PIL import Image

from smart_albums.library import AssetLibrary
from smart_albums.memory import MemoryMonitor
from smart_albums.error_handling import ImageCacheError, logger, validate_image_file

MB = 1024 * 1024
BYTES_PER_PIXEL = 4
PRIORITY_SIZE_MULTIPLIER = 1.5
PLACEHOLDER_COLOR = (200, 200, 200)

Size = Tuple[int, int]
ImageCallback = Callable[[Image.Image, bool], None]


@dataclass(frozen=True)
class CachePolicy:
    name: str
    cost_limit_bytes: int
    count_limit: int
    max_dimension: int
    size_multiplier: float

    def load_size(self, target_size: Size, priority: bool = False) -> Size:
        """Pixel size to request from the loader for a target display size."""
        multiplier = PRIORITY_SIZE_MULTIPLIER if priority else self.size_multiplier
        width = target_size[0] * multiplier
        height = target_size[1] * multiplier

        longest = max(width, height)
        if longest > self.max_dimension:
            scale = self.max_dimension / longest
            width, height = width * scale, height * scale
        return max(1, int(width)), max(1, int(height))


THUMBNAIL_POLICY = CachePolicy("thumbnail", 25 * MB, 100, 1024, 2.0)
HIGH_QUALITY_POLICY = CachePolicy("high_quality", 50 * MB, 30, 1800, 1.0)


def image_cost(image: Image.Image) -> int:
    width, height = image.size
    return width * height * BYTES_PER_PIXEL


class LoadRequest:
    """
    Handle for an in-flight load. Cancelling stops delivery, not necessarily decoding.

    The underlying work (a future or another LoadRequest) may be attached after
    the handle was cancelled; it is then cancelled on attach.
    """

    def __init__(self):
        self.cancelled = False
        self._work = None

    def attach(self, work):
        self._work = work
        if self.cancelled and work is not None:
            work.cancel()

    def cancel(self):
        self.cancelled = True
        if self._work is not None:
            self._work.cancel()


class ImageLoader:
    """Loads a decoded image for an asset, calling on_done with the image or None."""

    def load(self, asset_id: str, size: Size,
             on_done: Callable[[Optional[Image.Image]], None]) -> LoadRequest:
        raise NotImplementedError


class FileImageLoader(ImageLoader):
    """Decodes image files with Pillow on a thread pool."""

    def __init__(self, path_resolver: Callable[[str], Optional[str]], max_workers: int = 4):
        self.path_resolver = path_resolver
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="image-load")

    @classmethod
    def for_library(cls, library: AssetLibrary, max_workers: int = 4) -> "FileImageLoader":
        def resolve(asset_id: str) -> Optional[str]:
            assets = library.get_assets([asset_id])
            return assets[0].path if assets else None
        return cls(resolve, max_workers)

    def decode(self, asset_id: str, size: Size) -> Image.Image:
        path = self.path_resolver(asset_id)
        if not path:
            raise ImageCacheError(f"No file for asset {asset_id}")
        validate_image_file(path)

        with Image.open(path) as pil_image:
            pil_image.draft("RGB", size)
            image = pil_image.convert("RGB")
        image.thumbnail(size, Image.LANCZOS)
        return image

    def _run(self, request: LoadRequest, asset_id: str, size: Size, on_done):
        if request.cancelled:
            return
        try:
            image = self.decode(asset_id, size)
        except (OSError, ImageCacheError) as e:
            logger.warning(f"Failed to load image for {asset_id}: {e}")
            image = None
        on_done(image)

    def load(self, asset_id, size, on_done):
        request = LoadRequest()
        request.attach(self._executor.submit(self._run, request, asset_id, size, on_done))
        return request

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)


class ImageCache:
    """
    One cache tier.

    Args:
        policy: Limits and sizing for the tier
        loader: Source of decoded images
        screen_scale: Display scale; images larger than target x scale are downsampled
    """

    def __init__(self, policy: CachePolicy, loader: ImageLoader, screen_scale: float = 2.0,
                 placeholder: Optional[Image.Image] = None):
        self.policy = policy
        self.loader = loader
        self.screen_scale = screen_scale
        self.placeholder = placeholder or Image.new("RGB", (1, 1), PLACEHOLDER_COLOR)
        self.under_pressure = False
        self._lock = threading.RLock()
        self._entries: "OrderedDict[Tuple[str, Size], Image.Image]" = OrderedDict()
        self._total_cost = 0
        self._in_flight: Dict[str, Tuple[int, LoadRequest]] = {}
        self._tokens = itertools.count(1)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    @property
    def total_cost(self) -> int:
        with self._lock:
            return self._total_cost

    def get(self, asset_id: str, target_size: Size) -> Optional[Image.Image]:
        with self._lock:
            key = (asset_id, tuple(target_size))
            image = self._entries.get(key)
            if image is not None:
                self._entries.move_to_end(key)
            return image

    def is_loading(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._in_flight

    def _store(self, key, image: Image.Image):
        if key in self._entries:
            self._total_cost -= image_cost(self._entries.pop(key))
        self._entries[key] = image
        self._total_cost += image_cost(image)

        while self._entries and (self._total_cost > self.policy.cost_limit_bytes
                                 or len(self._entries) > self.policy.count_limit):
            _, evicted = self._entries.popitem(last=False)
            self._total_cost -= image_cost(evicted)

    def _downsample(self, image: Image.Image, target_size: Size) -> Image.Image:
        max_width = int(target_size[0] * self.screen_scale)
        max_height = int(target_size[1] * self.screen_scale)
        if image.size[0] <= max_width and image.size[1] <= max_height:
            return image

        resized = image.copy()
        resized.thumbnail((max(1, max_width), max(1, max_height)), Image.LANCZOS)
        return resized

    def request(self, asset_id: str, target_size: Size, on_image: ImageCallback,
                priority: bool = False):
        """
        Deliver an image for asset_id at target_size.

        on_image receives (image, is_placeholder). A hit is delivered at once;
        a miss delivers the placeholder synchronously and the final image when
        the load completes, unless a newer request for the same asset or a
        clear() superseded it.
        """
        target_size = tuple(target_size)
        key = (asset_id, target_size)

        cached = self.get(asset_id, target_size)
        if cached is not None:
            on_image(cached, False)
            return

        on_image(self.placeholder, True)

        with self._lock:
            previous = self._in_flight.pop(asset_id, None)
            if previous is not None:
                previous[1].cancel()
            token = next(self._tokens)
            pending = LoadRequest()
            self._in_flight[asset_id] = (token, pending)

        def on_loaded(image: Optional[Image.Image]):
            with self._lock:
                current = self._in_flight.get(asset_id)
                if current is None or current[0] != token:
                    return
                del self._in_flight[asset_id]
                if image is None:
                    return
                image = self._downsample(image, target_size)
                self._store(key, image)
            on_image(image, False)

        pending.attach(self.loader.load(asset_id, self.policy.load_size(target_size, priority), on_loaded))

    def prefetch(self, asset_ids: Iterable[str], target_size: Size) -> int:
        """Warm the cache. Skipped entirely under memory pressure."""
        if self.under_pressure:
            logger.debug(f"Skipping {self.policy.name} prefetch under memory pressure")
            return 0

        started = 0
        for asset_id in asset_ids:
            if self.get(asset_id, target_size) is None and not self.is_loading(asset_id):
                self.request(asset_id, target_size, lambda image, is_placeholder: None, priority=True)
                started += 1
        return started

    def cancel(self, asset_id: str):
        with self._lock:
            pending = self._in_flight.pop(asset_id, None)
        if pending is not None:
            pending[1].cancel()

    def clear(self):
        with self._lock:
            pending = list(self._in_flight.values())
            self._in_flight.clear()
            self._entries.clear()
            self._total_cost = 0
        for _, request in pending:
            request.cancel()
        logger.debug(f"Cleared {self.policy.name} image cache")

    def handle_memory_warning(self):
        self.under_pressure = True
        self.clear()

    def handle_background(self):
        self.clear()

    def handle_foreground(self):
        self.under_pressure = False


class ImageCacheRegistry:
    """Owns both cache tiers and routes memory signals to them."""

    def __init__(self, thumbnail_loader: ImageLoader,
                 high_quality_loader: Optional[ImageLoader] = None,
                 screen_scale: float = 2.0,
                 thumbnail_policy: CachePolicy = THUMBNAIL_POLICY,
                 high_quality_policy: CachePolicy = HIGH_QUALITY_POLICY):
        self.thumbnails = ImageCache(thumbnail_policy, thumbnail_loader, screen_scale)
        self.high_quality = ImageCache(high_quality_policy, high_quality_loader or thumbnail_loader,
                                       screen_scale)

    @classmethod
    def from_config(cls, config, thumbnail_loader: ImageLoader,
                    high_quality_loader: Optional[ImageLoader] = None) -> "ImageCacheRegistry":
        thumbnail_policy = CachePolicy("thumbnail", config.thumbnail_cost_limit_mb * MB,
                                       config.thumbnail_count_limit, 1024, 2.0)
        high_quality_policy = CachePolicy("high_quality", config.high_quality_cost_limit_mb * MB,
                                          config.high_quality_count_limit, 1800, 1.0)
        return cls(thumbnail_loader, high_quality_loader, config.screen_scale,
                   thumbnail_policy, high_quality_policy)

    @property
    def tiers(self):
        return (self.thumbnails, self.high_quality)

    def attach(self, monitor: MemoryMonitor, pressure: bool = True):
        """
        Subscribe to monitor signals. Pass pressure=False when a BatchScheduler
        already clears these caches on memory pressure.
        """
        if pressure:
            monitor.add_pressure_listener(lambda reason: self.handle_memory_warning())
        monitor.add_background_listener(self.handle_background)
        monitor.add_foreground_listener(self.handle_foreground)

    def clear_all(self):
        for tier in self.tiers:
            tier.clear()

    def handle_memory_warning(self):
        for tier in self.tiers:
            tier.handle_memory_warning()

    def handle_background(self):
        for tier in self.tiers:
            tier.handle_background()

    def handle_foreground(self):
        for tier in self.tiers:
            tier.handle_foreground()
